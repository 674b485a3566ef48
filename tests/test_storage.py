"""Tests for reader_companion.storage and reader_companion.config."""

import json

from reader_companion.config import chat_api, config_path
from reader_companion.models import (
    Book,
    ChatMessage,
    Character,
    HighlightRange,
    Persona,
    SummaryCard,
    WorldBookEntry,
)

KEY = "book:b1::persona:p1::character:c1"


# ── Settings ─────────────────────────────────────────────────


def test_config_defaults(storage):
    cfg = storage.get_config()
    assert cfg["summary_api_enabled"] is False
    assert cfg["auto_chat_summary"] == {"enabled": False, "threshold": 500}
    assert cfg["chat"]["memory_bubble_count"] == 100


def test_update_config_merges_nested_groups(storage):
    storage.update_config({"chat_api": {"model": "m1"}, "auto_book_summary": {"enabled": True}})
    cfg = storage.get_config()
    assert cfg["chat_api"]["model"] == "m1"
    assert cfg["chat_api"]["provider"] == "openai"
    assert cfg["auto_book_summary"] == {"enabled": True, "threshold": 5000}


def test_update_config_ignores_unknown_keys(storage):
    cfg = storage.update_config({"bogus": 1, "chat": {"nope": 2, "reply_bubble_max": 5}})
    assert "bogus" not in cfg
    assert "nope" not in cfg["chat"]
    assert cfg["chat"]["reply_bubble_max"] == 5


def test_config_written_to_disk(storage):
    storage.update_config({"summary_api_enabled": True})
    stored = json.loads(config_path(storage.base_path).read_text())
    assert stored["summary_api_enabled"] is True


def test_chat_api_helper(storage):
    cfg = storage.update_config({"chat_api": {"provider": "claude", "api_key": "k"}})
    api = chat_api(cfg)
    assert api.provider == "claude"
    assert api.api_key == "k"


# ── Personas & characters ────────────────────────────────────


def test_persona_upsert_and_delete(storage):
    p = Persona(id="p1", name="Ann")
    storage.save_persona(p)
    storage.save_persona(p.model_copy(update={"nickname": "Annie"}))
    assert [x.nickname for x in storage.get_personas()] == ["Annie"]
    assert storage.delete_persona("p1") is True
    assert storage.delete_persona("p1") is False
    assert storage.get_persona("p1") is None


def test_character_crud(storage):
    storage.save_character(Character(id="c1", name="Mira"))
    storage.save_character(Character(id="c2", name="Tom"))
    assert storage.get_character("c2").name == "Tom"
    assert storage.delete_character("c1") is True
    assert [c.id for c in storage.get_characters()] == ["c2"]


def test_empty_lists_without_files(storage):
    assert storage.get_personas() == []
    assert storage.get_characters() == []
    assert storage.get_world_book() == []


# ── World book ───────────────────────────────────────────────


def test_world_book_upsert_keeps_order(storage):
    storage.save_world_book_entry(WorldBookEntry(id="w1", title="Harbor", category="lore"))
    storage.save_world_book_entry(WorldBookEntry(id="w2", title="Tides", category="lore"))
    storage.save_world_book_entry(
        WorldBookEntry(id="w1", title="Harbor", category="lore", insert_position="after"),
    )
    entries = storage.get_world_book()
    assert [e.id for e in entries] == ["w1", "w2"]
    assert entries[0].insert_position == "after"


def test_world_book_delete(storage):
    storage.save_world_book_entry(WorldBookEntry(id="w1", category="lore"))
    assert storage.delete_world_book_entry("w1") is True
    assert storage.delete_world_book_entry("w1") is False


def test_character_bound_categories_persist(storage):
    storage.save_character(Character(id="c1", name="Mira", bound_world_book_categories=["lore"]))
    assert storage.get_character("c1").bound_world_book_categories == ["lore"]


# ── Books ────────────────────────────────────────────────────


def test_book_roundtrip(storage):
    storage.save_book(Book(id="b1", title="Night", text="abc"))
    book = storage.get_book("b1")
    assert book.title == "Night"
    assert storage.get_book("missing") is None


def test_read_offset_clamped(storage):
    storage.save_book(Book(id="b1", text="abc"))
    assert storage.set_read_offset("b1", -4).read_offset == 0
    assert storage.set_read_offset("b1", 2).read_offset == 2
    assert storage.get_book("b1").text == "abc"


def test_highlights_replace(storage):
    storage.save_book(Book(id="b1", text="abcdef"))
    storage.set_highlights("b1", [HighlightRange(start=0, end=2)])
    book = storage.set_highlights("b1", [HighlightRange(start=3, end=5)])
    assert [(h.start, h.end) for h in book.highlights] == [(3, 5)]
    assert storage.get_book("b1").text == "abcdef"


# ── Conversations ────────────────────────────────────────────


def _msg(mid: str, content: str = "x") -> ChatMessage:
    return ChatMessage(id=mid, sender="user", content=content)


def test_missing_conversation_is_empty(storage):
    record = storage.get_conversation(KEY)
    assert record.key == KEY
    assert record.messages == []


def test_conversation_file_name_is_quoted(storage):
    storage.save_messages(KEY, [_msg("m1")])
    files = list((storage.base_path / "conversations").iterdir())
    assert len(files) == 1
    assert ":" not in files[0].name


def test_upsert_messages(storage):
    storage.save_messages(KEY, [_msg("m1", "one"), _msg("m2", "two")])
    merged = storage.upsert_messages(KEY, [_msg("m2", "TWO"), _msg("m3", "three")])
    assert [(m.id, m.content) for m in merged] == [("m1", "one"), ("m2", "TWO"), ("m3", "three")]
    assert [m.id for m in storage.get_messages(KEY)] == ["m1", "m2", "m3"]


# ── Cards & marks ────────────────────────────────────────────


def test_chat_cards_stored_with_conversation(storage):
    storage.save_messages(KEY, [_msg("m1")])
    storage.save_cards(("chat", KEY), [SummaryCard(content="c", start=1, end=2)])
    assert [c.content for c in storage.get_cards(("chat", KEY))] == ["c"]
    assert len(storage.get_messages(KEY)) == 1


def test_book_cards_stored_with_book(storage):
    storage.save_book(Book(id="b1", text="abc"))
    storage.save_cards(("book", "b1"), [SummaryCard(content="b", start=1, end=3)])
    assert storage.get_book("b1").cards[0].content == "b"
    assert storage.get_book("b1").text == "abc"
    assert storage.get_cards(("book", "missing")) == []


def test_marks(storage):
    assert storage.get_chat_mark(KEY) is None
    storage.set_chat_mark(KEY, 12)
    assert storage.get_chat_mark(KEY) == 12
    storage.set_book_mark("b1", 5000)
    assert storage.get_book_mark("b1") == 5000
    storage.set_book_mark("b1", None)
    assert storage.get_book_mark("b1") is None
