"""Tests for reader_companion.service: ReaderCompanion wired to real storage."""

import asyncio

import pytest

from reader_companion.models import Book, Character, HighlightRange, Persona, SummaryCard, WorldBookEntry
from reader_companion.service import ReaderCompanion, highlight_snippets
from reader_companion.session import GenerationOk, GenerationSkip

KEY = "book:b1::persona:p1::character:c1"
REPLY = "[bubble] one\n[bubble] two\n[bubble] three"
BOOK_TEXT = "Alpha beta gamma. Delta epsilon zeta."


@pytest.fixture
def companion(storage, llm, api_config) -> ReaderCompanion:
    storage.save_persona(Persona(id="p1", name="Ann", nickname="Annie"))
    storage.save_character(Character(id="c1", name="Mira", description="A curious reader."))
    storage.save_book(Book(id="b1", title="Night Book", text=BOOK_TEXT))
    storage.update_config({"chat_api": api_config.model_dump()})
    return ReaderCompanion(storage, llm_factory=lambda config: llm, reveal_delays=(0, 0))


async def _wait_for(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Replies
# ---------------------------------------------------------------------------

class TestReply:
    async def test_manual_reply_stores_bubbles(self, companion, storage, llm) -> None:
        llm.replies = [REPLY]
        companion.focus(KEY)
        companion.add_user_message(KEY, "What do you think?")
        result = await companion.reply(KEY)
        assert isinstance(result, GenerationOk)
        messages = storage.get_messages(KEY)
        assert [m.sender for m in messages] == ["user", "character", "character", "character"]
        assert messages[0].sent_to_ai is True
        assert [m.content for m in messages[1:]] == ["one", "two", "three"]

    async def test_prompt_uses_profiles_and_reading_position(self, companion, storage, llm) -> None:
        llm.replies = [REPLY]
        companion.update_read_progress(KEY, len("Alpha beta gamma."))
        companion.add_user_message(KEY, "Hi")
        await companion.reply(KEY)
        _, prompt = llm.calls[0]
        assert "You are Mira" in prompt
        assert "Annie" in prompt
        assert "Night Book" in prompt
        assert "Alpha beta gamma." in prompt
        assert "Delta" not in prompt

    async def test_reply_without_character_is_blocked(self, companion, storage, llm) -> None:
        storage.delete_character("c1")
        result = await companion.reply(KEY)
        assert isinstance(result, GenerationSkip)
        assert result.reason == "blocked"
        assert result.silent is False
        assert llm.calls == []

    async def test_proactive_reply_without_messages(self, companion, storage, llm) -> None:
        llm.replies = [REPLY]
        result = await companion.reply(KEY, mode="proactive")
        assert isinstance(result, GenerationOk)
        assert len(storage.get_messages(KEY)) == 3

    async def test_background_reveal(self, companion, storage, llm) -> None:
        llm.replies = [REPLY]
        companion.add_user_message(KEY, "Hi")
        result = await companion.reply(KEY, wait_reveal=False)
        assert isinstance(result, GenerationOk)
        await _wait_for(lambda: len(storage.get_messages(KEY)) == 4)
        assert len(storage.get_messages(KEY)) == 4

    async def test_chat_summary_reaches_reply_prompt(self, companion, llm) -> None:
        card = SummaryCard(content="They argued about chapter one.", start=1, end=2)
        companion.cards.append(("chat", KEY), card)
        llm.replies = [REPLY]
        companion.add_user_message(KEY, "Hi")
        await companion.reply(KEY)
        assert "They argued about chapter one." in llm.calls[0][1]

    async def test_world_book_reaches_prompt_for_bound_character(self, companion, storage, llm) -> None:
        storage.save_character(Character(
            id="c1", name="Mira", description="A curious reader.",
            bound_world_book_categories=["harbor"],
        ))
        storage.save_world_book_entry(
            WorldBookEntry(title="1 Fog", category="harbor", content="Fog rolls in at dawn."),
        )
        storage.save_world_book_entry(
            WorldBookEntry(title="2 Port", category="other", content="Unrelated port lore."),
        )
        llm.replies = [REPLY]
        companion.add_user_message(KEY, "Hi")
        await companion.reply(KEY)
        prompt = llm.calls[0][1]
        assert "Fog rolls in at dawn." in prompt
        assert "Unrelated port lore." not in prompt

    async def test_highlights_before_position_reach_prompt(self, companion, storage, llm) -> None:
        storage.set_highlights("b1", [HighlightRange(start=6, end=10), HighlightRange(start=18, end=23)])
        companion.update_read_progress(KEY, len("Alpha beta gamma."))
        llm.replies = [REPLY]
        companion.add_user_message(KEY, "Hi")
        await companion.reply(KEY)
        prompt = llm.calls[0][1]
        assert "- beta" in prompt
        assert "Delta" not in prompt

    def test_user_message_needs_persona(self, companion) -> None:
        assert companion.add_user_message("book:b1::persona:ghost::character:c1", "hi") is None


# ---------------------------------------------------------------------------
# Validity
# ---------------------------------------------------------------------------

class TestValidity:
    def test_valid_conversation(self, companion) -> None:
        assert companion.is_valid(KEY)
        assert not companion.is_valid("book:b1::persona:none::character:c1")

    def test_invalidate_purges_and_refuses(self, companion) -> None:
        assert companion.enqueue_summary(KEY, "chat", 1, 2) is not None
        companion.invalidate(KEY)
        assert companion.queue.pending(KEY) == []
        assert companion.enqueue_summary(KEY, "chat", 1, 2) is None
        assert companion.registry.is_blocked(KEY)

    def test_revalidate(self, companion, storage) -> None:
        companion.invalidate(KEY)
        assert companion.revalidate(KEY) is True
        assert companion.is_valid(KEY)
        storage.delete_persona("p1")
        assert companion.revalidate(KEY) is False

    def test_delete_persona_invalidates_known_keys(self, companion) -> None:
        companion.focus(KEY)
        companion.enqueue_summary(KEY, "book", 1, 5)
        assert companion.delete_persona("p1") is True
        assert companion.registry.is_blocked(KEY)
        assert companion.queue.pending(KEY) == []
        assert companion.delete_persona("p1") is False

    def test_delete_character_invalidates_known_keys(self, companion) -> None:
        companion.focus(KEY)
        assert companion.delete_character("c1") is True
        assert not companion.is_valid(KEY)

    async def test_invalidate_aborts_running_summary(self, companion, llm) -> None:
        llm.gate = asyncio.Event()
        companion.focus(KEY)
        companion.enqueue_summary(KEY, "chat", 1, 2)
        running = asyncio.create_task(companion.scheduler.tick())
        await asyncio.sleep(0.01)
        companion.invalidate(KEY)
        outcome = await running
        assert outcome.status == "discarded"
        assert companion.list_cards(KEY, "chat") == []


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

class TestSummaries:
    async def test_manual_book_summary(self, companion, storage, llm) -> None:
        llm.replies = ["[Opening] Greek letters."]
        companion.focus(KEY)
        companion.enqueue_summary(KEY, "book", 1, 17)
        outcome = await companion.scheduler.tick()
        assert outcome.status == "ok"
        assert "Alpha beta gamma." in llm.calls[0][1]
        assert storage.get_book("b1").cards[0].content == "[Opening] Greek letters."
        assert companion.card_scope(KEY, "book") == ("book", "b1")

    async def test_auto_chat_summary_after_threshold(self, companion, storage, llm) -> None:
        companion.update_settings({"auto_chat_summary": {"enabled": True, "threshold": 4}})
        companion.focus(KEY)
        assert storage.get_chat_mark(KEY) == 0

        llm.replies = [REPLY, "We said hello."]
        companion.add_user_message(KEY, "Hi")
        await companion.reply(KEY)
        pending = companion.queue.pending(KEY)
        assert [(t.trigger, t.start, t.end) for t in pending] == [("auto", 1, 4)]

        outcome = await companion.scheduler.tick()
        assert outcome.status == "ok"
        assert storage.get_chat_mark(KEY) == 4
        assert [c.content for c in companion.list_cards(KEY, "chat")] == ["We said hello."]

    async def test_auto_book_summary_on_progress(self, companion, storage, llm) -> None:
        companion.update_settings({"auto_book_summary": {"enabled": True, "threshold": 10}})
        companion.focus(KEY)
        tasks = companion.update_read_progress(KEY, 25)
        assert [(t.start, t.end) for t in tasks] == [(1, 10), (11, 20)]

        llm.replies = ["first", "second"]
        await companion.scheduler.tick()
        await companion.scheduler.tick()
        assert [c.content for c in companion.list_cards(KEY, "book")] == ["first", "second"]
        assert storage.get_book_mark("b1") == 20

    async def test_stored_mark_survives_restart(self, companion, storage, llm, api_config) -> None:
        companion.update_settings({"auto_book_summary": {"enabled": True, "threshold": 10}})
        companion.focus(KEY)
        storage.set_book_mark("b1", 20)
        storage.set_read_offset("b1", 25)

        restarted = ReaderCompanion(storage, llm_factory=lambda config: llm, reveal_delays=(0, 0))
        restarted.focus(KEY)
        assert restarted.book_policy.mark(KEY) == 20
        assert restarted.queue.pending(KEY) == []
        tasks = restarted.update_read_progress(KEY, 31)
        assert [(t.start, t.end) for t in tasks] == [(21, 30)]

    def test_disabling_auto_drops_tasks_and_marks(self, companion, storage) -> None:
        companion.update_settings({"auto_book_summary": {"enabled": True, "threshold": 10}})
        companion.focus(KEY)
        companion.update_read_progress(KEY, 15)
        assert companion.queue.pending(KEY)
        companion.update_settings({"auto_book_summary": {"enabled": False}})
        assert companion.queue.pending(KEY) == []
        assert storage.get_book_mark("b1") is None
        assert not companion.book_policy.is_enabled(KEY)

    def test_settings_apply_to_scheduler(self, companion, api_config) -> None:
        companion.update_settings({
            "summary_api_enabled": True,
            "summary_api": {"endpoint": "http://other.test", "api_key": "k2", "model": "s1"},
        })
        assert companion.scheduler.effective_api().model == "s1"

    async def test_background_loop(self, companion, llm) -> None:
        llm.replies = ["recap"]
        companion.focus(KEY)
        companion.enqueue_summary(KEY, "chat", 1, 2)
        companion.start(interval=0.01)
        await _wait_for(lambda: companion.list_cards(KEY, "chat"))
        await companion.stop()
        assert [c.content for c in companion.list_cards(KEY, "chat")] == ["recap"]


# ---------------------------------------------------------------------------
# Highlights
# ---------------------------------------------------------------------------

class TestHighlightSnippets:
    def test_clipped_compacted_and_deduplicated(self) -> None:
        text = "one two  three four"
        ranges = [
            HighlightRange(start=8, end=4),
            HighlightRange(start=4, end=8),
            HighlightRange(start=9, end=30),
            HighlightRange(start=2, end=2),
        ]
        assert highlight_snippets(text, ranges, 0, 14) == ["two", "three"]

    def test_outside_window_ignored(self) -> None:
        assert highlight_snippets("abcdef", [HighlightRange(start=4, end=6)], 0, 3) == []

    def test_capped(self) -> None:
        text = "".join(chr(ord("a") + i) for i in range(20))
        ranges = [HighlightRange(start=i, end=i + 1) for i in range(20)]
        assert len(highlight_snippets(text, ranges, 0, 20)) == 12
