"""Tests for world book scoping, ordering and prompt rows."""

import math

from reader_companion.models import Character, WorldBookEntry
from reader_companion.world_book import character_sections, order_code, prompt_entries


def _entry(title: str, category: str = "lore", position: str = "before", content: str = "") -> WorldBookEntry:
    return WorldBookEntry(title=title, category=category, content=content, insert_position=position)


# ── order_code ───────────────────────────────────────────────


def test_code_from_title():
    assert order_code(_entry("03 Harbor")) == 3


def test_code_from_content_when_title_has_none():
    assert order_code(_entry("Harbor", content="rule 1.5 applies")) == 1.5


def test_no_code_sorts_last():
    assert math.isinf(order_code(_entry("Harbor")))


# ── character_sections ───────────────────────────────────────


def test_unbound_character_gets_nothing():
    entries = [_entry("1 Harbor")]
    sections = character_sections(Character(name="Mira"), entries)
    assert sections.before == [] and sections.after == []


def test_missing_character_gets_nothing():
    assert character_sections(None, [_entry("1 Harbor")]).before == []


def test_only_bound_categories():
    mira = Character(name="Mira", bound_world_book_categories=[" lore ", ""])
    entries = [_entry("1 Harbor"), _entry("2 Rival", category="people")]
    sections = character_sections(mira, entries)
    assert [e.title for e in sections.before] == ["1 Harbor"]


def test_split_by_position_and_ordered_by_code():
    mira = Character(name="Mira", bound_world_book_categories=["lore"])
    entries = [
        _entry("Untitled lore"),
        _entry("10 Tides"),
        _entry("2 Harbor"),
        _entry("5 Epilogue", position="after"),
        _entry("2 Again"),
    ]
    sections = character_sections(mira, entries)
    assert [e.title for e in sections.before] == ["2 Harbor", "2 Again", "10 Tides", "Untitled lore"]
    assert [e.title for e in sections.after] == ["5 Epilogue"]


# ── prompt_entries ───────────────────────────────────────────


def test_prompt_rows():
    rows = prompt_entries([_entry("3 Harbor", content=" Fog. "), _entry("  ", content="")])
    assert rows[0] == {"index": 1, "code": "3", "category": "lore", "title": "3 Harbor", "content": "Fog."}
    assert rows[1]["code"] == "-"
    assert rows[1]["title"] == "Entry 2"
    assert rows[1]["content"] == "(empty)"
