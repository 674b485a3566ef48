"""World book entries scoped to a character.

A character is bound to zero or more categories. For a chat reply, every
entry in a bound category goes into one of two sections around the character
description, picked by its insert_position. Within a section entries are
ordered by their code: the first number found in "title content". Entries
without a number sort last, and stored order breaks ties.
"""

from __future__ import annotations

import math
import re
from typing import Any

from pydantic import BaseModel, Field

from reader_companion.models import Character, WorldBookEntry

_CODE_RE = re.compile(r"(\d+(?:\.\d+)?)")


class WorldBookSections(BaseModel):
    before: list[WorldBookEntry] = Field(default_factory=list)
    after: list[WorldBookEntry] = Field(default_factory=list)


def order_code(entry: WorldBookEntry) -> float:
    match = _CODE_RE.search(f"{entry.title} {entry.content}")
    return float(match.group(1)) if match else math.inf


def sort_by_code(entries: list[WorldBookEntry]) -> list[WorldBookEntry]:
    return sorted(entries, key=order_code)


def character_sections(
    character: Character | None, entries: list[WorldBookEntry]
) -> WorldBookSections:
    """Entries in the character's bound categories, split by insert position."""
    bound = {c.strip() for c in (character.bound_world_book_categories if character else [])}
    bound.discard("")
    if not bound:
        return WorldBookSections()
    scoped = [e for e in entries if e.category in bound]
    return WorldBookSections(
        before=sort_by_code([e for e in scoped if e.insert_position == "before"]),
        after=sort_by_code([e for e in scoped if e.insert_position == "after"]),
    )


def prompt_entries(entries: list[WorldBookEntry]) -> list[dict[str, Any]]:
    """Template rows: 1-based index, code text ("-" when absent), fallbacks for blanks."""
    rows = []
    for i, entry in enumerate(entries, start=1):
        code = order_code(entry)
        rows.append({
            "index": i,
            "code": f"{code:g}" if math.isfinite(code) else "-",
            "category": entry.category,
            "title": entry.title.strip() or f"Entry {i}",
            "content": entry.content.strip() or "(empty)",
        })
    return rows
