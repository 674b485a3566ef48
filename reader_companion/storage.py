"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM: reads and writes go through plain helper
methods that load and dump JSON.

Directory layout:

    {base}/
      config.json               ← app settings (see config.py)
      personas.json             ← list of Persona objects
      characters.json           ← list of Character objects
      world_book.json           ← list of WorldBookEntry objects
      books/
        {book_id}.json          ← Book: text, read offset, highlights, book cards, auto mark
      conversations/
        {quoted key}.json       ← ConversationRecord: messages, chat cards, auto mark
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any
from urllib.parse import quote

from reader_companion import config as config_mod
from reader_companion.cards import CardScope
from reader_companion.models import (
    Book,
    Character,
    ChatMessage,
    ConversationRecord,
    HighlightRange,
    Persona,
    SummaryCard,
    WorldBookEntry,
)


def _file_name(value: str) -> str:
    return quote(value, safe="") + ".json"


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._books_root = base_path / "books"
        self._conv_root = base_path / "conversations"
        self._books_root.mkdir(parents=True, exist_ok=True)
        self._conv_root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _book_file(self, book_id: str) -> Path:
        return self._books_root / _file_name(book_id)

    def _conv_file(self, key: str) -> Path:
        return self._conv_root / _file_name(key)

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2))

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_config(self) -> dict[str, Any]:
        return config_mod.get_config(self._base)

    def update_config(self, fields: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            return config_mod.update_config(self._base, fields)

    # ------------------------------------------------------------------
    # Personas and characters
    # ------------------------------------------------------------------

    def get_personas(self) -> list[Persona]:
        path = self._base / "personas.json"
        if not path.exists():
            return []
        return [Persona.model_validate(p) for p in self._read_json(path)]

    def get_persona(self, persona_id: str) -> Persona | None:
        return next((p for p in self.get_personas() if p.id == persona_id), None)

    def save_persona(self, persona: Persona) -> None:
        """Upsert a persona by id."""
        with self._lock:
            personas = self.get_personas()
            for i, p in enumerate(personas):
                if p.id == persona.id:
                    personas[i] = persona
                    break
            else:
                personas.append(persona)
            self._write_json(self._base / "personas.json", [p.model_dump() for p in personas])

    def delete_persona(self, persona_id: str) -> bool:
        with self._lock:
            personas = self.get_personas()
            kept = [p for p in personas if p.id != persona_id]
            if len(kept) == len(personas):
                return False
            self._write_json(self._base / "personas.json", [p.model_dump() for p in kept])
            return True

    def get_characters(self) -> list[Character]:
        path = self._base / "characters.json"
        if not path.exists():
            return []
        return [Character.model_validate(c) for c in self._read_json(path)]

    def get_character(self, character_id: str) -> Character | None:
        return next((c for c in self.get_characters() if c.id == character_id), None)

    def save_character(self, character: Character) -> None:
        """Upsert a character by id."""
        with self._lock:
            chars = self.get_characters()
            for i, c in enumerate(chars):
                if c.id == character.id:
                    chars[i] = character
                    break
            else:
                chars.append(character)
            self._write_json(self._base / "characters.json", [c.model_dump() for c in chars])

    def delete_character(self, character_id: str) -> bool:
        with self._lock:
            chars = self.get_characters()
            kept = [c for c in chars if c.id != character_id]
            if len(kept) == len(chars):
                return False
            self._write_json(self._base / "characters.json", [c.model_dump() for c in kept])
            return True

    # ------------------------------------------------------------------
    # World book
    # ------------------------------------------------------------------

    def get_world_book(self) -> list[WorldBookEntry]:
        path = self._base / "world_book.json"
        if not path.exists():
            return []
        return [WorldBookEntry.model_validate(e) for e in self._read_json(path)]

    def save_world_book(self, entries: list[WorldBookEntry]) -> None:
        with self._lock:
            self._write_json(self._base / "world_book.json", [e.model_dump() for e in entries])

    def save_world_book_entry(self, entry: WorldBookEntry) -> None:
        """Upsert an entry by id; new entries are appended."""
        with self._lock:
            entries = self.get_world_book()
            for i, e in enumerate(entries):
                if e.id == entry.id:
                    entries[i] = entry
                    break
            else:
                entries.append(entry)
            self.save_world_book(entries)

    def delete_world_book_entry(self, entry_id: str) -> bool:
        with self._lock:
            entries = self.get_world_book()
            kept = [e for e in entries if e.id != entry_id]
            if len(kept) == len(entries):
                return False
            self.save_world_book(kept)
            return True

    # ------------------------------------------------------------------
    # Books
    # ------------------------------------------------------------------

    def get_book(self, book_id: str) -> Book | None:
        path = self._book_file(book_id)
        if not path.exists():
            return None
        return Book.model_validate_json(path.read_text())

    def save_book(self, book: Book) -> None:
        with self._lock:
            self._book_file(book.id).write_text(book.model_dump_json(indent=2))

    def _update_book(self, book_id: str, **fields: Any) -> Book:
        with self._lock:
            book = self.get_book(book_id) or Book(id=book_id)
            book = book.model_copy(update=fields)
            self.save_book(book)
            return book

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def get_conversation(self, key: str) -> ConversationRecord:
        path = self._conv_file(key)
        if not path.exists():
            return ConversationRecord(key=key)
        return ConversationRecord.model_validate_json(path.read_text())

    def save_conversation(self, record: ConversationRecord) -> None:
        with self._lock:
            self._conv_file(record.key).write_text(record.model_dump_json(indent=2))

    def _update_conversation(self, key: str, **fields: Any) -> ConversationRecord:
        with self._lock:
            record = self.get_conversation(key).model_copy(update=fields)
            self.save_conversation(record)
            return record

    def get_messages(self, key: str) -> list[ChatMessage]:
        return self.get_conversation(key).messages

    def save_messages(self, key: str, messages: list[ChatMessage]) -> None:
        self._update_conversation(key, messages=list(messages))

    def upsert_messages(self, key: str, messages: list[ChatMessage]) -> list[ChatMessage]:
        """Replace stored messages by id and append unknown ones in order.

        Messages already stored but absent from `messages` are kept.
        """
        with self._lock:
            existing = self.get_messages(key)
            incoming = {m.id: m for m in messages}
            merged = [incoming.pop(m.id, m) for m in existing]
            merged.extend(m for m in messages if m.id in incoming)
            self.save_messages(key, merged)
            return merged

    # ------------------------------------------------------------------
    # Summary cards and auto marks
    # ------------------------------------------------------------------

    def get_cards(self, scope: CardScope) -> list[SummaryCard]:
        kind, scope_key = scope
        if kind == "chat":
            return self.get_conversation(scope_key).cards
        book = self.get_book(scope_key)
        return book.cards if book else []

    def save_cards(self, scope: CardScope, cards: list[SummaryCard]) -> None:
        kind, scope_key = scope
        if kind == "chat":
            self._update_conversation(scope_key, cards=list(cards))
        else:
            self._update_book(scope_key, cards=list(cards))

    def get_chat_mark(self, key: str) -> int | None:
        return self.get_conversation(key).auto_mark

    def set_chat_mark(self, key: str, mark: int | None) -> None:
        self._update_conversation(key, auto_mark=mark)

    def get_book_mark(self, book_id: str) -> int | None:
        book = self.get_book(book_id)
        return book.auto_mark if book else None

    def set_book_mark(self, book_id: str, mark: int | None) -> None:
        self._update_book(book_id, auto_mark=mark)

    def set_read_offset(self, book_id: str, offset: int) -> Book:
        return self._update_book(book_id, read_offset=max(0, int(offset)))

    def set_highlights(self, book_id: str, highlights: list[HighlightRange]) -> Book:
        return self._update_book(book_id, highlights=list(highlights))
