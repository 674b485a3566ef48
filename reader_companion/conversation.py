"""Conversation keys and transcript records.

A conversation is one (book, persona, character) triple. Its key is the
string form below; everything scoped per conversation (mutual exclusion,
summary tasks, chat summary cards) is keyed by it.

    book:<book_id|none>::persona:<persona_id|none>::character:<character_id|none>
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import NamedTuple

from reader_companion.models import ChatMessage, ChatQuote

_KEY_RE = re.compile(r"^book:(.+?)::persona:(.+?)::character:(.+)$")


class ConversationParts(NamedTuple):
    book_id: str | None
    persona_id: str | None
    character_id: str | None


def build_conversation_key(
    book_id: str | None, persona_id: str | None, character_id: str | None
) -> str:
    return (
        f"book:{book_id or 'none'}"
        f"::persona:{persona_id or 'none'}"
        f"::character:{character_id or 'none'}"
    )


def parse_conversation_key(key: str) -> ConversationParts | None:
    """Split a key back into its ids. Returns None if the key is malformed."""
    match = _KEY_RE.match(key or "")
    if not match:
        return None
    book_id, persona_id, character_id = (
        None if part == "none" else part for part in match.groups()
    )
    return ConversationParts(book_id, persona_id, character_id)


def is_conversation_complete(key: str) -> bool:
    """True when the key names both a persona and a character."""
    parts = parse_conversation_key(key)
    return bool(parts and parts.persona_id and parts.character_id)


# ---------------------------------------------------------------------------
# Prompt records: the one-line transcript form of each message
# ---------------------------------------------------------------------------

def compact_text(value: str) -> str:
    """Collapse whitespace runs to single spaces and trim."""
    return re.sub(r"\s+", " ", value or "").strip()


def format_minute(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M")


def build_user_prompt_record(
    user_name: str, content: str, timestamp: int, quote: ChatQuote | None = None
) -> str:
    record = f"[sender:{user_name}][time:{format_minute(timestamp)}] {compact_text(content)}"
    if quote:
        record += (
            f" [quote:sender={quote.sender_name};"
            f"time={format_minute(quote.timestamp)};"
            f"content={compact_text(quote.content)}]"
        )
    return record


def build_character_prompt_record(character_name: str, content: str, timestamp: int) -> str:
    return f"[sender:{character_name}][time:{format_minute(timestamp)}] {compact_text(content)}"


def new_user_message(
    user_name: str, content: str, timestamp: int | None = None, quote: ChatQuote | None = None
) -> ChatMessage:
    """Build an unsent user message with its prompt record filled in."""
    msg = ChatMessage(sender="user", content=compact_text(content), quote=quote)
    if timestamp is not None:
        msg.timestamp = timestamp
    msg.prompt_record = build_user_prompt_record(user_name, msg.content, msg.timestamp, quote)
    return msg
