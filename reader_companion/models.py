"""Core domain models.

The registry, sessions, summary queue and card store all operate on these
types. Pydantic is used for validation and serialisation at every data
boundary. Timestamps are integer milliseconds since the epoch.
"""

from __future__ import annotations

import secrets
import time
from typing import Literal

from pydantic import BaseModel, Field

GenerationMode = Literal["manual", "proactive"]
ChatSender = Literal["user", "character"]
SummaryKind = Literal["chat", "book"]
SummaryTrigger = Literal["auto", "manual"]
Provider = Literal["openai", "claude", "gemini"]
WorldBookPosition = Literal["before", "after"]


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    """Return a unique id like "card-1718000000000-k3j9x2"."""
    return f"{prefix}-{now_ms()}-{secrets.token_hex(3)}"


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

class ChatQuote(BaseModel):
    """A quoted earlier message attached to a user message."""

    source_message_id: str
    sender: ChatSender
    sender_name: str
    content: str
    timestamp: int


class ChatMessage(BaseModel):
    """One chat bubble. Owned by the message store, read by the core."""

    id: str = Field(default_factory=lambda: new_id("msg"))
    sender: ChatSender
    content: str
    timestamp: int = Field(default_factory=now_ms)
    prompt_record: str = ""
    sent_to_ai: bool = False
    generation_id: str | None = None
    quote: ChatQuote | None = None
    edited_at: int | None = None


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

class SummaryTask(BaseModel):
    """A pending summarization job over a message-index or char-offset range."""

    id: str = Field(default_factory=lambda: new_id("sum"))
    kind: SummaryKind
    trigger: SummaryTrigger
    start: int
    end: int
    conversation_key: str
    created_at: int = Field(default_factory=now_ms)

    def dedupe_key(self) -> tuple[str, str, str, int, int]:
        return (self.conversation_key, self.kind, self.trigger, self.start, self.end)


class SummaryCard(BaseModel):
    """A produced summary covering [start, end] of chat or book."""

    id: str = Field(default_factory=lambda: new_id("card"))
    content: str
    start: int
    end: int
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


# ---------------------------------------------------------------------------
# Provider configuration
# ---------------------------------------------------------------------------

class ApiConfig(BaseModel):
    """Credentials and endpoint for one AI provider."""

    provider: Provider = "openai"
    endpoint: str = ""
    api_key: str = ""
    model: str = ""


# ---------------------------------------------------------------------------
# Reading context and underline directives
# ---------------------------------------------------------------------------

class ReadingContext(BaseModel):
    """Read-ahead excerpt supplied by the reader, ending at the reading position."""

    excerpt: str = ""
    excerpt_start: int = 0
    excerpt_end: int = 0
    highlighted_snippets: list[str] = Field(default_factory=list)


class UnderlineRange(BaseModel):
    start: int
    end: int
    generation_id: str | None = None


# ---------------------------------------------------------------------------
# Generation status
# ---------------------------------------------------------------------------

class GenerationStatus(BaseModel):
    is_active: bool
    mode: GenerationMode | None = None
    request_id: str | None = None


class GenerationStatusEvent(BaseModel):
    """Broadcast by GenerationRegistry on every begin/finish/abort."""

    conversation_key: str
    is_active: bool
    mode: GenerationMode | None = None
    request_id: str | None = None
    previous_mode: GenerationMode | None = None
    reason: str | None = None


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------

class Persona(BaseModel):
    """The reader's side of a conversation."""

    id: str = Field(default_factory=lambda: new_id("persona"))
    name: str
    nickname: str = ""
    description: str = ""


class Character(BaseModel):
    """The AI companion's side of a conversation."""

    id: str = Field(default_factory=lambda: new_id("char"))
    name: str
    nickname: str = ""
    description: str = ""
    bound_world_book_categories: list[str] = Field(default_factory=list)


class WorldBookEntry(BaseModel):
    """Lore placed around the character description for bound characters."""

    id: str = Field(default_factory=lambda: new_id("wb"))
    title: str = ""
    category: str
    content: str = ""
    insert_position: WorldBookPosition = "before"


class HighlightRange(BaseModel):
    """A reader highlight over book character offsets [start, end)."""

    start: int
    end: int


class Book(BaseModel):
    id: str
    title: str = ""
    text: str = ""
    read_offset: int = 0
    cards: list[SummaryCard] = Field(default_factory=list)
    highlights: list[HighlightRange] = Field(default_factory=list)
    auto_mark: int | None = None


class ConversationRecord(BaseModel):
    """Everything stored for one conversation key."""

    key: str
    messages: list[ChatMessage] = Field(default_factory=list)
    cards: list[SummaryCard] = Field(default_factory=list)
    auto_mark: int | None = None
