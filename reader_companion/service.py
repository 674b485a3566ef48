"""ReaderCompanion: wires the core services to storage.

One instance per process owns the registry, the summary queue and its
scheduler, the card store, both auto policies and the bubble revealer. It is
also the content source the scheduler summarizes from.

Conversation validity:
    A conversation is valid when its key names a persona and a character
    that both exist in storage and it has not been invalidated. invalidate()
    blocks the key in the registry, aborts any live chat generation, cancels
    a running summary for it, and purges its queued summary tasks.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from typing import Any

from reader_companion import config as config_mod
from reader_companion.auto_trigger import AutoSummaryPolicy
from reader_companion.cancellation import CancellationToken
from reader_companion.cards import CardScope, SummaryCardStore
from reader_companion.conversation import (
    ConversationParts,
    compact_text,
    is_conversation_complete,
    new_user_message,
    parse_conversation_key,
)
from reader_companion.llm import LLM
from reader_companion.models import (
    ApiConfig,
    Book,
    ChatMessage,
    ChatQuote,
    GenerationMode,
    HighlightRange,
    ReadingContext,
    SummaryCard,
    SummaryKind,
    SummaryTask,
    UnderlineRange,
)
from reader_companion.registry import GenerationRegistry
from reader_companion.reveal import BUBBLE_INTERVAL, FIRST_BUBBLE_DELAY, BubbleRevealer
from reader_companion.scheduler import SummaryScheduler, card_scope
from reader_companion.session import (
    GenerationOk,
    GenerationParams,
    GenerationResult,
    GenerationSession,
    GenerationSkip,
)
from reader_companion.storage import Storage
from reader_companion.summary_queue import SummaryTaskQueue
from reader_companion.world_book import character_sections

logger = logging.getLogger(__name__)

INVALID_REASON = "invalid-persona-or-character"
MAX_HIGHLIGHT_SNIPPETS = 12


def highlight_snippets(
    text: str, highlights: list[HighlightRange], start: int, end: int
) -> list[str]:
    """Highlighted text inside [start, end), clipped to it, compacted and deduplicated."""
    snippets: list[str] = []
    for highlight in highlights:
        low, high = sorted((max(0, highlight.start), max(0, highlight.end)))
        low, high = max(low, start), min(high, end)
        if high <= low:
            continue
        snippet = compact_text(text[low:high])
        if snippet and snippet not in snippets:
            snippets.append(snippet)
    return snippets[:MAX_HIGHLIGHT_SNIPPETS]


class ReaderCompanion:
    """Process-wide companion service.

    Args:
        storage:       JSON storage for settings, profiles, books and chats.
        llm_factory:   Builds the generate capability for an ApiConfig. Used
                       for both chat replies and summaries.
        rng:           Random source for the underline roll.
        reveal_delays: (first bubble delay, interval) in seconds.
    """

    def __init__(
        self,
        storage: Storage,
        llm_factory: Callable[[ApiConfig], LLM] | None = None,
        rng: random.Random | None = None,
        reveal_delays: tuple[float, float] = (FIRST_BUBBLE_DELAY, BUBBLE_INTERVAL),
    ) -> None:
        self.storage = storage
        settings = storage.get_config()

        self.registry = GenerationRegistry(
            manual_preempts_proactive=bool(settings["chat"]["manual_preempts_proactive"]),
        )
        self.queue = SummaryTaskQueue(is_valid=self.is_valid)
        self.cards = SummaryCardStore(load=storage.get_cards, persist=storage.save_cards)
        self.chat_policy = AutoSummaryPolicy(
            self.queue, "chat", settings["auto_chat_summary"]["threshold"],
            on_mark=storage.set_chat_mark,
        )
        self.book_policy = AutoSummaryPolicy(
            self.queue, "book", settings["auto_book_summary"]["threshold"],
            on_mark=self._store_book_mark,
        )
        self.scheduler = SummaryScheduler(
            self.queue, self.registry, self.cards, self,
            llm_factory=llm_factory,
            policies={"chat": self.chat_policy, "book": self.book_policy},
            is_valid=self._profiles_exist,
        )
        self.session = GenerationSession(self.registry, llm_factory=llm_factory, rng=rng)
        self.revealer = BubbleRevealer(*reveal_delays)
        self.underlines: dict[str, UnderlineRange] = {}
        self._known_keys: set[str] = set()
        self._stop: asyncio.Event | None = None
        self._loop_task: asyncio.Task | None = None
        self._reveals: set[asyncio.Task] = set()
        self._apply_settings(settings)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_settings(self) -> dict[str, Any]:
        return self.storage.get_config()

    def update_settings(self, fields: dict[str, Any]) -> dict[str, Any]:
        before = self.storage.get_config()
        settings = self.storage.update_config(fields)
        self._apply_settings(settings)
        for kind, group in (("chat", "auto_chat_summary"), ("book", "auto_book_summary")):
            was_on, now_on = before[group]["enabled"], settings[group]["enabled"]
            if was_on and not now_on:
                self._disable_auto(kind)
            elif now_on and not was_on and self.scheduler.focused:
                self._enable_auto(kind, self.scheduler.focused, rebaseline=True)
        return settings

    def _apply_settings(self, settings: dict[str, Any]) -> None:
        self.scheduler.configure(
            chat_api=config_mod.chat_api(settings),
            summary_api=config_mod.summary_api(settings),
            summary_api_enabled=bool(settings["summary_api_enabled"]),
        )
        self.chat_policy.threshold = int(settings["auto_chat_summary"]["threshold"])
        self.book_policy.threshold = int(settings["auto_book_summary"]["threshold"])

    # ------------------------------------------------------------------
    # Validity
    # ------------------------------------------------------------------

    def _profiles_exist(self, key: str) -> bool:
        parts = parse_conversation_key(key)
        if not parts or not is_conversation_complete(key):
            return False
        return (
            self.storage.get_persona(parts.persona_id) is not None
            and self.storage.get_character(parts.character_id) is not None
        )

    def is_valid(self, key: str) -> bool:
        return not self.registry.is_blocked(key) and self._profiles_exist(key)

    def invalidate(self, key: str, reason: str = INVALID_REASON) -> None:
        self.registry.block(key)
        self.registry.abort(key, reason)
        self.scheduler.cancel_running(key, reason)
        dropped = self.queue.purge(key)
        logger.info("conversation invalidated key=%s reason=%s dropped=%d", key, reason, dropped)

    def revalidate(self, key: str) -> bool:
        """Unblock a key whose persona and character exist again."""
        if not self._profiles_exist(key):
            return False
        self.registry.unblock(key)
        return True

    def _invalidate_where(self, predicate: Callable[[ConversationParts], bool]) -> list[str]:
        hit = []
        for key in sorted(self._known_keys):
            parts = parse_conversation_key(key)
            if parts and predicate(parts):
                self.invalidate(key)
                hit.append(key)
        return hit

    def delete_persona(self, persona_id: str) -> bool:
        if not self.storage.delete_persona(persona_id):
            return False
        self._invalidate_where(lambda parts: parts.persona_id == persona_id)
        return True

    def delete_character(self, character_id: str) -> bool:
        if not self.storage.delete_character(character_id):
            return False
        self._invalidate_where(lambda parts: parts.character_id == character_id)
        return True

    # ------------------------------------------------------------------
    # Focus and auto summaries
    # ------------------------------------------------------------------

    def focus(self, key: str | None) -> None:
        """Select the conversation in view. Stops any reveal in progress."""
        self.revealer.invalidate()
        self.scheduler.focus(key)
        if not key:
            return
        self._known_keys.add(key)
        settings = self.storage.get_config()
        if settings["auto_chat_summary"]["enabled"]:
            self._enable_auto("chat", key)
        if settings["auto_book_summary"]["enabled"]:
            self._enable_auto("book", key)

    def _counter(self, kind: SummaryKind, key: str) -> int:
        if kind == "chat":
            return len(self.storage.get_messages(key))
        book = self._book_for(key)
        return book.read_offset if book else 0

    def _stored_mark(self, kind: SummaryKind, key: str) -> int | None:
        if kind == "chat":
            return self.storage.get_chat_mark(key)
        book_id = self._book_id(key)
        return self.storage.get_book_mark(book_id) if book_id else None

    def _enable_auto(self, kind: SummaryKind, key: str, rebaseline: bool = False) -> None:
        policy = self.chat_policy if kind == "chat" else self.book_policy
        if policy.is_enabled(key) and not rebaseline:
            return
        mark = None if rebaseline else self._stored_mark(kind, key)
        if mark is None:
            mark = self._counter(kind, key)
            if kind == "chat":
                self.storage.set_chat_mark(key, mark)
            else:
                self._store_book_mark(key, mark)
        policy.enable(key, mark)
        policy.check(key, self._counter(kind, key))

    def _disable_auto(self, kind: SummaryKind) -> None:
        policy = self.chat_policy if kind == "chat" else self.book_policy
        for key in policy.conversations():
            policy.disable(key)
            if kind == "chat":
                self.storage.set_chat_mark(key, None)
            else:
                self._store_book_mark(key, None)

    def _store_book_mark(self, key: str, mark: int | None) -> None:
        book_id = self._book_id(key)
        if book_id:
            self.storage.set_book_mark(book_id, mark)

    def update_read_progress(self, key: str, offset: int) -> list[SummaryTask]:
        book_id = self._book_id(key)
        if not book_id:
            return []
        book = self.storage.set_read_offset(book_id, offset)
        return self.book_policy.check(key, book.read_offset)

    # ------------------------------------------------------------------
    # Manual summaries and cards
    # ------------------------------------------------------------------

    def enqueue_summary(
        self, key: str, kind: SummaryKind, start: float, end: float
    ) -> SummaryTask | None:
        self._known_keys.add(key)
        return self.queue.enqueue(kind, "manual", start, end, key)

    def card_scope(self, key: str, kind: SummaryKind) -> CardScope:
        return card_scope(kind, key)

    def list_cards(self, key: str, kind: SummaryKind) -> list[SummaryCard]:
        return self.cards.cards(self.card_scope(key, kind))

    # ------------------------------------------------------------------
    # Chat generation
    # ------------------------------------------------------------------

    def _book_id(self, key: str) -> str | None:
        parts = parse_conversation_key(key)
        return parts.book_id if parts else None

    def _book_for(self, key: str) -> Book | None:
        book_id = self._book_id(key)
        return self.storage.get_book(book_id) if book_id else None

    def _reading_context(self, key: str, excerpt_chars: int) -> ReadingContext:
        book = self._book_for(key)
        if not book or not book.text:
            return ReadingContext()
        end = max(0, min(book.read_offset, len(book.text)))
        start = max(0, end - max(0, excerpt_chars))
        return ReadingContext(
            excerpt=book.text[start:end], excerpt_start=start, excerpt_end=end,
            highlighted_snippets=highlight_snippets(book.text, book.highlights, start, end),
        )

    def _generation_params(
        self, key: str, mode: GenerationMode, token: CancellationToken | None
    ) -> GenerationParams | None:
        parts = parse_conversation_key(key)
        if not parts or not parts.persona_id or not parts.character_id:
            return None
        persona = self.storage.get_persona(parts.persona_id)
        character = self.storage.get_character(parts.character_id)
        if persona is None or character is None:
            return None

        settings = self.storage.get_config()
        chat = settings["chat"]
        book = self._book_for(key)
        world_book = character_sections(character, self.storage.get_world_book())

        def _remember_underline(underline: UnderlineRange) -> None:
            self.underlines[key] = underline

        return GenerationParams(
            conversation_key=key,
            mode=mode,
            messages=self.storage.get_messages(key),
            api_config=config_mod.chat_api(settings),
            user_name=persona.name,
            user_nickname=persona.nickname,
            character_name=character.name,
            character_nickname=character.nickname,
            character_description=character.description,
            book_title=book.title if book else "",
            book_summary=self.cards.aggregate(("book", parts.book_id)) if parts.book_id else "",
            chat_summary=self.cards.aggregate(("chat", key)),
            world_book_before=world_book.before,
            world_book_after=world_book.after,
            reading=self._reading_context(key, settings["reading"]["excerpt_chars"]),
            underline_enabled=bool(settings["underline"]["enabled"]),
            underline_probability=int(settings["underline"]["probability"]),
            on_underline=_remember_underline,
            token=token,
            memory_bubble_count=chat["memory_bubble_count"],
            reply_bubble_min=chat["reply_bubble_min"],
            reply_bubble_max=chat["reply_bubble_max"],
        )

    async def reply(
        self,
        key: str,
        mode: GenerationMode = "manual",
        token: CancellationToken | None = None,
        wait_reveal: bool = True,
    ) -> GenerationResult:
        """Generate the character's next reply and reveal it bubble by bubble.

        With wait_reveal=False the reveal keeps running after this returns.
        """
        self._known_keys.add(key)
        params = self._generation_params(key, mode, token)
        if params is None:
            return GenerationSkip(
                reason="blocked", silent=mode == "proactive",
                message="Conversation needs an existing persona and character",
            )
        result = await self.session.run(params)
        if isinstance(result, GenerationOk):
            reveal = self._reveal(key, result)
            if wait_reveal:
                await reveal
            else:
                task = asyncio.create_task(reveal)
                self._reveals.add(task)
                task.add_done_callback(self._reveals.discard)
        return result

    async def _reveal(self, key: str, result: GenerationOk) -> None:
        await self.revealer.reveal(
            result.base_messages, result.ai_messages,
            lambda messages: self.storage.upsert_messages(key, messages),
        )
        if self.chat_policy.is_enabled(key):
            self.chat_policy.check(key, len(self.storage.get_messages(key)))

    def add_user_message(
        self, key: str, content: str, quote: ChatQuote | None = None
    ) -> ChatMessage | None:
        """Store an unsent user message. None when the persona is missing."""
        parts = parse_conversation_key(key)
        persona = self.storage.get_persona(parts.persona_id) if parts and parts.persona_id else None
        if persona is None:
            return None
        self._known_keys.add(key)
        self.revealer.invalidate()
        message = new_user_message(persona.name, content, quote=quote)
        self.storage.upsert_messages(key, [message])
        if self.chat_policy.is_enabled(key):
            self.chat_policy.check(key, len(self.storage.get_messages(key)))
        return message

    def abort(self, key: str, reason: str = "aborted-by-user") -> bool:
        return self.registry.abort(key, reason)

    # ------------------------------------------------------------------
    # Summary content (SummarySources)
    # ------------------------------------------------------------------

    def chat_messages(self, conversation_key: str) -> list[ChatMessage]:
        return self.storage.get_messages(conversation_key)

    def book_text(self, conversation_key: str) -> str:
        book = self._book_for(conversation_key)
        return book.text if book else ""

    def speaker_names(self, conversation_key: str) -> tuple[str, str]:
        parts = parse_conversation_key(conversation_key)
        persona = self.storage.get_persona(parts.persona_id) if parts and parts.persona_id else None
        character = (
            self.storage.get_character(parts.character_id) if parts and parts.character_id else None
        )
        char_name = character.name if character else "Char"
        user_nickname = (persona.nickname or persona.name) if persona else "User"
        return char_name, user_nickname

    # ------------------------------------------------------------------
    # Scheduler loop
    # ------------------------------------------------------------------

    def start(self, interval: float = 0.5) -> None:
        if self._loop_task is not None:
            return
        self._stop = asyncio.Event()
        self._loop_task = asyncio.create_task(self.scheduler.run(self._stop, interval))

    async def stop(self) -> None:
        if self._loop_task is None or self._stop is None:
            return
        self._stop.set()
        self.scheduler.cancel_running(reason="shutdown")
        await self._loop_task
        self._loop_task = None
        self._stop = None
