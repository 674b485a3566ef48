"""One chat-reply generation attempt, end to end.

Flow (per attempt):
  1. Validate the API config. Invalid → skip "invalid-api-config" (never
     touches the registry).
  2. Pick pending messages. Manual: unsent user messages, else the last
     message if it is a user turn. Proactive: whatever the caller supplies.
  3. registry.begin(). duplicate/blocked → skip; caller must not touch chat.
  4. Render the prompt, call the model, normalize bubbles into [min, max].
  5. Resolve an optional [underline] directive against the excerpt.
  6. Stamp bubbles with one generation id and increasing timestamps; mark
     the pending messages sent_to_ai.
  7. Return GenerationOk.

Cancellation at any suspension point yields a silent "aborted" skip. Any
other failure yields an "error" skip, silent for proactive runs. Whatever
happens after a successful begin(), registry.finish() runs exactly once.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from reader_companion.bubbles import (
    find_underline_range,
    normalize_ai_bubble_lines,
    parse_ai_reply_payload,
)
from reader_companion.cancellation import CancellationToken
from reader_companion.conversation import build_character_prompt_record, compact_text
from reader_companion.errors import AbortError, ConfigurationError, EmptyResult
from reader_companion.llm import LLM, HttpLLM, validate_api_config
from reader_companion.models import (
    ApiConfig,
    ChatMessage,
    GenerationMode,
    ReadingContext,
    UnderlineRange,
    WorldBookEntry,
    new_id,
    now_ms,
)
from reader_companion.prompts import CHAT_REPLY_PROMPT, chat_reply_context, render_prompt
from reader_companion.registry import GenerationRegistry

logger = logging.getLogger(__name__)

DEFAULT_MEMORY_BUBBLE_COUNT = 100
DEFAULT_REPLY_BUBBLE_MIN = 3
DEFAULT_REPLY_BUBBLE_MAX = 8
BUBBLE_TIMESTAMP_STEP_MS = 1000

SkipReason = Literal[
    "invalid-api-config",
    "no-pending",
    "duplicate",
    "blocked",
    "aborted",
    "error",
]

LLMFactory = Callable[[ApiConfig], LLM]


class GenerationParams(BaseModel):
    """Everything one attempt needs. Prompt inputs are supplied, not computed."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    conversation_key: str
    mode: GenerationMode
    messages: list[ChatMessage]
    api_config: ApiConfig
    user_name: str = "User"
    user_nickname: str = ""
    character_name: str = "Char"
    character_nickname: str = ""
    character_description: str = ""
    book_title: str = ""
    book_summary: str = ""
    chat_summary: str = ""
    world_book_before: list[WorldBookEntry] = Field(default_factory=list)
    world_book_after: list[WorldBookEntry] = Field(default_factory=list)
    reading: ReadingContext = Field(default_factory=ReadingContext)
    underline_enabled: bool = False
    underline_probability: int = 0
    pending_messages: list[ChatMessage] | None = None
    allow_empty_pending: bool | None = None
    on_underline: Callable[[UnderlineRange], None] | None = None
    token: CancellationToken | None = None
    memory_bubble_count: int = DEFAULT_MEMORY_BUBBLE_COUNT
    reply_bubble_min: int = DEFAULT_REPLY_BUBBLE_MIN
    reply_bubble_max: int = DEFAULT_REPLY_BUBBLE_MAX


class GenerationOk(BaseModel):
    status: Literal["ok"] = "ok"
    base_messages: list[ChatMessage]
    ai_messages: list[ChatMessage]
    generation_id: str
    underline: UnderlineRange | None = None


class GenerationSkip(BaseModel):
    status: Literal["skip"] = "skip"
    reason: SkipReason
    silent: bool
    message: str | None = None


GenerationResult = GenerationOk | GenerationSkip


def manual_pending_messages(messages: list[ChatMessage]) -> list[ChatMessage]:
    """Unsent user messages, or the trailing user message if all were sent."""
    pending = [m for m in messages if m.sender == "user" and not m.sent_to_ai]
    if pending:
        return pending
    if messages and messages[-1].sender == "user":
        return [messages[-1]]
    return []


class GenerationSession:
    """Drives chat-reply attempts under the registry's mutual exclusion.

    Args:
        registry:    The process-wide GenerationRegistry.
        llm_factory: Builds the generate capability for an ApiConfig.
        rng:         Source for the underline probability roll.
        clock:       Millisecond clock used for bubble timestamps.
    """

    def __init__(
        self,
        registry: GenerationRegistry,
        llm_factory: LLMFactory | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._registry = registry
        self._llm_factory = llm_factory or (
            lambda config: HttpLLM.from_config(config, temperature=0.85)
        )
        self._rng = rng or random.Random()
        self._clock = clock

    async def run(self, params: GenerationParams) -> GenerationResult:
        mode = params.mode
        quiet = mode == "proactive"

        try:
            validate_api_config(params.api_config)
        except ConfigurationError as e:
            return GenerationSkip(reason="invalid-api-config", silent=quiet, message=str(e))

        if params.pending_messages is not None:
            pending = params.pending_messages
        elif mode == "manual":
            pending = manual_pending_messages(params.messages)
        else:
            pending = []
        allow_empty = params.allow_empty_pending if params.allow_empty_pending is not None else quiet
        if not pending and not allow_empty:
            return GenerationSkip(
                reason="no-pending", silent=quiet, message="No user message waiting for a reply",
            )

        began = self._registry.begin(params.conversation_key, mode)
        if began.status == "duplicate":
            return GenerationSkip(reason="duplicate", silent=quiet)
        if began.status == "blocked":
            return GenerationSkip(reason="blocked", silent=quiet, message=began.reason)

        token = began.token
        unlink = token.link(params.token) if params.token else None
        try:
            return await self._generate(params, pending, token)
        except AbortError:
            return GenerationSkip(reason="aborted", silent=True)
        except Exception as e:
            if token.cancelled:
                return GenerationSkip(reason="aborted", silent=True)
            logger.warning(
                "generation failed key=%s mode=%s: %s", params.conversation_key, mode, e,
            )
            return GenerationSkip(reason="error", silent=quiet, message=str(e) or "Generation failed")
        finally:
            if unlink:
                unlink()
            self._registry.finish(params.conversation_key, began.request_id, "completed")

    async def _generate(
        self,
        params: GenerationParams,
        pending: list[ChatMessage],
        token: CancellationToken,
    ) -> GenerationOk:
        token.raise_if_cancelled()

        bubble_min = min(params.reply_bubble_min, params.reply_bubble_max)
        bubble_max = max(params.reply_bubble_min, params.reply_bubble_max)
        probability = max(0, min(100, params.underline_probability))
        allow_underline = params.underline_enabled and self._rng.random() * 100 < probability

        prompt = render_prompt(CHAT_REPLY_PROMPT, chat_reply_context(
            mode=params.mode,
            history=params.messages,
            pending=pending,
            reading=params.reading,
            allow_underline=allow_underline,
            user_name=params.user_name,
            user_nickname=params.user_nickname,
            character_name=params.character_name,
            character_nickname=params.character_nickname,
            character_description=params.character_description,
            book_title=params.book_title,
            book_summary=params.book_summary,
            chat_summary=params.chat_summary,
            memory_count=max(0, params.memory_bubble_count),
            min_bubbles=bubble_min,
            max_bubbles=bubble_max,
            world_book_before=params.world_book_before,
            world_book_after=params.world_book_after,
        ))

        llm = self._llm_factory(params.api_config)
        raw = await llm("chat_reply", prompt, token)
        token.raise_if_cancelled()
        if not raw.strip():
            raise EmptyResult("The model returned an empty reply")

        parsed = parse_ai_reply_payload(raw)
        lines = normalize_ai_bubble_lines(parsed.bubble_payload or raw, bubble_min, bubble_max)
        generation_id = new_id("gen")

        underline = None
        if allow_underline and parsed.underline_text:
            found = find_underline_range(
                parsed.underline_text, params.reading.excerpt, params.reading.excerpt_start,
            )
            if found:
                underline = UnderlineRange(start=found[0], end=found[1], generation_id=generation_id)
                if params.on_underline:
                    try:
                        params.on_underline(underline)
                    except Exception:
                        logger.exception("underline consumer failed key=%s", params.conversation_key)

        now = self._clock()
        ai_messages = []
        for index, line in enumerate(lines):
            timestamp = now + index * BUBBLE_TIMESTAMP_STEP_MS
            content = compact_text(line)
            ai_messages.append(ChatMessage(
                sender="character",
                content=content,
                timestamp=timestamp,
                prompt_record=build_character_prompt_record(params.character_name, content, timestamp),
                sent_to_ai=True,
                generation_id=generation_id,
            ))

        pending_ids = {m.id for m in pending}
        base_messages = [
            m.model_copy(update={"sent_to_ai": True}) if m.id in pending_ids else m
            for m in params.messages
        ]
        logger.debug(
            "generation ok key=%s bubbles=%d underline=%s",
            params.conversation_key, len(ai_messages), underline is not None,
        )
        return GenerationOk(
            base_messages=base_messages,
            ai_messages=ai_messages,
            generation_id=generation_id,
            underline=underline,
        )
