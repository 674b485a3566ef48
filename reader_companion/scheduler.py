"""Single-slot summary scheduler.

One tick of the loop:
  1. Skip if a task is already running or the focused conversation is
     invalid. Only tasks of the focused conversation are eligible.
  2. select_next() over those tasks.
  3. Summary API enabled but incomplete → drop the task (surfaced only for
     manual triggers).
  4. Chat generation active on the same credentials → defer, task stays.
  5. Run: slice the source [start-1, end), render the prompt, call the model.
  6. Just before commit, discard the result if a manual task now covers the
     same (key, kind), the task was removed from the queue, or the
     conversation became invalid.
  7. Append a SummaryCard and, for auto tasks, advance the policy mark.
  8. Remove the task from the queue whatever happened.

Exactly one task runs at a time across the process.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Literal, Protocol

from pydantic import BaseModel, ConfigDict

from reader_companion.auto_trigger import AutoSummaryPolicy
from reader_companion.cancellation import CancellationToken
from reader_companion.cards import CardScope, SummaryCardStore
from reader_companion.conversation import parse_conversation_key
from reader_companion.errors import AbortError, ConfigurationError, EmptyResult
from reader_companion.llm import LLM, HttpLLM, is_same_api_config, validate_api_config
from reader_companion.models import ApiConfig, ChatMessage, SummaryCard, SummaryKind, SummaryTask
from reader_companion.prompts import (
    BOOK_SUMMARY_PROMPT,
    CHAT_SUMMARY_PROMPT,
    book_summary_context,
    chat_summary_context,
    render_prompt,
)
from reader_companion.registry import GenerationRegistry
from reader_companion.summary_queue import SummaryTaskQueue

logger = logging.getLogger(__name__)

OutcomeStatus = Literal["ok", "failed", "discarded", "deferred", "dropped"]
LLMFactory = Callable[[ApiConfig], LLM]
OutcomeListener = Callable[["SummaryOutcome"], None]


class SummarySources(Protocol):
    """Content the scheduler summarizes. Supplied by the host."""

    def chat_messages(self, conversation_key: str) -> list[ChatMessage]: ...

    def book_text(self, conversation_key: str) -> str: ...

    def speaker_names(self, conversation_key: str) -> tuple[str, str]:
        """Return (character name, user nickname) for chat summaries."""
        ...


class SummaryOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    task: SummaryTask
    status: OutcomeStatus
    card: SummaryCard | None = None
    message: str | None = None
    surfaced: bool = False


def card_scope(kind: SummaryKind, conversation_key: str) -> CardScope:
    """Chat cards live per conversation, book cards per book."""
    if kind == "chat":
        return ("chat", conversation_key)
    parts = parse_conversation_key(conversation_key)
    book_id = parts.book_id if parts and parts.book_id else conversation_key
    return ("book", book_id)


class SummaryScheduler:
    """Runs queued summary tasks one at a time for the focused conversation.

    Args:
        queue:       Shared SummaryTaskQueue.
        registry:    GenerationRegistry, read for validity and chat activity.
        cards:       Store that receives produced cards.
        sources:     Supplies chat messages, book text and speaker names.
        llm_factory: Builds the generate capability for an ApiConfig.
        policies:    Auto policies per kind, advanced on auto commits.
        is_valid:    Extra validity check for a conversation key.
    """

    def __init__(
        self,
        queue: SummaryTaskQueue,
        registry: GenerationRegistry,
        cards: SummaryCardStore,
        sources: SummarySources,
        llm_factory: LLMFactory | None = None,
        policies: Mapping[str, AutoSummaryPolicy] | None = None,
        is_valid: Callable[[str], bool] | None = None,
    ) -> None:
        self._queue = queue
        self._registry = registry
        self._cards = cards
        self._sources = sources
        self._llm_factory = llm_factory or (
            lambda config: HttpLLM.from_config(config, temperature=0.3)
        )
        self._policies = dict(policies or {})
        self._is_valid_hook = is_valid
        self._focused: str | None = None
        self._running_token: CancellationToken | None = None
        self._listeners: list[OutcomeListener] = []

        self.chat_api = ApiConfig()
        self.summary_api: ApiConfig | None = None
        self.summary_api_enabled = False

    # ------------------------------------------------------------------
    # Host state
    # ------------------------------------------------------------------

    def focus(self, conversation_key: str | None) -> None:
        self._focused = conversation_key or None

    @property
    def focused(self) -> str | None:
        return self._focused

    def configure(
        self,
        chat_api: ApiConfig,
        summary_api: ApiConfig | None = None,
        summary_api_enabled: bool = False,
    ) -> None:
        self.chat_api = chat_api
        self.summary_api = summary_api
        self.summary_api_enabled = summary_api_enabled

    def effective_api(self) -> ApiConfig:
        if self.summary_api_enabled and self.summary_api is not None:
            return self.summary_api
        return self.chat_api

    def is_valid(self, conversation_key: str) -> bool:
        if not conversation_key or self._registry.is_blocked(conversation_key):
            return False
        if self._is_valid_hook and not self._is_valid_hook(conversation_key):
            return False
        return True

    def cancel_running(self, conversation_key: str | None = None, reason: str = "aborted") -> bool:
        """Abort the in-flight task, optionally only if it belongs to a key."""
        running = self._queue.running
        token = self._running_token
        if running is None or token is None:
            return False
        if conversation_key is not None and running.conversation_key != conversation_key:
            return False
        token.cancel(reason)
        return True

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def tick(self) -> SummaryOutcome | None:
        if self._queue.running is not None:
            return None
        key = self._focused
        if not key or not self.is_valid(key):
            return None

        task = self._queue.select_next(key)
        if task is None:
            return None

        api = self.effective_api()
        if self.summary_api_enabled:
            try:
                validate_api_config(api)
            except ConfigurationError as e:
                self._queue.remove(task.id)
                surfaced = task.trigger == "manual"
                if surfaced:
                    logger.warning("summary task dropped, summary API incomplete: %s", e)
                return self._publish(SummaryOutcome(
                    task=task, status="dropped", message=str(e), surfaced=surfaced,
                ))

        if self._registry.status_of(key).is_active and is_same_api_config(self.chat_api, api):
            logger.debug("summary deferred, chat active on same credentials key=%s", key)
            return SummaryOutcome(task=task, status="deferred")

        if not self._queue.mark_running(task):
            return None
        self._running_token = CancellationToken()
        try:
            outcome = await self._execute(task, api, self._running_token)
        finally:
            self._running_token = None
            self._queue.remove(task.id)
            self._queue.mark_idle()
        return self._publish(outcome)

    async def run(self, stop_event: asyncio.Event, interval: float = 0.5) -> None:
        """Tick until stop_event is set. A failing tick never ends the loop."""
        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("summary scheduler tick failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _build_prompt(self, task: SummaryTask) -> str:
        key = task.conversation_key
        low = max(0, task.start - 1)
        if task.kind == "chat":
            messages = self._sources.chat_messages(key)[low:task.end]
            char_name, user_nickname = self._sources.speaker_names(key)
            return render_prompt(
                CHAT_SUMMARY_PROMPT, chat_summary_context(messages, char_name, user_nickname),
            )
        excerpt = self._sources.book_text(key)[low:task.end]
        return render_prompt(BOOK_SUMMARY_PROMPT, book_summary_context(excerpt))

    def _superseded(self, task: SummaryTask) -> bool:
        if not self._queue.contains(task.id):
            return True
        if task.trigger == "auto" and self._queue.has_pending_manual(
            task.conversation_key, task.kind, exclude_id=task.id
        ):
            return True
        return not self.is_valid(task.conversation_key)

    async def _execute(
        self, task: SummaryTask, api: ApiConfig, token: CancellationToken
    ) -> SummaryOutcome:
        manual = task.trigger == "manual"
        logger.debug(
            "summary task start id=%s kind=%s trigger=%s range=%d-%d",
            task.id, task.kind, task.trigger, task.start, task.end,
        )
        try:
            prompt = self._build_prompt(task)
            llm = self._llm_factory(api)
            raw = await llm(f"{task.kind}_summary", prompt, token)
            if self._superseded(task):
                logger.debug("summary result discarded id=%s", task.id)
                return SummaryOutcome(task=task, status="discarded")
            content = raw.strip()
            if not content:
                raise EmptyResult("The model returned an empty summary")
        except AbortError as e:
            return SummaryOutcome(task=task, status="discarded", message=e.reason)
        except Exception as e:
            if manual:
                logger.warning("manual summary failed id=%s: %s", task.id, e)
            else:
                logger.debug("auto summary failed id=%s: %s", task.id, e)
            return SummaryOutcome(
                task=task, status="failed", message=str(e) or "Summary failed", surfaced=manual,
            )

        card = SummaryCard(content=content, start=task.start, end=task.end)
        applied = self._cards.append(card_scope(task.kind, task.conversation_key), card)
        committed = next((c for c in applied.cards if c.id == card.id), card)
        if not manual:
            policy = self._policies.get(task.kind)
            if policy is not None:
                policy.advance(task.conversation_key, task.end)
        logger.debug("summary card committed id=%s card=%s", task.id, committed.id)
        return SummaryOutcome(task=task, status="ok", card=committed)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: OutcomeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _publish(self, outcome: SummaryOutcome) -> SummaryOutcome:
        for listener in list(self._listeners):
            try:
                listener(outcome)
            except Exception:
                logger.exception("summary outcome listener failed")
        return outcome
