"""Per-conversation generation registry.

Guarantees at most one live generation per conversation key and lets callers
query or observe that state.

    begin(key, mode)           → started (request_id, token) | duplicate | blocked
    finish(key, request_id, …) → clears the record only if request_id is current
    abort(key, reason)         → cancels the live token and clears the record
    status_of(key)             → pure read
    block(key) / unblock(key)  → mark a conversation invalid / valid again

Every begin/finish/abort that changes state emits a GenerationStatusEvent to
all subscribers before returning. Check-and-mutate runs under a lock, so two
racing begin() calls on one key yield exactly one "started" even when the
host uses OS threads.

The registry is an ordinary object: create one per process (or per test).
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from reader_companion.cancellation import CancellationToken
from reader_companion.models import (
    GenerationMode,
    GenerationStatus,
    GenerationStatusEvent,
    new_id,
)

logger = logging.getLogger(__name__)

StatusListener = Callable[[GenerationStatusEvent], None]


@dataclass
class _ActiveRecord:
    mode: GenerationMode
    request_id: str
    token: CancellationToken


@dataclass
class BeginResult:
    status: Literal["started", "duplicate", "blocked"]
    request_id: str | None = None
    token: CancellationToken | None = None
    active_mode: GenerationMode | None = None
    reason: str | None = None


class GenerationRegistry:
    """Mutual exclusion and status broadcast for chat generations.

    Args:
        manual_preempts_proactive: When True, a manual begin() cancels a live
            proactive generation on the same key and starts in its place.
            When False (default) any live generation yields "duplicate".
    """

    def __init__(self, manual_preempts_proactive: bool = False) -> None:
        self._lock = threading.Lock()
        self._active: dict[str, _ActiveRecord] = {}
        self._blocked: set[str] = set()
        self._listeners: list[StatusListener] = []
        self._manual_preempts_proactive = manual_preempts_proactive

    # ------------------------------------------------------------------
    # Mutual exclusion
    # ------------------------------------------------------------------

    def begin(self, key: str, mode: GenerationMode) -> BeginResult:
        events: list[GenerationStatusEvent] = []
        with self._lock:
            if not key:
                return BeginResult(status="blocked", reason="missing-conversation-key")
            if key in self._blocked:
                return BeginResult(status="blocked", reason="conversation-invalid")

            existing = self._active.get(key)
            if existing:
                preempt = (
                    self._manual_preempts_proactive
                    and mode == "manual"
                    and existing.mode == "proactive"
                )
                if not preempt:
                    return BeginResult(status="duplicate", active_mode=existing.mode)
                existing.token.cancel("aborted-by-manual")
                del self._active[key]
                events.append(GenerationStatusEvent(
                    conversation_key=key, is_active=False,
                    previous_mode=existing.mode, reason="aborted-by-manual",
                ))

            record = _ActiveRecord(
                mode=mode, request_id=new_id(mode), token=CancellationToken(),
            )
            self._active[key] = record
            events.append(GenerationStatusEvent(
                conversation_key=key, is_active=True,
                mode=mode, request_id=record.request_id,
            ))

        logger.debug("generation started key=%s mode=%s request=%s", key, mode, record.request_id)
        self._emit(events)
        return BeginResult(status="started", request_id=record.request_id, token=record.token)

    def finish(self, key: str, request_id: str, reason: str = "completed") -> bool:
        """Clear the active record. Returns False for a stale request id."""
        with self._lock:
            existing = self._active.get(key)
            if not existing or existing.request_id != request_id:
                return False
            del self._active[key]
        self._emit([GenerationStatusEvent(
            conversation_key=key, is_active=False,
            previous_mode=existing.mode, reason=reason,
        )])
        return True

    def abort(self, key: str, reason: str = "aborted") -> bool:
        """Cancel and clear the live generation for key, if any."""
        with self._lock:
            existing = self._active.pop(key, None)
        if not existing:
            return False
        logger.debug("generation aborted key=%s reason=%s", key, reason)
        existing.token.cancel(reason)
        self._emit([GenerationStatusEvent(
            conversation_key=key, is_active=False,
            previous_mode=existing.mode, reason=reason,
        )])
        return True

    def status_of(self, key: str) -> GenerationStatus:
        existing = self._active.get(key)
        if not existing:
            return GenerationStatus(is_active=False)
        return GenerationStatus(
            is_active=True, mode=existing.mode, request_id=existing.request_id,
        )

    # ------------------------------------------------------------------
    # Conversation validity
    # ------------------------------------------------------------------

    def block(self, key: str) -> None:
        with self._lock:
            self._blocked.add(key)

    def unblock(self, key: str) -> None:
        with self._lock:
            self._blocked.discard(key)

    def is_blocked(self, key: str) -> bool:
        return key in self._blocked

    # ------------------------------------------------------------------
    # Publish / subscribe
    # ------------------------------------------------------------------

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, events: list[GenerationStatusEvent]) -> None:
        for event in events:
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception:
                    logger.exception("generation status listener failed key=%s", event.conversation_key)
