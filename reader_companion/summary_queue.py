"""Pending summarization jobs across all conversations.

Enqueue rules (the whole step runs under one lock):
  - start/end are rounded to integers and ordered.
  - auto: a repeat of the same (key, kind, trigger, start, end) inside the
    debounce window is dropped. An auto task is also refused while a manual
    task for the same (key, kind) is queued or running.
  - manual: every queued auto task for the same (key, kind) is removed
    first, whatever its range.
  - an identical task already in the queue is never duplicated.

Selection: score = KIND_PRIORITY[kind] + MANUAL_BOOST if manual, highest
first, oldest first on ties. Only the relative order is a contract: any
manual task beats any auto task, and chat beats book within a trigger.

The running task stays in the queue until the scheduler removes it, so a
manual enqueue can still see and supersede it.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable, Iterable

from pydantic import BaseModel

from reader_companion.models import SummaryKind, SummaryTask, SummaryTrigger

logger = logging.getLogger(__name__)

KIND_PRIORITY: dict[str, int] = {"chat": 2, "book": 1}
MANUAL_BOOST = 10
DEBOUNCE_SECONDS = 3.0


class QueueState(BaseModel):
    pending_count: int
    running: bool
    running_task_id: str | None = None


QueueListener = Callable[[QueueState], None]


def _loose_int(value: float) -> int:
    """Round half up; non-finite values become 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return math.floor(number + 0.5)


def task_score(task: SummaryTask) -> int:
    score = KIND_PRIORITY.get(task.kind, 0)
    if task.trigger == "manual":
        score += MANUAL_BOOST
    return score


def select_next(tasks: Iterable[SummaryTask]) -> SummaryTask | None:
    """Highest score wins; earliest created_at breaks ties."""
    best: SummaryTask | None = None
    for task in tasks:
        if best is None:
            best = task
            continue
        if (task_score(task), -task.created_at) > (task_score(best), -best.created_at):
            best = task
    return best


class SummaryTaskQueue:
    """Ordered set of pending summary tasks with debounce and preemption.

    Args:
        debounce_seconds: Window in which an identical auto enqueue is dropped.
        clock:            Monotonic clock in seconds, injectable for tests.
        is_valid:         Optional predicate; enqueues for conversations it
                          rejects are refused.
    """

    def __init__(
        self,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        is_valid: Callable[[str], bool] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._tasks: list[SummaryTask] = []
        self._debounce: dict[tuple[str, str, str, int, int], float] = {}
        self._debounce_seconds = debounce_seconds
        self._clock = clock
        self._is_valid = is_valid
        self._running: SummaryTask | None = None
        self._listeners: list[QueueListener] = []

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(
        self,
        kind: SummaryKind,
        trigger: SummaryTrigger,
        start: float,
        end: float,
        conversation_key: str,
    ) -> SummaryTask | None:
        """Queue a task. Returns the queued (or already queued) task, or None."""
        if self._is_valid and not self._is_valid(conversation_key):
            logger.debug("summary enqueue refused, conversation invalid key=%s", conversation_key)
            return None

        low, high = sorted((_loose_int(start), _loose_int(end)))
        task = SummaryTask(
            kind=kind, trigger=trigger, start=low, end=high,
            conversation_key=conversation_key,
        )
        dedupe_key = task.dedupe_key()

        with self._lock:
            if trigger == "auto":
                now = self._clock()
                self._prune_debounce(now)
                last = self._debounce.get(dedupe_key)
                if last is not None and now - last < self._debounce_seconds:
                    return None
                if self._has_manual(conversation_key, kind):
                    logger.debug(
                        "auto summary refused, manual pending key=%s kind=%s", conversation_key, kind,
                    )
                    return None
                self._debounce[dedupe_key] = now
            else:
                before = len(self._tasks)
                self._tasks = [
                    t for t in self._tasks
                    if not (t.conversation_key == conversation_key and t.kind == kind and t.trigger == "auto")
                ]
                if len(self._tasks) != before:
                    logger.debug(
                        "manual summary superseded %d auto task(s) key=%s kind=%s",
                        before - len(self._tasks), conversation_key, kind,
                    )

            existing = next((t for t in self._tasks if t.dedupe_key() == dedupe_key), None)
            if existing is None:
                self._tasks.append(task)
            result = existing or task

        self._notify()
        return result

    def _prune_debounce(self, now: float) -> None:
        stale = [k for k, t in self._debounce.items() if now - t >= self._debounce_seconds]
        for k in stale:
            del self._debounce[k]

    def _has_manual(self, conversation_key: str, kind: str, exclude_id: str | None = None) -> bool:
        return any(
            t.conversation_key == conversation_key and t.kind == kind
            and t.trigger == "manual" and t.id != exclude_id
            for t in self._tasks
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def pending(self, conversation_key: str | None = None) -> list[SummaryTask]:
        with self._lock:
            return [
                t for t in self._tasks
                if conversation_key is None or t.conversation_key == conversation_key
            ]

    def contains(self, task_id: str) -> bool:
        with self._lock:
            return any(t.id == task_id for t in self._tasks)

    def has_pending_manual(
        self, conversation_key: str, kind: str, exclude_id: str | None = None
    ) -> bool:
        with self._lock:
            return self._has_manual(conversation_key, kind, exclude_id)

    def select_next(self, conversation_key: str | None = None) -> SummaryTask | None:
        return select_next(self.pending(conversation_key))

    @property
    def running(self) -> SummaryTask | None:
        return self._running

    def state(self) -> QueueState:
        with self._lock:
            running = self._running
            return QueueState(
                pending_count=len(self._tasks),
                running=running is not None,
                running_task_id=running.id if running else None,
            )

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def remove(self, task_id: str) -> bool:
        with self._lock:
            before = len(self._tasks)
            self._tasks = [t for t in self._tasks if t.id != task_id]
            removed = len(self._tasks) != before
        if removed:
            self._notify()
        return removed

    def purge(self, conversation_key: str) -> int:
        """Drop every task for a conversation. Returns how many were dropped."""
        return self._remove_where(lambda t: t.conversation_key == conversation_key)

    def drop_auto(self, conversation_key: str, kind: str) -> int:
        """Drop queued auto tasks of one kind (auto summary switched off)."""
        return self._remove_where(
            lambda t: t.conversation_key == conversation_key and t.kind == kind and t.trigger == "auto"
        )

    def _remove_where(self, predicate: Callable[[SummaryTask], bool]) -> int:
        with self._lock:
            before = len(self._tasks)
            self._tasks = [t for t in self._tasks if not predicate(t)]
            dropped = before - len(self._tasks)
        if dropped:
            self._notify()
        return dropped

    # ------------------------------------------------------------------
    # Running flag
    # ------------------------------------------------------------------

    def mark_running(self, task: SummaryTask) -> bool:
        """Claim the single execution slot. False if another task holds it."""
        with self._lock:
            if self._running is not None:
                return False
            self._running = task
        self._notify()
        return True

    def mark_idle(self) -> None:
        with self._lock:
            self._running = None
        self._notify()

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: QueueListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        state = self.state()
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("summary queue listener failed")
