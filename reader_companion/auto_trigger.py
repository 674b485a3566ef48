"""Auto-summary production from a growing counter.

One policy per summary kind. For chat the counter is the message count; for
book it is the furthest read character offset. Each conversation keeps a
mark: how far auto summaries have been committed (persisted).

check() walks threshold-sized windows from max(mark, furthest end of this
kind's auto tasks still queued or running) up to the counter and emits one
auto task per full window, so several crossings between two checks still
yield one task each. A window whose task failed or was refused is no longer
in the queue, so the next check after the debounce window produces it again.
advance() is called when an auto task commits and moves the mark to its end.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from reader_companion.models import SummaryKind, SummaryTask
from reader_companion.summary_queue import SummaryTaskQueue

logger = logging.getLogger(__name__)

MarkListener = Callable[[str, int], None]


class AutoSummaryPolicy:
    """Feeds auto tasks of one kind into the queue.

    Args:
        queue:     Queue that receives the tasks.
        kind:      "chat" or "book".
        threshold: Window size. 0 or less turns the policy off.
        on_mark:   Called with (conversation_key, mark) after a commit moves
                   the mark.
    """

    def __init__(
        self,
        queue: SummaryTaskQueue,
        kind: SummaryKind,
        threshold: int,
        on_mark: MarkListener | None = None,
    ) -> None:
        self._queue = queue
        self.kind = kind
        self.threshold = int(threshold)
        self._on_mark = on_mark
        self._lock = threading.Lock()
        self._marks: dict[str, int] = {}

    def enable(self, conversation_key: str, baseline: int) -> None:
        """Start watching from baseline; nothing before it is summarized."""
        with self._lock:
            self._marks[conversation_key] = max(0, int(baseline))

    def disable(self, conversation_key: str) -> int:
        """Forget the conversation and drop its queued auto tasks."""
        with self._lock:
            self._marks.pop(conversation_key, None)
        return self._queue.drop_auto(conversation_key, self.kind)

    def is_enabled(self, conversation_key: str) -> bool:
        return conversation_key in self._marks

    def mark(self, conversation_key: str) -> int | None:
        return self._marks.get(conversation_key)

    def conversations(self) -> list[str]:
        with self._lock:
            return list(self._marks)

    def _produced_end(self, conversation_key: str) -> int:
        return max(
            (t.end for t in self._queue.pending(conversation_key)
             if t.kind == self.kind and t.trigger == "auto"),
            default=0,
        )

    def check(self, conversation_key: str, counter: int) -> list[SummaryTask]:
        if self.threshold <= 0:
            return []
        windows: list[tuple[int, int]] = []
        with self._lock:
            mark = self._marks.get(conversation_key)
            if mark is None:
                return []
            cursor = max(mark, self._produced_end(conversation_key))
            while counter - cursor >= self.threshold:
                windows.append((cursor + 1, cursor + self.threshold))
                cursor += self.threshold

        tasks = []
        for start, end in windows:
            task = self._queue.enqueue(self.kind, "auto", start, end, conversation_key)
            if task is not None:
                tasks.append(task)
        if windows:
            logger.debug(
                "auto %s summary key=%s windows=%d queued=%d",
                self.kind, conversation_key, len(windows), len(tasks),
            )
        return tasks

    def advance(self, conversation_key: str, end: int) -> int:
        """Move the committed mark to max(mark, end). Returns the new mark."""
        with self._lock:
            mark = max(self._marks.get(conversation_key, 0), int(end))
            self._marks[conversation_key] = mark
        if self._on_mark:
            self._on_mark(conversation_key, mark)
        return mark
