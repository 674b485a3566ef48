"""Incremental reveal of a generated reply, one bubble at a time.

The reveal is guarded by an integer epoch. Each reveal captures the epoch
when it starts and compares it after every sleep; invalidate() bumps it
(conversation switched, view closed, a newer reply arrived). On mismatch the
reveal stops and commits the complete final list once, so the stored chat
never ends up missing bubbles that were produced but not yet shown.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from reader_companion.models import ChatMessage

logger = logging.getLogger(__name__)

FIRST_BUBBLE_DELAY = 0.42
BUBBLE_INTERVAL = 1.5

CommitFn = Callable[[list[ChatMessage]], None]


class BubbleRevealer:
    def __init__(
        self, first_delay: float = FIRST_BUBBLE_DELAY, interval: float = BUBBLE_INTERVAL
    ) -> None:
        self._epoch = 0
        self._first_delay = first_delay
        self._interval = interval

    @property
    def epoch(self) -> int:
        return self._epoch

    def invalidate(self) -> int:
        """Stop any reveal in progress. Returns the new epoch."""
        self._epoch += 1
        return self._epoch

    async def reveal(
        self,
        base_messages: list[ChatMessage],
        ai_messages: list[ChatMessage],
        commit: CommitFn,
    ) -> bool:
        """Commit base + each AI bubble in order. False if cut short."""
        epoch = self.invalidate()
        final = [*base_messages, *ai_messages]
        commit(list(base_messages))

        for index in range(len(ai_messages)):
            await asyncio.sleep(self._first_delay if index == 0 else self._interval)
            if self._epoch != epoch:
                logger.debug("reveal superseded at bubble %d/%d", index, len(ai_messages))
                commit(final)
                return False
            commit([*base_messages, *ai_messages[:index + 1]])
        return True
