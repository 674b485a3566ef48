"""Tests for reader_companion.reveal: BubbleRevealer."""

import asyncio

from reader_companion.models import ChatMessage
from reader_companion.reveal import BubbleRevealer


def _msgs(prefix: str, n: int, sender: str = "character") -> list[ChatMessage]:
    return [ChatMessage(id=f"{prefix}{i}", sender=sender, content=f"{prefix}{i}") for i in range(n)]


class TestReveal:
    async def test_commits_one_bubble_at_a_time(self) -> None:
        base = _msgs("u", 1, "user")
        ai = _msgs("a", 3)
        commits: list[list[str]] = []
        revealer = BubbleRevealer(first_delay=0, interval=0)
        done = await revealer.reveal(base, ai, lambda msgs: commits.append([m.id for m in msgs]))
        assert done is True
        assert commits == [
            ["u0"],
            ["u0", "a0"],
            ["u0", "a0", "a1"],
            ["u0", "a0", "a1", "a2"],
        ]

    async def test_invalidate_commits_full_list_once(self) -> None:
        base = _msgs("u", 1, "user")
        ai = _msgs("a", 4)
        commits: list[list[str]] = []
        revealer = BubbleRevealer(first_delay=0, interval=0.05)

        task = asyncio.create_task(
            revealer.reveal(base, ai, lambda msgs: commits.append([m.id for m in msgs]))
        )
        await asyncio.sleep(0.02)
        revealer.invalidate()
        assert await task is False
        assert commits[-1] == ["u0", "a0", "a1", "a2", "a3"]
        assert commits.count(commits[-1]) == 1

    async def test_newer_reveal_supersedes_older(self) -> None:
        revealer = BubbleRevealer(first_delay=0.01, interval=0.05)
        first_commits: list[int] = []
        old = asyncio.create_task(
            revealer.reveal([], _msgs("a", 3), lambda msgs: first_commits.append(len(msgs)))
        )
        await asyncio.sleep(0.02)
        newer = await revealer.reveal([], _msgs("b", 1), lambda msgs: None)
        assert newer is True
        assert await old is False
        assert first_commits[-1] == 3

    def test_invalidate_bumps_epoch(self) -> None:
        revealer = BubbleRevealer()
        before = revealer.epoch
        assert revealer.invalidate() == before + 1
