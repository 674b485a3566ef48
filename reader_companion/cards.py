"""Summary cards: normalization, aggregation and merge.

A card covers [start, end] of either message-index space (chat summaries) or
character-offset space (book summaries). Cards are stored unordered; readers
sort them by (start, end, created_at) and join their contents to get the
prefix summary that goes into prompts.

The functions here are pure and work on plain lists. SummaryCardStore keeps
the current list per scope and hands every change to an optional persistence
callback.

Scopes:
    ("chat", <conversation_key>)   chat history summaries
    ("book", <book_id>)            book summaries, shared by every
                                   conversation about that book
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable
from typing import Any, Literal, NamedTuple

from reader_companion.models import SummaryCard, new_id, now_ms

logger = logging.getLogger(__name__)

CardScope = tuple[Literal["chat", "book"], str]
CardLike = SummaryCard | dict[str, Any]


class AppliedCards(NamedTuple):
    cards: list[SummaryCard]
    aggregate: str


def _sort_key(card: SummaryCard) -> tuple[int, int, int]:
    return (card.start, card.end, card.created_at)


def normalize_card(card: CardLike) -> SummaryCard | None:
    """Order the range, clamp at 0, trim content. None if content is empty."""
    data = card.model_dump() if isinstance(card, SummaryCard) else dict(card)
    content = str(data.get("content") or "").strip()
    if not content:
        return None
    try:
        start = math.floor(float(data.get("start", 0)))
        end = math.floor(float(data.get("end", start)))
    except (TypeError, ValueError, OverflowError):
        return None
    low, high = max(0, min(start, end)), max(0, max(start, end))
    now = now_ms()
    return SummaryCard(
        id=str(data.get("id") or new_id("card")),
        content=content,
        start=low,
        end=high,
        created_at=data.get("created_at") or now,
        updated_at=data.get("updated_at") or now,
    )


def aggregate_text(cards: Iterable[SummaryCard]) -> str:
    return "\n".join(
        card.content.strip() for card in sorted(cards, key=_sort_key) if card.content.strip()
    )


def apply_cards(cards: Iterable[CardLike]) -> AppliedCards:
    """Normalize every card, drop empties, and compute the aggregate."""
    normalized = [c for c in (normalize_card(card) for card in cards) if c is not None]
    return AppliedCards(normalized, aggregate_text(normalized))


def merge_cards(cards: list[SummaryCard], card_ids: Iterable[str]) -> list[SummaryCard] | None:
    """Collapse the selected cards into one.

    Needs at least two distinct ids resolving to existing cards. The merged
    card spans min(start)..max(end) and joins contents with a blank line.
    Returns the new list sorted by range, or None if the merge cannot happen.
    """
    target = {card_id for card_id in card_ids if card_id}
    if len(target) < 2:
        return None
    selected = [card for card in cards if card.id in target]
    if len(selected) < 2:
        return None
    content = "\n\n".join(
        card.content.strip() for card in sorted(selected, key=_sort_key) if card.content.strip()
    ).strip()
    if not content:
        return None

    now = now_ms()
    merged = SummaryCard(
        id=new_id("card-merge"),
        content=content,
        start=min(card.start for card in selected),
        end=max(card.end for card in selected),
        created_at=now,
        updated_at=now,
    )
    kept = [card for card in cards if card.id not in target]
    return sorted([*kept, merged], key=_sort_key)


def edit_card(cards: list[SummaryCard], card_id: str, content: str) -> list[SummaryCard]:
    """Replace one card's content. Clearing the content drops the card."""
    now = now_ms()
    updated = [
        card.model_copy(update={"content": content, "updated_at": now}) if card.id == card_id else card
        for card in cards
    ]
    return apply_cards(updated).cards


def delete_card(cards: list[SummaryCard], card_id: str) -> list[SummaryCard]:
    return apply_cards(card for card in cards if card.id != card_id).cards


# ---------------------------------------------------------------------------
# SummaryCardStore: current cards per scope
# ---------------------------------------------------------------------------

PersistFn = Callable[[CardScope, list[SummaryCard]], None]
LoadFn = Callable[[CardScope], list[SummaryCard]]


class SummaryCardStore:
    """Holds normalized cards per scope and persists every committed change.

    Args:
        load:    Returns stored cards for a scope the first time it is read.
        persist: Called with the full card list after every change.
    """

    def __init__(self, load: LoadFn | None = None, persist: PersistFn | None = None) -> None:
        self._cards: dict[CardScope, list[SummaryCard]] = {}
        self._load = load
        self._persist = persist

    def cards(self, scope: CardScope) -> list[SummaryCard]:
        if scope not in self._cards:
            loaded = self._load(scope) if self._load else []
            self._cards[scope] = apply_cards(loaded).cards
        return list(self._cards[scope])

    def aggregate(self, scope: CardScope) -> str:
        return aggregate_text(self.cards(scope))

    def replace(self, scope: CardScope, cards: Iterable[CardLike]) -> AppliedCards:
        applied = apply_cards(cards)
        self._cards[scope] = applied.cards
        if self._persist:
            self._persist(scope, list(applied.cards))
        return applied

    def append(self, scope: CardScope, card: SummaryCard) -> AppliedCards:
        return self.replace(scope, [*self.cards(scope), card])

    def merge(self, scope: CardScope, card_ids: Iterable[str]) -> list[SummaryCard] | None:
        merged = merge_cards(self.cards(scope), card_ids)
        if merged is None:
            logger.debug("merge refused scope=%s", scope)
            return None
        return self.replace(scope, merged).cards

    def edit(self, scope: CardScope, card_id: str, content: str) -> list[SummaryCard]:
        return self.replace(scope, edit_card(self.cards(scope), card_id, content)).cards

    def delete(self, scope: CardScope, card_id: str) -> list[SummaryCard]:
        return self.replace(scope, delete_card(self.cards(scope), card_id)).cards

    def clear(self, scope: CardScope) -> None:
        self.replace(scope, [])
