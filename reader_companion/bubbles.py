"""Model reply parsing: chat bubbles and the optional underline directive.

Reply format requested from the model:
  [bubble] First chat line.
  [bubble] Second chat line.
  [underline] exact sentence from the read-ahead excerpt   (optional, at most 1)

Models drift from the format, so normalize_ai_bubble_lines() applies a
fallback chain until the bubble count lands inside [min, max]:
  1. <bubble>…</bubble> tags, then "[bubble]" line markers
  2. one bubble per plain line, leading enumeration ("1.", "2)") stripped
  3. resplit the whole text at sentence punctuation
  4. fixed-size chunks
  5. pad by repeating the first bubble
Anything over max is truncated.
"""

from __future__ import annotations

import math
import re
from typing import NamedTuple

from reader_companion.conversation import compact_text

FALLBACK_BUBBLE = "Got it"

_FENCE_RE = re.compile(r"```(?:[\w-]+)?\n?")
_TAG_RE = re.compile(r"<bubble>(.*?)</bubble>", re.IGNORECASE | re.DOTALL)
_MARKER_RE = re.compile(r"^(?:\[bubble\]|【bubble】)\s*(.+)$", re.IGNORECASE)
_ENUM_RE = re.compile(r"^\d+[.)．、]\s*")
_SENTENCE_SPLIT_RE = re.compile(r"[。！？；\n]+|(?<=[.!?;])\s+")
_UNDERLINE_RE = re.compile(r"^\s*\[underline\]\s*(.+?)\s*$", re.IGNORECASE)


class ParsedReply(NamedTuple):
    bubble_payload: str
    underline_text: str | None


def ensure_bubble_count(items: list[str], min_count: int, max_count: int) -> list[str]:
    """Reshape items into between min_count and max_count non-empty lines."""
    min_count = max(1, min_count)
    max_count = max(min_count, max_count)

    lines = [line for line in (compact_text(item) for item in items) if line]
    if len(lines) > max_count:
        lines = lines[:max_count]
    if len(lines) >= min_count:
        return lines

    raw = compact_text(" ".join(lines))
    sentences = [s for s in (compact_text(part) for part in _SENTENCE_SPLIT_RE.split(raw)) if s]
    if sentences:
        lines = sentences
    if len(lines) > max_count:
        lines = lines[:max_count]
    if len(lines) >= min_count:
        return lines

    if raw:
        chunk_size = max(2, math.ceil(len(raw) / min_count))
        chunks: list[str] = []
        for index in range(0, len(raw), chunk_size):
            if len(chunks) >= max_count:
                break
            chunk = compact_text(raw[index:index + chunk_size])
            if chunk:
                chunks.append(chunk)
        if chunks:
            lines = chunks

    fallback = lines[0] if lines else FALLBACK_BUBBLE
    while len(lines) < min_count:
        lines.append(fallback)
    return lines[:max_count]


def normalize_ai_bubble_lines(raw: str, min_count: int, max_count: int) -> list[str]:
    trimmed = (raw or "").strip()
    if not trimmed:
        return ensure_bubble_count([], min_count, max_count)

    cleaned = _FENCE_RE.sub("", trimmed).replace("```", "")

    tagged = [t for t in (compact_text(m) for m in _TAG_RE.findall(cleaned)) if t]
    if tagged:
        return ensure_bubble_count(tagged, min_count, max_count)

    lines = [line.strip() for line in cleaned.splitlines() if line.strip()]
    marked = []
    for line in lines:
        match = _MARKER_RE.match(line)
        if match and compact_text(match.group(1)):
            marked.append(compact_text(match.group(1)))
    if marked:
        return ensure_bubble_count(marked, min_count, max_count)

    plain = [p for p in (compact_text(_ENUM_RE.sub("", line)) for line in lines) if p]
    return ensure_bubble_count(plain or [cleaned], min_count, max_count)


def parse_ai_reply_payload(raw: str) -> ParsedReply:
    """Split the first [underline] directive from the bubble lines."""
    underline: str | None = None
    bubble_lines: list[str] = []
    for line in (raw or "").splitlines():
        match = _UNDERLINE_RE.match(line)
        if match:
            if underline is None:
                text = compact_text(match.group(1))
                if text:
                    underline = text
            continue
        bubble_lines.append(line)
    return ParsedReply("\n".join(bubble_lines), underline)


def find_underline_range(
    underline_text: str, excerpt: str, excerpt_start: int
) -> tuple[int, int] | None:
    """Locate underline_text in the excerpt, ignoring whitespace and case.

    The last occurrence wins, since the excerpt ends at the reading position.
    Returns global (start, end) offsets or None.
    """
    needle = re.sub(r"\s+", "", underline_text or "").lower()
    if not needle or not excerpt:
        return None

    compact_chars: list[str] = []
    raw_index: list[int] = []
    for index, char in enumerate(excerpt):
        if char.isspace():
            continue
        lowered = char.lower()
        compact_chars.append(lowered if len(lowered) == 1 else char)
        raw_index.append(index)
    if not compact_chars:
        return None

    match_start = "".join(compact_chars).rfind(needle)
    if match_start < 0:
        return None
    match_end = match_start + len(needle) - 1

    start = excerpt_start + raw_index[match_start]
    end = excerpt_start + raw_index[match_end] + 1
    if end <= start:
        return None
    return start, end
