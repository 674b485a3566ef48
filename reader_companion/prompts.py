"""Handlebars prompt rendering for chat replies and summaries.

Three templates, each rendered with a context dict built by the matching
*_context() helper:

  CHAT_REPLY_PROMPT    - the character's next reply in the reading chat
  CHAT_SUMMARY_PROMPT  - a first-person recap of a slice of the chat
  BOOK_SUMMARY_PROMPT  - a sectioned summary of a slice of the book

Templates use triple-stash ({{{ }}}) for free text so book and chat content
reaches the model unescaped.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

import pybars

from reader_companion.models import ChatMessage, GenerationMode, ReadingContext, WorldBookEntry
from reader_companion.world_book import prompt_entries

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}}: iterate over the last N items."""
    result = []
    count = int(count)
    for item in (list(items)[-count:] if count > 0 else []):
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "last": _helper_last,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ---------------------------------------------------------------------------
# Chat reply
# ---------------------------------------------------------------------------

CHAT_REPLY_PROMPT = """\
You are {{{char.name}}}. Your chat display name is {{{char.nickname}}}.
You are reading a book together with {{{user.name}}} (display name: {{{user.nickname}}}).
{{#if proactive}}
This turn you are starting the conversation yourself; nobody asked you to reply.
{{else}}
This turn {{{user.nickname}}} asked you for a reply.
{{/if}}

## World book (before character)
{{#if world_book.before}}
{{#each world_book.before}}
[World book {{index}} | code {{code}} | {{{category}}}] {{{title}}}
{{{content}}}
{{/each}}
{{else}}
(none)
{{/if}}

## Character
{{{char.description}}}

## World book (after character)
{{#if world_book.after}}
{{#each world_book.after}}
[World book {{index}} | code {{code}} | {{{category}}}] {{{title}}}
{{{content}}}
{{/each}}
{{else}}
(none)
{{/if}}

## Book
{{#if book.title}}{{{book.title}}}{{else}}(no book selected){{/if}}

## Summary of the book so far
{{#if book.summary}}{{{book.summary}}}{{else}}(none yet){{/if}}

## Summary of earlier chat
{{#if chat_summary}}{{{chat_summary}}}{{else}}(none yet){{/if}}

## Text just before the reading position
{{#if reading.excerpt}}{{{reading.excerpt}}}{{else}}(nothing available){{/if}}

## Highlighted passages
{{#if reading.highlights}}
{{#each reading.highlights}}
- {{{this}}}
{{/each}}
{{else}}
(none; do not mention any highlighted sentence)
{{/if}}

## Recent chat (last {{memory_count}} messages)
{{#last history memory_count}}
{{{prompt_record}}}
{{/last}}

## Messages to answer
{{{pending}}}

## Rules
- Chat like a real person: short, casual lines.
- Never reveal anything past the reading position.
{{#if allow_underline}}
- You may add at most one line "[underline] <text>" quoting a passage from the text before the reading position that you want to talk about.
{{else}}
- Do not output any [underline] line.
{{/if}}

## Output format
- Output {{min_bubbles}} to {{max_bubbles}} lines.
- Every line starts with [bubble] followed by one chat message.
- No explanations, headings, numbering or code blocks.
"""


def chat_reply_context(
    *,
    mode: GenerationMode,
    history: list[ChatMessage],
    pending: list[ChatMessage],
    reading: ReadingContext,
    allow_underline: bool,
    user_name: str,
    user_nickname: str,
    character_name: str,
    character_nickname: str,
    character_description: str,
    book_title: str,
    book_summary: str,
    chat_summary: str,
    memory_count: int,
    min_bubbles: int,
    max_bubbles: int,
    world_book_before: list[WorldBookEntry] | None = None,
    world_book_after: list[WorldBookEntry] | None = None,
) -> dict[str, Any]:
    """Assemble template variables for CHAT_REPLY_PROMPT."""
    if pending:
        pending_text = "\n".join(m.prompt_record for m in pending)
    elif mode == "proactive":
        pending_text = "(none, you are opening the conversation)"
    else:
        latest_user = next((m for m in reversed(history) if m.sender == "user"), None)
        pending_text = latest_user.prompt_record if latest_user else "(no user message yet)"

    return {
        "proactive": mode == "proactive",
        "char": {
            "name": character_name,
            "nickname": character_nickname or character_name,
            "description": character_description,
        },
        "user": {"name": user_name, "nickname": user_nickname or user_name},
        "book": {"title": book_title, "summary": book_summary},
        "chat_summary": chat_summary,
        "world_book": {
            "before": prompt_entries(world_book_before or []),
            "after": prompt_entries(world_book_after or []),
        },
        "reading": {
            "excerpt": reading.excerpt.strip(),
            "highlights": reading.highlighted_snippets,
        },
        "history": [{"prompt_record": m.prompt_record} for m in history],
        "memory_count": memory_count,
        "pending": pending_text,
        "allow_underline": allow_underline,
        "min_bubbles": min_bubbles,
        "max_bubbles": max_bubbles,
    }


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

CHAT_SUMMARY_PROMPT = """\
You are {{{char_name}}}, looking back on your chat with {{{user_nickname}}}.

Condense the chat log below into one short paragraph of memory, in your own voice.
- Start with the time span: [YYYY/MM/DD HH:mm - YYYY/MM/DD HH:mm],
- Then 60 to 100 words. Say "I" for yourself and "{{{user_nickname}}}" for them.
- One connected paragraph: no lists, no numbering.
- Only what actually appears in the log. Do not invent anything.

## Chat log
{{#if lines}}
{{#each lines}}
{{{this}}}
{{/each}}
{{else}}
(empty)
{{/if}}
"""

BOOK_SUMMARY_PROMPT = """\
Summarize the following book excerpt section by section.
- Give each section a short title in square brackets.
- 60 to 100 words per section, concise.
- Stay strictly within the excerpt: no invented content, nothing from later in the book.

## Excerpt
{{#if excerpt}}{{{excerpt}}}{{else}}(empty){{/if}}
"""


def _summary_time(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y/%m/%d %H:%M")


def chat_summary_context(
    messages: list[ChatMessage], char_name: str, user_nickname: str
) -> dict[str, Any]:
    lines = []
    for msg in messages:
        label = user_nickname if msg.sender == "user" else char_name
        lines.append(f"[{_summary_time(msg.timestamp)}][{label}] {msg.content}")
    return {"char_name": char_name, "user_nickname": user_nickname, "lines": lines}


def book_summary_context(excerpt: str) -> dict[str, Any]:
    return {"excerpt": excerpt}
