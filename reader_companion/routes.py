"""FastAPI API endpoints under /api.

Endpoint groups: health, settings, personas, characters, world book, books
(with highlights), and the per-conversation resources (messages,
reply/nudge/abort, generation status, reading progress, summary cards,
validity) nested under
/api/conversations/{key}/. The summary queue state is at /api/queue.

The ReaderCompanion instance lives on app.state.companion.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from reader_companion.models import (
    Book,
    Character,
    ChatQuote,
    GenerationMode,
    HighlightRange,
    Persona,
    SummaryKind,
    WorldBookEntry,
    WorldBookPosition,
)
from reader_companion.service import ReaderCompanion
from reader_companion.session import GenerationOk, GenerationResult

router = APIRouter()

_SKIP_STATUS = {
    "invalid-api-config": 400,
    "no-pending": 409,
    "duplicate": 409,
    "blocked": 409,
    "error": 502,
}


def get_companion(request: Request) -> ReaderCompanion:
    return request.app.state.companion


# ── Request bodies ───────────────────────────────────────


class CreateProfile(BaseModel):
    name: str
    nickname: str = ""
    description: str = ""


class CreateCharacter(CreateProfile):
    bound_world_book_categories: list[str] = []


class UpdateCharacter(BaseModel):
    name: str | None = None
    nickname: str | None = None
    description: str | None = None
    bound_world_book_categories: list[str] | None = None


class WorldBookBody(BaseModel):
    title: str = ""
    category: str
    content: str = ""
    insert_position: WorldBookPosition = "before"


class SaveBook(BaseModel):
    title: str = ""
    text: str = ""


class SendMessage(BaseModel):
    content: str
    quote: ChatQuote | None = None
    reply: bool = True


class ProgressBody(BaseModel):
    offset: int


class HighlightsBody(BaseModel):
    highlights: list[HighlightRange]


class SummaryRange(BaseModel):
    start: float
    end: float


class MergeBody(BaseModel):
    card_ids: list[str]


class EditCard(BaseModel):
    content: str


def _result_or_raise(result: GenerationResult) -> dict:
    """Surface non-silent skips as HTTP errors; everything else is a 200."""
    if not isinstance(result, GenerationOk) and not result.silent:
        status = _SKIP_STATUS.get(result.reason)
        if status:
            raise HTTPException(status, result.message or result.reason)
    return result.model_dump()


# ── Health & settings ────────────────────────────────────


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(companion: ReaderCompanion = Depends(get_companion)):
    """Get app settings (API credentials, reading, summaries, underline)."""
    return companion.get_settings()


@router.patch("/settings")
async def update_settings(body: dict, companion: ReaderCompanion = Depends(get_companion)):
    """Update app settings (partial merge)."""
    return companion.update_settings(body)


# ── Personas & characters ────────────────────────────────


@router.get("/personas")
async def list_personas(companion: ReaderCompanion = Depends(get_companion)):
    return companion.storage.get_personas()


@router.post("/personas", status_code=201)
async def create_persona(body: CreateProfile, companion: ReaderCompanion = Depends(get_companion)):
    persona = Persona(**body.model_dump())
    companion.storage.save_persona(persona)
    return persona


@router.delete("/personas/{persona_id}")
async def delete_persona(persona_id: str, companion: ReaderCompanion = Depends(get_companion)):
    """Delete a persona. Conversations using it become invalid."""
    if not companion.delete_persona(persona_id):
        raise HTTPException(404, "Persona not found")
    return {"ok": True}


@router.get("/characters")
async def list_characters(companion: ReaderCompanion = Depends(get_companion)):
    return companion.storage.get_characters()


@router.post("/characters", status_code=201)
async def create_character(body: CreateCharacter, companion: ReaderCompanion = Depends(get_companion)):
    character = Character(**body.model_dump())
    companion.storage.save_character(character)
    return character


@router.delete("/characters/{character_id}")
async def delete_character(character_id: str, companion: ReaderCompanion = Depends(get_companion)):
    """Delete a character. Conversations using it become invalid."""
    if not companion.delete_character(character_id):
        raise HTTPException(404, "Character not found")
    return {"ok": True}


@router.patch("/characters/{character_id}")
async def update_character(
    character_id: str, body: UpdateCharacter, companion: ReaderCompanion = Depends(get_companion),
):
    """Update character fields (partial), including bound world book categories."""
    character = companion.storage.get_character(character_id)
    if not character:
        raise HTTPException(404, "Character not found")
    character = character.model_copy(update=body.model_dump(exclude_unset=True))
    companion.storage.save_character(character)
    return character


# ── World book ───────────────────────────────────────────


@router.get("/world-book")
async def list_world_book(companion: ReaderCompanion = Depends(get_companion)):
    return companion.storage.get_world_book()


@router.post("/world-book", status_code=201)
async def add_world_book_entry(body: WorldBookBody, companion: ReaderCompanion = Depends(get_companion)):
    """Add an entry. Characters bound to its category see it in chat replies."""
    entry = WorldBookEntry(**body.model_dump())
    companion.storage.save_world_book_entry(entry)
    return entry


@router.patch("/world-book/{entry_id}")
async def update_world_book_entry(
    entry_id: str, body: WorldBookBody, companion: ReaderCompanion = Depends(get_companion),
):
    if not any(e.id == entry_id for e in companion.storage.get_world_book()):
        raise HTTPException(404, "World book entry not found")
    entry = WorldBookEntry(id=entry_id, **body.model_dump())
    companion.storage.save_world_book_entry(entry)
    return entry


@router.delete("/world-book/{entry_id}")
async def delete_world_book_entry(entry_id: str, companion: ReaderCompanion = Depends(get_companion)):
    if not companion.storage.delete_world_book_entry(entry_id):
        raise HTTPException(404, "World book entry not found")
    return companion.storage.get_world_book()


# ── Books ────────────────────────────────────────────────


@router.get("/books/{book_id}")
async def get_book(book_id: str, companion: ReaderCompanion = Depends(get_companion)):
    book = companion.storage.get_book(book_id)
    if not book:
        raise HTTPException(404, "Book not found")
    return book


@router.put("/books/{book_id}")
async def save_book(book_id: str, body: SaveBook, companion: ReaderCompanion = Depends(get_companion)):
    """Create or replace a book's title and text. Cards and progress are kept."""
    existing = companion.storage.get_book(book_id) or Book(id=book_id)
    book = existing.model_copy(update=body.model_dump())
    companion.storage.save_book(book)
    return book


@router.put("/books/{book_id}/highlights")
async def save_highlights(
    book_id: str, body: HighlightsBody, companion: ReaderCompanion = Depends(get_companion),
):
    """Replace the reader's highlights; those before the reading position reach the reply prompt."""
    if not companion.storage.get_book(book_id):
        raise HTTPException(404, "Book not found")
    return companion.storage.set_highlights(book_id, body.highlights)


# ── Conversations ────────────────────────────────────────


@router.post("/conversations/{key}/focus")
async def focus_conversation(key: str, companion: ReaderCompanion = Depends(get_companion)):
    """Select the conversation in view; only its summary tasks run."""
    companion.focus(key)
    return {"key": key, "valid": companion.is_valid(key)}


@router.get("/conversations/{key}/messages")
async def get_messages(key: str, companion: ReaderCompanion = Depends(get_companion)):
    return companion.storage.get_messages(key)


@router.post("/conversations/{key}/messages")
async def send_message(key: str, body: SendMessage, companion: ReaderCompanion = Depends(get_companion)):
    """Add a user message and, unless reply is false, ask for a reply."""
    message = companion.add_user_message(key, body.content, body.quote)
    if message is None:
        raise HTTPException(409, "Conversation needs an existing persona and character")
    if not body.reply:
        return {"message": message.model_dump(), "result": None}
    result = await companion.reply(key, "manual", wait_reveal=False)
    return {"message": message.model_dump(), "result": _result_or_raise(result)}


async def _generate(companion: ReaderCompanion, key: str, mode: GenerationMode) -> dict:
    return _result_or_raise(await companion.reply(key, mode, wait_reveal=False))


@router.post("/conversations/{key}/reply")
async def reply(key: str, companion: ReaderCompanion = Depends(get_companion)):
    """Manual reply to the pending user messages."""
    return await _generate(companion, key, "manual")


@router.post("/conversations/{key}/nudge")
async def nudge(key: str, companion: ReaderCompanion = Depends(get_companion)):
    """Proactive message from the character. Skips are always silent."""
    return await _generate(companion, key, "proactive")


@router.get("/conversations/{key}/status")
async def generation_status(key: str, companion: ReaderCompanion = Depends(get_companion)):
    return companion.registry.status_of(key)


@router.post("/conversations/{key}/abort")
async def abort_generation(key: str, companion: ReaderCompanion = Depends(get_companion)):
    return {"aborted": companion.abort(key)}


@router.get("/conversations/{key}/underline")
async def latest_underline(key: str, companion: ReaderCompanion = Depends(get_companion)):
    return companion.underlines.get(key)


@router.post("/conversations/{key}/progress")
async def update_progress(key: str, body: ProgressBody, companion: ReaderCompanion = Depends(get_companion)):
    """Record the furthest read offset; may queue auto book summaries."""
    tasks = companion.update_read_progress(key, body.offset)
    return {"queued": [t.model_dump() for t in tasks]}


@router.post("/conversations/{key}/invalidate")
async def invalidate(key: str, companion: ReaderCompanion = Depends(get_companion)):
    companion.invalidate(key)
    return {"ok": True}


@router.post("/conversations/{key}/revalidate")
async def revalidate(key: str, companion: ReaderCompanion = Depends(get_companion)):
    if not companion.revalidate(key):
        raise HTTPException(409, "Persona or character is missing")
    return {"ok": True}


# ── Summary cards ────────────────────────────────────────


def _card_listing(companion: ReaderCompanion, key: str, kind: SummaryKind) -> dict:
    scope = companion.card_scope(key, kind)
    return {"cards": companion.cards.cards(scope), "aggregate": companion.cards.aggregate(scope)}


@router.get("/conversations/{key}/summaries/{kind}")
async def list_summaries(key: str, kind: SummaryKind, companion: ReaderCompanion = Depends(get_companion)):
    return _card_listing(companion, key, kind)


@router.post("/conversations/{key}/summaries/{kind}", status_code=202)
async def request_summary(
    key: str, kind: SummaryKind, body: SummaryRange,
    companion: ReaderCompanion = Depends(get_companion),
):
    """Queue a manual summary of [start, end]."""
    task = companion.enqueue_summary(key, kind, body.start, body.end)
    if task is None:
        raise HTTPException(409, "Conversation is not valid")
    return task


@router.post("/conversations/{key}/summaries/{kind}/merge")
async def merge_summaries(
    key: str, kind: SummaryKind, body: MergeBody,
    companion: ReaderCompanion = Depends(get_companion),
):
    merged = companion.cards.merge(companion.card_scope(key, kind), body.card_ids)
    if merged is None:
        raise HTTPException(400, "Select at least two existing cards")
    return _card_listing(companion, key, kind)


@router.patch("/conversations/{key}/summaries/{kind}/{card_id}")
async def edit_summary(
    key: str, kind: SummaryKind, card_id: str, body: EditCard,
    companion: ReaderCompanion = Depends(get_companion),
):
    """Replace a card's content. Empty content deletes the card."""
    companion.cards.edit(companion.card_scope(key, kind), card_id, body.content)
    return _card_listing(companion, key, kind)


@router.delete("/conversations/{key}/summaries/{kind}/{card_id}")
async def delete_summary(
    key: str, kind: SummaryKind, card_id: str,
    companion: ReaderCompanion = Depends(get_companion),
):
    companion.cards.delete(companion.card_scope(key, kind), card_id)
    return _card_listing(companion, key, kind)


# ── Summary queue ────────────────────────────────────────


@router.get("/queue")
async def queue_state(companion: ReaderCompanion = Depends(get_companion)):
    return {
        "state": companion.queue.state(),
        "pending": companion.queue.pending(),
    }


@router.post("/queue/tick")
async def queue_tick(companion: ReaderCompanion = Depends(get_companion)):
    """Run one scheduler step now instead of waiting for the loop."""
    outcome = await companion.scheduler.tick()
    return outcome
