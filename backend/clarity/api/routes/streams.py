"""Stream routes: reading a stream and every ledger operation on it."""

import json
import logging
from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, status
from sse_starlette.sse import EventSourceResponse

from clarity.api.deps import (
    CardGeneratorDep,
    CurrentUser,
    DbSession,
    SessionFactoryDep,
    get_owned_card,
    get_owned_stream,
)
from clarity.config import sanitize_error
from clarity.db.models import StreamCard
from clarity.db.session import atomic
from clarity.schemas.cards import card_read
from clarity.schemas.streams import (
    EntryUpdateRequest,
    GenerateCardRequest,
    InsertCardRequest,
    MoveCardRequest,
    MoveCardResponse,
    NormalizeResponse,
    PositionStatsRead,
    StreamEntryRead,
    StreamRead,
    StreamUpdate,
    StreamWithCards,
    ToggleResponse,
)
from clarity.services.card_factory import card_factory
from clarity.services.ledger import position_ledger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/streams", tags=["streams"])


def _entry_read(entry: StreamCard, card) -> StreamEntryRead:
    return StreamEntryRead(
        position=entry.position,
        depth=entry.depth,
        is_in_ai_context=entry.is_in_ai_context,
        is_collapsed=entry.is_collapsed,
        added_at=entry.added_at,
        card=card_read(card),
    )


# =============================================================================
# STREAM CRUD
# =============================================================================


@router.get("/{stream_id}", response_model=StreamWithCards)
async def get_stream(stream_id: UUID, current_user: CurrentUser, db: DbSession) -> StreamWithCards:
    """Get a stream with its cards in order. Marks the stream as accessed."""
    stream = await get_owned_stream(db, stream_id, current_user.id)
    stream.last_accessed_at = datetime.now(timezone.utc)
    entries = await position_ledger.list_entries(db, stream_id)
    return StreamWithCards(
        stream=StreamRead.model_validate(stream),
        cards=[_entry_read(entry, card) for entry, card in entries],
    )


@router.patch("/{stream_id}", response_model=StreamRead)
async def update_stream(
    stream_id: UUID, data: StreamUpdate, current_user: CurrentUser, db: DbSession
) -> StreamRead:
    stream = await get_owned_stream(db, stream_id, current_user.id)
    async with atomic(db):
        for key, value in data.model_dump(exclude_unset=True, exclude_none=True).items():
            setattr(stream, key, value)
    return StreamRead.model_validate(stream)


@router.delete("/{stream_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_stream(stream_id: UUID, current_user: CurrentUser, db: DbSession) -> None:
    """Delete a stream. Unsaved cards it owns are deleted with it; other cards are untouched."""
    stream = await get_owned_stream(db, stream_id, current_user.id)
    await card_factory.discard_stream(db, stream)


# =============================================================================
# LEDGER OPERATIONS
# =============================================================================


@router.post("/{stream_id}/cards", response_model=StreamEntryRead, status_code=status.HTTP_201_CREATED)
async def insert_card(
    stream_id: UUID, data: InsertCardRequest, current_user: CurrentUser, db: DbSession
) -> StreamEntryRead:
    """Add an existing card to the stream at `position` (append when omitted)."""
    await get_owned_stream(db, stream_id, current_user.id)
    card = await get_owned_card(db, data.card_id, current_user.id)
    entry = await position_ledger.insert_card(
        db,
        stream_id,
        card.id,
        data.position,
        depth=data.depth,
        is_in_ai_context=data.is_in_ai_context,
        is_collapsed=data.is_collapsed,
    )
    return _entry_read(entry, card)


@router.delete("/{stream_id}/cards/{card_id}")
async def remove_card(
    stream_id: UUID, card_id: UUID, current_user: CurrentUser, db: DbSession
) -> dict[str, bool]:
    """Remove a card from the stream. Unsaved cards owned by the stream are deleted."""
    await get_owned_stream(db, stream_id, current_user.id)
    removed = await card_factory.remove_from_stream(db, stream_id, card_id)
    return {"removed": removed}


@router.put("/{stream_id}/cards/{card_id}/position", response_model=MoveCardResponse)
async def move_card(
    stream_id: UUID,
    card_id: UUID,
    data: MoveCardRequest,
    current_user: CurrentUser,
    db: DbSession,
) -> MoveCardResponse:
    await get_owned_stream(db, stream_id, current_user.id)
    moved = await position_ledger.move_card(db, stream_id, card_id, data.position, data.depth)
    return MoveCardResponse(moved=moved)


@router.patch("/{stream_id}/cards/{card_id}", response_model=StreamEntryRead)
async def update_entry(
    stream_id: UUID,
    card_id: UUID,
    data: EntryUpdateRequest,
    current_user: CurrentUser,
    db: DbSession,
) -> StreamEntryRead:
    """Set depth, AI-context or collapsed state of a card in this stream."""
    await get_owned_stream(db, stream_id, current_user.id)
    card = await get_owned_card(db, card_id, current_user.id)
    entry = await position_ledger.update_entry(db, stream_id, card_id, **data.model_dump())
    return _entry_read(entry, card)


@router.post("/{stream_id}/cards/{card_id}/toggle-ai-context", response_model=ToggleResponse)
async def toggle_ai_context(
    stream_id: UUID, card_id: UUID, current_user: CurrentUser, db: DbSession
) -> ToggleResponse:
    await get_owned_stream(db, stream_id, current_user.id)
    return ToggleResponse(value=await position_ledger.toggle_ai_context(db, stream_id, card_id))


@router.post("/{stream_id}/cards/{card_id}/toggle-collapsed", response_model=ToggleResponse)
async def toggle_collapsed(
    stream_id: UUID, card_id: UUID, current_user: CurrentUser, db: DbSession
) -> ToggleResponse:
    await get_owned_stream(db, stream_id, current_user.id)
    return ToggleResponse(value=await position_ledger.toggle_collapsed(db, stream_id, card_id))


@router.post("/{stream_id}/normalize", response_model=NormalizeResponse)
async def normalize_positions(
    stream_id: UUID, current_user: CurrentUser, db: DbSession
) -> NormalizeResponse:
    """Repair the stream's ordering to 0..N-1. Idempotent."""
    await get_owned_stream(db, stream_id, current_user.id)
    return NormalizeResponse(updated=await position_ledger.normalize_positions(db, stream_id))


@router.get("/{stream_id}/stats", response_model=PositionStatsRead)
async def position_stats(stream_id: UUID, current_user: CurrentUser, db: DbSession) -> PositionStatsRead:
    await get_owned_stream(db, stream_id, current_user.id)
    stats = await position_ledger.position_stats(db, stream_id)
    return PositionStatsRead.model_validate(stats)


@router.get("/{stream_id}/ai-context", response_model=list[StreamEntryRead])
async def ai_context(stream_id: UUID, current_user: CurrentUser, db: DbSession) -> list[StreamEntryRead]:
    """Cards in the stream flagged for AI context, in stream order."""
    await get_owned_stream(db, stream_id, current_user.id)
    entries = await position_ledger.ai_context_cards(db, stream_id)
    return [_entry_read(entry, card) for entry, card in entries]


# =============================================================================
# AI GENERATION
# =============================================================================


@router.post("/{stream_id}/generate")
async def generate_card(
    stream_id: UUID,
    request: GenerateCardRequest,
    current_user: CurrentUser,
    db: DbSession,
    generator: CardGeneratorDep,
    session_factory: SessionFactoryDep,
):
    """
    Generate a new unsaved card with Claude, streamed as SSE.

    Events:
    - card: the new card's id and position (sent first)
    - message: a chunk of generated text
    - done: generation finished and the card is saved
    - error: generation failed; the card keeps any text received
    """
    stream = await get_owned_stream(db, stream_id, current_user.id)
    card, entry = await card_factory.create_empty_unsaved(
        db,
        stream.brain_id,
        stream_id,
        position=request.position,
        insert_after=request.insert_after,
    )

    async def event_generator():
        """Generate SSE events for the streaming response."""
        yield {"event": "card", "data": json.dumps({"card_id": str(card.id), "position": entry.position})}
        try:
            # The request session is closed once the response starts streaming
            async with session_factory() as session:
                async for chunk in generator.generate_into(session, card, stream_id, request.prompt):
                    yield {"event": "message", "data": chunk}
            yield {"event": "done", "data": str(card.id)}
        except Exception as e:
            logger.exception("Error during card generation")
            safe_msg = sanitize_error(e, generic_message="An error occurred while generating the card.")
            yield {"event": "error", "data": safe_msg}

    return EventSourceResponse(event_generator())
