"""Card routes: creation, reads with links, edits, conversion and deletion."""

import logging
from uuid import UUID

from fastapi import APIRouter, status

from clarity.api.deps import (
    CurrentUser,
    DbSession,
    JobQueueDep,
    get_owned_brain,
    get_owned_card,
    get_owned_stream,
)
from clarity.db.models import JobType
from clarity.schemas.cards import (
    CardDetail,
    CardLinkRead,
    CardLinksResponse,
    CardRead,
    CardStreamRead,
    CardUpdate,
    ConvertToSavedRequest,
    LinkedCardRead,
    LinkResolutionResponse,
    SavedCardCreate,
    UnsavedCardCreate,
    card_read,
)
from clarity.schemas.streams import StreamEntryRead
from clarity.services.card_factory import card_factory
from clarity.services.ledger import position_ledger
from clarity.services.link_resolver import LinkedCard, link_resolver, parse_links

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cards", tags=["cards"])


def _link_read(link: LinkedCard) -> CardLinkRead:
    return CardLinkRead(
        card=LinkedCardRead.model_validate(link.card),
        link_text=link.link_text,
        position=link.position,
    )


async def _links(db, card_id: UUID) -> CardLinksResponse:
    forward = await link_resolver.forward_links(db, card_id)
    back = await link_resolver.backlinks(db, card_id)
    return CardLinksResponse(
        card_id=card_id,
        forward_links=[_link_read(link) for link in forward],
        backlinks=[_link_read(link) for link in back],
    )


async def _queue_link_resolution(job_queue, card, user_id: UUID) -> None:
    if parse_links(card.content):
        await job_queue.enqueue(
            JobType.LINK_RESOLUTION,
            {"card_id": str(card.id)},
            user_id=user_id,
            brain_id=card.brain_id,
        )


# =============================================================================
# CREATION
# =============================================================================


@router.post("/saved", response_model=CardRead, status_code=status.HTTP_201_CREATED)
async def create_saved_card(
    data: SavedCardCreate,
    current_user: CurrentUser,
    db: DbSession,
    job_queue: JobQueueDep,
):
    """Create a titled card. 409 if the title is already used in the brain."""
    await get_owned_brain(db, data.brain_id, current_user.id)
    card = await card_factory.create_saved(db, data.brain_id, data.title, data.content)
    await _queue_link_resolution(job_queue, card, current_user.id)
    return card_read(card)


@router.post("/unsaved", response_model=StreamEntryRead, status_code=status.HTTP_201_CREATED)
async def create_unsaved_card(
    data: UnsavedCardCreate,
    current_user: CurrentUser,
    db: DbSession,
) -> StreamEntryRead:
    """Create an untitled card inside a stream, at `position` or appended."""
    await get_owned_brain(db, data.brain_id, current_user.id)
    await get_owned_stream(db, data.stream_id, current_user.id)
    if data.content:
        card, entry = await card_factory.create_unsaved(
            db, data.brain_id, data.stream_id, data.content, data.position
        )
    else:
        card, entry = await card_factory.create_empty_unsaved(
            db, data.brain_id, data.stream_id, data.position, data.insert_after
        )
    return StreamEntryRead(
        position=entry.position,
        depth=entry.depth,
        is_in_ai_context=entry.is_in_ai_context,
        is_collapsed=entry.is_collapsed,
        added_at=entry.added_at,
        card=card_read(card),
    )


# =============================================================================
# READS
# =============================================================================


@router.get("/{card_id}", response_model=CardDetail)
async def get_card(card_id: UUID, current_user: CurrentUser, db: DbSession) -> CardDetail:
    """Get a card with the streams it appears in and its links."""
    card = await get_owned_card(db, card_id, current_user.id)
    streams = await position_ledger.card_streams(db, card_id)
    return CardDetail(
        card=card_read(card),
        streams=[
            CardStreamRead(
                stream_id=stream.id,
                stream_name=stream.name,
                position=entry.position,
                depth=entry.depth,
                is_in_ai_context=entry.is_in_ai_context,
            )
            for stream, entry in streams
        ],
        links=await _links(db, card_id),
    )


@router.get("/{card_id}/links", response_model=CardLinksResponse)
async def get_card_links(card_id: UUID, current_user: CurrentUser, db: DbSession) -> CardLinksResponse:
    """Forward links and backlinks of a card."""
    await get_owned_card(db, card_id, current_user.id)
    return await _links(db, card_id)


@router.post("/{card_id}/resolve-links", response_model=LinkResolutionResponse)
async def resolve_card_links(
    card_id: UUID, current_user: CurrentUser, db: DbSession
) -> LinkResolutionResponse:
    """Rebuild the card's [[Title]] links now instead of waiting for the queue."""
    await get_owned_card(db, card_id, current_user.id)
    summary = await link_resolver.update_card_links(db, card_id)
    return LinkResolutionResponse(**summary)


# =============================================================================
# EDITS
# =============================================================================


@router.patch("/{card_id}", response_model=CardRead)
async def update_card(
    card_id: UUID,
    data: CardUpdate,
    current_user: CurrentUser,
    db: DbSession,
    job_queue: JobQueueDep,
):
    """Update content and/or title. Content changes queue link resolution."""
    card = await get_owned_card(db, card_id, current_user.id)
    if data.title is not None:
        card = await card_factory.rename(db, card_id, data.title)
    if data.content is not None:
        card = await card_factory.update_content(db, card_id, data.content)
        await _queue_link_resolution(job_queue, card, current_user.id)
    return card_read(card)


@router.post("/{card_id}/convert", response_model=CardRead)
async def convert_to_saved(
    card_id: UUID,
    data: ConvertToSavedRequest,
    current_user: CurrentUser,
    db: DbSession,
    job_queue: JobQueueDep,
):
    """Turn an unsaved card into a saved one. 409 if it is not unsaved or the title is taken."""
    await get_owned_card(db, card_id, current_user.id)
    card = await card_factory.convert_to_saved(db, card_id, data.title)
    await _queue_link_resolution(job_queue, card, current_user.id)
    return card_read(card)


@router.delete("/{card_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_card(card_id: UUID, current_user: CurrentUser, db: DbSession) -> None:
    """Delete a card and remove it from every stream."""
    await get_owned_card(db, card_id, current_user.id)
    await card_factory.delete_card(db, card_id)
