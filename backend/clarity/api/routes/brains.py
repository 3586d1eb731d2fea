"""Brain routes, plus the stream collection of each brain."""

import logging
from uuid import UUID

from fastapi import APIRouter, Query, status
from sqlalchemy import delete, or_, select

from clarity.api.deps import CurrentUser, DbSession, JobQueueDep, UploadPipelineDep, get_owned_brain
from clarity.db.models import Brain, Card, CardLink, CardType, File, JobType, Stream, StreamCard
from clarity.db.session import atomic
from clarity.exceptions import ClarityError, ConflictError
from clarity.schemas.brains import BrainCreate, BrainRead, BrainUpdate, TitleCheckResponse
from clarity.schemas.cards import CardRead, card_read
from clarity.schemas.jobs import JobRead
from clarity.schemas.streams import StreamCreate, StreamRead
from clarity.services.card_factory import card_factory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/brains", tags=["brains"])


async def _ensure_name_available(db, user_id: UUID, name: str, exclude_id: UUID | None = None) -> None:
    query = select(Brain.id).where(Brain.user_id == user_id, Brain.name == name)
    if exclude_id is not None:
        query = query.where(Brain.id != exclude_id)
    if (await db.execute(query)).scalar_one_or_none() is not None:
        raise ConflictError(f'A brain named "{name}" already exists', fields={"name": "already exists"})


# =============================================================================
# BRAINS
# =============================================================================


@router.get("/", response_model=list[BrainRead])
async def list_brains(current_user: CurrentUser, db: DbSession) -> list[BrainRead]:
    result = await db.execute(
        select(Brain).where(Brain.user_id == current_user.id).order_by(Brain.name)
    )
    return [BrainRead.model_validate(b) for b in result.scalars()]


@router.post("/", response_model=BrainRead, status_code=status.HTTP_201_CREATED)
async def create_brain(data: BrainCreate, current_user: CurrentUser, db: DbSession) -> BrainRead:
    async with atomic(db):
        await _ensure_name_available(db, current_user.id, data.name)
        brain = Brain(user_id=current_user.id, name=data.name)
        db.add(brain)
    await db.refresh(brain)
    return BrainRead.model_validate(brain)


@router.get("/{brain_id}", response_model=BrainRead)
async def get_brain(brain_id: UUID, current_user: CurrentUser, db: DbSession) -> BrainRead:
    brain = await get_owned_brain(db, brain_id, current_user.id)
    return BrainRead.model_validate(brain)


@router.patch("/{brain_id}", response_model=BrainRead)
async def update_brain(
    brain_id: UUID, data: BrainUpdate, current_user: CurrentUser, db: DbSession
) -> BrainRead:
    brain = await get_owned_brain(db, brain_id, current_user.id)
    async with atomic(db):
        if data.name is not None:
            await _ensure_name_available(db, current_user.id, data.name, exclude_id=brain.id)
            brain.name = data.name
    await db.refresh(brain)
    return BrainRead.model_validate(brain)


@router.delete("/{brain_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_brain(
    brain_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
    pipeline: UploadPipelineDep,
) -> None:
    """Delete a brain with its streams, cards, links and stored files."""
    brain = await get_owned_brain(db, brain_id, current_user.id)
    card_ids = select(Card.id).where(Card.brain_id == brain_id)
    stream_ids = select(Stream.id).where(Stream.brain_id == brain_id)
    storage_keys = list(
        (await db.execute(select(File.storage_key).where(File.brain_id == brain_id))).scalars()
    )

    async with atomic(db):
        await db.execute(
            delete(CardLink).where(
                or_(CardLink.source_card_id.in_(card_ids), CardLink.target_card_id.in_(card_ids))
            )
        )
        await db.execute(delete(StreamCard).where(StreamCard.stream_id.in_(stream_ids)))
        await db.execute(delete(Card).where(Card.brain_id == brain_id))
        await db.execute(delete(Stream).where(Stream.brain_id == brain_id))
        await db.execute(delete(File).where(File.brain_id == brain_id))
        await db.delete(brain)

    for key in storage_keys:
        try:
            await pipeline.store.delete(key)
        except ClarityError:
            logger.exception("Failed to delete stored file %s of brain %s", key, brain_id)


# =============================================================================
# CARDS IN A BRAIN
# =============================================================================


@router.get("/{brain_id}/cards", response_model=list[CardRead])
async def list_brain_cards(
    brain_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
    card_type: CardType | None = None,
    q: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> list:
    """
    List active cards in a brain.

    Filters:
    - card_type: saved, unsaved or file
    - q: Search in title and content
    """
    await get_owned_brain(db, brain_id, current_user.id)
    query = select(Card).where(Card.brain_id == brain_id, Card.is_active.is_(True))
    if card_type:
        query = query.where(Card.card_type == card_type.value)
    if q:
        search_pattern = f"%{q}%"
        query = query.where(or_(Card.title.ilike(search_pattern), Card.content.ilike(search_pattern)))
    query = query.order_by(Card.updated_at.desc()).limit(limit).offset(offset)
    result = await db.execute(query)
    return [card_read(c) for c in result.scalars()]


@router.get("/{brain_id}/check-title", response_model=TitleCheckResponse)
async def check_title(
    brain_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
    title: str = Query(..., min_length=1, max_length=200),
) -> TitleCheckResponse:
    """Whether a saved card with exactly this title already exists in the brain."""
    await get_owned_brain(db, brain_id, current_user.id)
    title = title.strip()
    exists = await card_factory.title_exists(db, brain_id, title)
    return TitleCheckResponse(title=title, exists=exists)


@router.post(
    "/{brain_id}/recalculate-storage",
    response_model=JobRead,
    status_code=status.HTTP_202_ACCEPTED,
)
async def recalculate_storage(
    brain_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
    job_queue: JobQueueDep,
) -> JobRead:
    """Queue a STORAGE_CALCULATION job for the brain."""
    await get_owned_brain(db, brain_id, current_user.id)
    job_id = await job_queue.enqueue(
        JobType.STORAGE_CALCULATION,
        {"brain_id": str(brain_id)},
        user_id=current_user.id,
        brain_id=brain_id,
    )
    return JobRead.model_validate(await job_queue.get_status(job_id))


# =============================================================================
# STREAMS IN A BRAIN
# =============================================================================


@router.get("/{brain_id}/streams", response_model=list[StreamRead])
async def list_streams(
    brain_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
    favorited: bool | None = None,
) -> list[StreamRead]:
    """List a brain's streams, favorites first, then most recently accessed."""
    await get_owned_brain(db, brain_id, current_user.id)
    query = select(Stream).where(Stream.brain_id == brain_id)
    if favorited is not None:
        query = query.where(Stream.is_favorited.is_(favorited))
    query = query.order_by(Stream.is_favorited.desc(), Stream.last_accessed_at.desc())
    result = await db.execute(query)
    return [StreamRead.model_validate(s) for s in result.scalars()]


@router.post("/{brain_id}/streams", response_model=StreamRead, status_code=status.HTTP_201_CREATED)
async def create_stream(
    brain_id: UUID,
    data: StreamCreate,
    current_user: CurrentUser,
    db: DbSession,
) -> StreamRead:
    await get_owned_brain(db, brain_id, current_user.id)
    async with atomic(db):
        stream = Stream(brain_id=brain_id, name=data.name, is_favorited=data.is_favorited)
        db.add(stream)
    await db.refresh(stream)
    return StreamRead.model_validate(stream)
