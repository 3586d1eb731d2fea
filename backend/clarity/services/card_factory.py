"""
Card lifecycle: creation of saved, unsaved and file cards and the
one-way unsaved -> saved transition.

Every write that changes card content also moves the owning brain's
storage_used counter by the byte delta, inside the same transaction.
Writes that claim a saved title are serialized per brain so two
concurrent creates cannot both pass the uniqueness check.
"""

import hashlib
import logging
from uuid import UUID

from sqlalchemy import case, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clarity.db.models import Brain, Card, CardLink, CardType, File, Stream, StreamCard
from clarity.db.session import atomic
from clarity.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from clarity.services.ledger import PositionLedger, position_ledger
from clarity.services.locking import KeyedLockRegistry

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200
PREVIEW_LENGTH = 500


def content_size(content: str) -> int:
    return len(content.encode("utf-8"))


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def apply_content(card: Card, content: str) -> int:
    """Write content and its derived columns onto a card. Returns the size delta."""
    new_size = content_size(content)
    delta = new_size - (card.content_size or 0)
    card.content = content
    card.content_preview = content[:PREVIEW_LENGTH]
    card.content_hash = content_hash(content)
    card.content_size = new_size
    return delta


async def adjust_brain_storage(db: AsyncSession, brain_id: UUID, delta: int) -> None:
    """Move a brain's storage counter by `delta` bytes, never below zero."""
    if delta == 0:
        return
    new_value = Brain.storage_used + delta
    await db.execute(
        update(Brain)
        .where(Brain.id == brain_id)
        .values(storage_used=case((new_value < 0, 0), else_=new_value))
    )


def validate_title(title: str | None) -> str:
    if title is None or not title.strip():
        raise ValidationError("Title is required", fields={"title": "must not be empty"})
    title = title.strip()
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(
            f"Title must be {MAX_TITLE_LENGTH} characters or fewer",
            fields={"title": f"must be at most {MAX_TITLE_LENGTH} characters"},
        )
    return title


class CardFactory:
    """Creates cards and manages their kind transitions."""

    def __init__(self, ledger: PositionLedger | None = None):
        self.ledger = ledger or position_ledger
        self.title_locks = KeyedLockRegistry("brain-titles")

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def _get_brain(self, db: AsyncSession, brain_id: UUID) -> Brain:
        brain = await db.get(Brain, brain_id)
        if brain is None:
            raise NotFoundError(f"Brain {brain_id} not found")
        return brain

    async def _get_stream(self, db: AsyncSession, brain_id: UUID, stream_id: UUID) -> Stream:
        result = await db.execute(
            select(Stream).where(Stream.id == stream_id, Stream.brain_id == brain_id)
        )
        stream = result.scalar_one_or_none()
        if stream is None:
            raise NotFoundError(f"Stream {stream_id} not found")
        return stream

    async def get_card(self, db: AsyncSession, card_id: UUID) -> Card:
        card = await db.get(Card, card_id)
        if card is None or not card.is_active:
            raise NotFoundError(f"Card {card_id} not found")
        return card

    async def title_exists(
        self, db: AsyncSession, brain_id: UUID, title: str, exclude_card_id: UUID | None = None
    ) -> bool:
        """Exact-match check against active saved cards in the brain."""
        query = select(Card.id).where(
            Card.brain_id == brain_id,
            Card.title == title,
            Card.card_type == CardType.SAVED.value,
            Card.is_active.is_(True),
        )
        if exclude_card_id is not None:
            query = query.where(Card.id != exclude_card_id)
        result = await db.execute(query.limit(1))
        return result.scalar_one_or_none() is not None

    async def _claim_title(
        self, db: AsyncSession, brain_id: UUID, title: str, exclude_card_id: UUID | None = None
    ) -> str:
        title = validate_title(title)
        if await self.title_exists(db, brain_id, title, exclude_card_id):
            raise ConflictError(
                f'A card titled "{title}" already exists in this brain',
                fields={"title": "already exists"},
            )
        return title

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_saved(self, db: AsyncSession, brain_id: UUID, title: str, content: str) -> Card:
        """Create a titled card. The title must be unique among the brain's saved cards."""
        validate_title(title)
        if content is None or not content.strip():
            raise ValidationError("Content is required", fields={"content": "must not be empty"})

        async with self.title_locks.hold(brain_id):
            async with atomic(db):
                await self._get_brain(db, brain_id)
                title = await self._claim_title(db, brain_id, title)
                card = Card(brain_id=brain_id, card_type=CardType.SAVED.value, title=title)
                delta = apply_content(card, content)
                db.add(card)
                await adjust_brain_storage(db, brain_id, delta)
                await db.flush()

        logger.info("Created saved card %s (%s) in brain %s", card.id, title, brain_id)
        return card

    async def create_unsaved(
        self,
        db: AsyncSession,
        brain_id: UUID,
        stream_id: UUID,
        content: str = "",
        position: int | None = None,
    ) -> tuple[Card, StreamCard]:
        """Create an untitled card owned by a stream and place it there atomically."""
        await self._get_stream(db, brain_id, stream_id)

        async with self.ledger.transaction(db, stream_id) as editor:
            card = Card(
                brain_id=brain_id,
                card_type=CardType.UNSAVED.value,
                title=None,
                stream_id=stream_id,
            )
            delta = apply_content(card, content or "")
            db.add(card)
            await db.flush()
            await adjust_brain_storage(db, brain_id, delta)
            entry = await editor.insert(card.id, position)

        logger.info("Created unsaved card %s in stream %s at %d", card.id, stream_id, entry.position)
        return card, entry

    async def create_empty_unsaved(
        self,
        db: AsyncSession,
        brain_id: UUID,
        stream_id: UUID,
        position: int | None = None,
        insert_after: bool = False,
    ) -> tuple[Card, StreamCard]:
        """Blank unsaved card, e.g. the target of AI generation. insert_after places it at position + 1."""
        if position is not None and insert_after:
            position += 1
        return await self.create_unsaved(db, brain_id, stream_id, "", position)

    async def create_file_card(
        self,
        db: AsyncSession,
        brain_id: UUID,
        file_id: UUID,
        file_name: str,
        content: str | None = None,
        stream_id: UUID | None = None,
        position: int | None = None,
    ) -> Card:
        """Card representing an uploaded file, optionally placed in a stream."""
        if not file_id:
            raise ValidationError("File ID is required", fields={"file_id": "is required"})
        if file_name is None or not file_name.strip():
            raise ValidationError("File name is required", fields={"file_name": "must not be empty"})
        file = await db.get(File, file_id)
        if file is None or file.brain_id != brain_id:
            raise NotFoundError(f"File {file_id} not found")
        title = file_name.strip()[:MAX_TITLE_LENGTH]

        async def build() -> Card:
            card = Card(
                brain_id=brain_id,
                card_type=CardType.FILE.value,
                title=title,
                file_id=file_id,
            )
            delta = apply_content(card, content or "")
            db.add(card)
            await db.flush()
            await adjust_brain_storage(db, brain_id, delta)
            return card

        if stream_id is None:
            async with atomic(db):
                card = await build()
        else:
            await self._get_stream(db, brain_id, stream_id)
            async with self.ledger.transaction(db, stream_id) as editor:
                card = await build()
                await editor.insert(card.id, position)

        logger.info("Created file card %s for file %s", card.id, file_id)
        return card

    # -------------------------------------------------------------------------
    # Transitions and edits
    # -------------------------------------------------------------------------

    async def convert_to_saved(self, db: AsyncSession, card_id: UUID, title: str) -> Card:
        """
        Give an unsaved card a title, making it saved.

        The card stays in every stream it is in; it just stops being owned
        by the stream it was created in.
        """
        card = await self.get_card(db, card_id)
        if card.card_type != CardType.UNSAVED.value:
            raise InvalidStateError(f"Card {card_id} is {card.card_type}, not unsaved")
        validate_title(title)

        async with self.title_locks.hold(card.brain_id):
            async with atomic(db):
                await db.refresh(card)
                if card.card_type != CardType.UNSAVED.value:
                    raise InvalidStateError(f"Card {card_id} is {card.card_type}, not unsaved")
                card.title = await self._claim_title(db, card.brain_id, title)
                card.card_type = CardType.SAVED.value
                card.stream_id = None
                await db.flush()

        logger.info("Converted card %s to saved (%s)", card_id, card.title)
        return card

    async def rename(self, db: AsyncSession, card_id: UUID, title: str) -> Card:
        card = await self.get_card(db, card_id)
        if card.card_type == CardType.UNSAVED.value:
            raise InvalidStateError("Unsaved cards have no title; convert the card to saved instead")
        async with self.title_locks.hold(card.brain_id):
            async with atomic(db):
                if card.card_type == CardType.SAVED.value:
                    card.title = await self._claim_title(db, card.brain_id, title, exclude_card_id=card.id)
                else:
                    card.title = validate_title(title)
                await db.flush()
        return card

    async def update_content(self, db: AsyncSession, card_id: UUID, content: str) -> Card:
        card = await self.get_card(db, card_id)
        if card.card_type == CardType.SAVED.value and not content.strip():
            raise ValidationError("Content is required", fields={"content": "must not be empty"})
        async with atomic(db):
            delta = apply_content(card, content)
            await adjust_brain_storage(db, card.brain_id, delta)
            await db.flush()
        return card

    # -------------------------------------------------------------------------
    # Removal
    # -------------------------------------------------------------------------

    async def _discard_card_row(self, db: AsyncSession, card: Card) -> None:
        await db.execute(delete(CardLink).where(CardLink.source_card_id == card.id))
        await db.execute(
            update(CardLink)
            .where(CardLink.target_card_id == card.id)
            .values(target_card_id=None, is_valid=False)
        )
        await adjust_brain_storage(db, card.brain_id, -(card.content_size or 0))
        await db.delete(card)

    async def remove_from_stream(self, db: AsyncSession, stream_id: UUID, card_id: UUID) -> bool:
        """
        Remove a card from a stream.

        An unsaved card removed from the stream that owns it has nowhere
        else to live and is deleted along with its membership.
        """
        async with self.ledger.transaction(db, stream_id) as editor:
            removed = await editor.remove(card_id)
            if removed:
                card = await db.get(Card, card_id)
                if (
                    card is not None
                    and card.card_type == CardType.UNSAVED.value
                    and card.stream_id == stream_id
                ):
                    await self._discard_card_row(db, card)
                    logger.info("Deleted unsaved card %s with its stream membership", card_id)
        return removed

    async def delete_card(self, db: AsyncSession, card_id: UUID) -> None:
        """Soft-delete a card, closing its gap in every stream and dropping its links."""
        card = await self.get_card(db, card_id)
        result = await db.execute(select(StreamCard.stream_id).where(StreamCard.card_id == card_id))
        stream_ids = list(result.scalars())

        async with self.ledger.multi_transaction(db, stream_ids) as editors:
            for editor in editors.values():
                await editor.remove(card_id)
            await db.execute(
                delete(CardLink).where(
                    or_(CardLink.source_card_id == card_id, CardLink.target_card_id == card_id)
                )
            )
            await adjust_brain_storage(db, card.brain_id, -(card.content_size or 0))
            card.is_active = False
            await db.flush()

        logger.info("Deleted card %s from %d streams", card_id, len(stream_ids))

    async def discard_stream(self, db: AsyncSession, stream: Stream) -> int:
        """Delete a stream with its memberships and the unsaved cards it owns. Returns cards deleted."""
        async with self.ledger.transaction(db, stream.id):
            result = await db.execute(
                select(Card).where(
                    Card.stream_id == stream.id,
                    Card.card_type == CardType.UNSAVED.value,
                )
            )
            owned = list(result.scalars())
            await db.execute(delete(StreamCard).where(StreamCard.stream_id == stream.id))
            for card in owned:
                await self._discard_card_row(db, card)
            await db.delete(stream)

        logger.info("Deleted stream %s with %d unsaved cards", stream.id, len(owned))
        return len(owned)


# Singleton instance
card_factory = CardFactory()
