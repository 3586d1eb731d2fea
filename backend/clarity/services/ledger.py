"""
Position ledger: ordered card membership of streams.

Invariant: within a stream, the positions of its entries are exactly
0..N-1. Every mutation runs under that stream's lock and commits before
the lock is released, so the next writer on the same stream always
starts from committed positions. Any error rolls the session back.

Mutations load the stream's entries ordered by (position, added_at),
splice the Python list and write back only the rows whose position moved.
"""

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clarity.db.models import Card, CardType, Stream, StreamCard
from clarity.db.session import atomic
from clarity.exceptions import NotFoundError, ValidationError
from clarity.services.locking import KeyedLockRegistry

logger = logging.getLogger(__name__)


@dataclass
class PositionStats:
    """Diagnostic summary of a stream's ordering."""

    total_cards: int
    min_position: int | None
    max_position: int | None
    unique_positions: int
    ai_context_count: int
    has_gaps: bool
    expected_max_position: int


def _renumber(entries: list[StreamCard]) -> int:
    """Assign 0..N-1 in list order. Returns how many rows changed."""
    changed = 0
    for index, entry in enumerate(entries):
        if entry.position != index:
            entry.position = index
            changed += 1
    return changed


class StreamEditor:
    """
    Lock-held mutations of one stream.

    Only obtained through PositionLedger.transaction(), which owns the
    stream lock and the commit/rollback around these calls.
    """

    def __init__(self, db: AsyncSession, stream_id: UUID):
        self.db = db
        self.stream_id = stream_id

    async def entries(self) -> list[StreamCard]:
        # Rows cached by this session may hold positions another session has since changed
        result = await self.db.execute(
            select(StreamCard)
            .where(StreamCard.stream_id == self.stream_id)
            .order_by(StreamCard.position, StreamCard.added_at, StreamCard.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars())

    async def _entry(self, card_id: UUID) -> StreamCard:
        result = await self.db.execute(
            select(StreamCard)
            .where(
                StreamCard.stream_id == self.stream_id,
                StreamCard.card_id == card_id,
            )
            .execution_options(populate_existing=True)
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            raise NotFoundError(f"Card {card_id} is not in stream {self.stream_id}")
        return entry

    async def insert(
        self,
        card_id: UUID,
        position: int | None = None,
        *,
        depth: int = 0,
        is_in_ai_context: bool = False,
        is_collapsed: bool = False,
    ) -> StreamCard:
        """Place a card at `position` (append when None), shifting later cards up."""
        stream = await self.db.get(Stream, self.stream_id)
        if stream is None:
            raise NotFoundError(f"Stream {self.stream_id} not found")
        card = await self.db.get(Card, card_id)
        if card is None or not card.is_active:
            raise NotFoundError(f"Card {card_id} not found")
        if card.brain_id != stream.brain_id:
            raise ValidationError(
                "Card and stream belong to different brains",
                fields={"card_id": "must belong to the stream's brain"},
            )
        if card.card_type == CardType.UNSAVED.value and card.stream_id != self.stream_id:
            raise ValidationError(
                "Unsaved cards can only be placed in the stream that owns them",
                fields={"card_id": "unsaved card owned by another stream"},
            )
        if depth < 0:
            raise ValidationError("Depth must be non-negative", fields={"depth": "must be >= 0"})

        entries = await self.entries()
        if any(entry.card_id == card_id for entry in entries):
            raise ValidationError(
                "Card is already in this stream",
                fields={"card_id": "already a member of the stream"},
            )
        if position is None:
            position = len(entries)
        elif not 0 <= position <= len(entries):
            raise ValidationError(
                f"Position {position} is out of range 0..{len(entries)}",
                fields={"position": f"must be between 0 and {len(entries)}"},
            )

        entry = StreamCard(
            stream_id=self.stream_id,
            card_id=card_id,
            position=position,
            depth=depth,
            is_in_ai_context=is_in_ai_context,
            is_collapsed=is_collapsed,
        )
        entries.insert(position, entry)
        _renumber(entries)
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def remove(self, card_id: UUID) -> bool:
        """Drop a card's membership and close the gap. False if it was not a member."""
        entries = await self.entries()
        target = next((entry for entry in entries if entry.card_id == card_id), None)
        if target is None:
            return False
        entries.remove(target)
        await self.db.delete(target)
        _renumber(entries)
        await self.db.flush()
        return True

    async def move(self, card_id: UUID, new_position: int, new_depth: int | None = None) -> bool:
        """
        Relocate a card within the stream.

        Returns False, writing nothing, when both position and depth
        already match.
        """
        entries = await self.entries()
        index = next((i for i, entry in enumerate(entries) if entry.card_id == card_id), None)
        if index is None:
            raise NotFoundError(f"Card {card_id} is not in stream {self.stream_id}")
        max_position = len(entries) - 1
        if not 0 <= new_position <= max_position:
            raise ValidationError(
                f"Position {new_position} is out of range 0..{max_position}",
                fields={"position": f"must be between 0 and {max_position}"},
            )
        if new_depth is not None and new_depth < 0:
            raise ValidationError("Depth must be non-negative", fields={"depth": "must be >= 0"})

        entry = entries[index]
        depth_unchanged = new_depth is None or new_depth == entry.depth
        if index == new_position and entry.position == new_position and depth_unchanged:
            return False

        entries.insert(new_position, entries.pop(index))
        _renumber(entries)
        if new_depth is not None:
            entry.depth = new_depth
        await self.db.flush()
        return True

    async def toggle_ai_context(self, card_id: UUID) -> bool:
        entry = await self._entry(card_id)
        entry.is_in_ai_context = not entry.is_in_ai_context
        await self.db.flush()
        return entry.is_in_ai_context

    async def toggle_collapsed(self, card_id: UUID) -> bool:
        entry = await self._entry(card_id)
        entry.is_collapsed = not entry.is_collapsed
        await self.db.flush()
        return entry.is_collapsed

    async def update(
        self,
        card_id: UUID,
        *,
        depth: int | None = None,
        is_in_ai_context: bool | None = None,
        is_collapsed: bool | None = None,
    ) -> StreamCard:
        """Set non-positional state of an entry."""
        if depth is None and is_in_ai_context is None and is_collapsed is None:
            raise ValidationError("No fields to update")
        if depth is not None and depth < 0:
            raise ValidationError("Depth must be non-negative", fields={"depth": "must be >= 0"})
        entry = await self._entry(card_id)
        if depth is not None:
            entry.depth = depth
        if is_in_ai_context is not None:
            entry.is_in_ai_context = is_in_ai_context
        if is_collapsed is not None:
            entry.is_collapsed = is_collapsed
        await self.db.flush()
        return entry

    async def normalize(self) -> int:
        """Reassign 0..N-1 in (position, added_at) order. Returns rows changed."""
        changed = _renumber(await self.entries())
        if changed:
            await self.db.flush()
        return changed


class PositionLedger:
    """Serialized, transactional access to stream orderings."""

    def __init__(self, locks: KeyedLockRegistry | None = None):
        self.locks = locks or KeyedLockRegistry("streams")

    @asynccontextmanager
    async def transaction(self, db: AsyncSession, stream_id: UUID) -> AsyncIterator[StreamEditor]:
        """
        Hold the stream lock for the duration of a unit of work.

        Commits on exit and rolls back on error, both while the lock is
        still held. Composite operations (create a card and place it)
        use this directly so they are one transaction.
        """
        async with self.locks.hold(stream_id):
            async with atomic(db):
                yield StreamEditor(db, stream_id)

    @asynccontextmanager
    async def multi_transaction(
        self, db: AsyncSession, stream_ids: Iterable[UUID]
    ) -> AsyncIterator[dict[UUID, StreamEditor]]:
        """Like transaction(), for work that touches several streams at once."""
        stream_ids = list(stream_ids)
        async with self.locks.hold_many(stream_ids):
            async with atomic(db):
                yield {stream_id: StreamEditor(db, stream_id) for stream_id in stream_ids}

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def insert_card(
        self,
        db: AsyncSession,
        stream_id: UUID,
        card_id: UUID,
        position: int | None = None,
        *,
        depth: int = 0,
        is_in_ai_context: bool = False,
        is_collapsed: bool = False,
    ) -> StreamCard:
        async with self.transaction(db, stream_id) as editor:
            entry = await editor.insert(
                card_id,
                position,
                depth=depth,
                is_in_ai_context=is_in_ai_context,
                is_collapsed=is_collapsed,
            )
        logger.info("Inserted card %s into stream %s at %d", card_id, stream_id, entry.position)
        return entry

    async def remove_card(self, db: AsyncSession, stream_id: UUID, card_id: UUID) -> bool:
        async with self.transaction(db, stream_id) as editor:
            removed = await editor.remove(card_id)
        if removed:
            logger.info("Removed card %s from stream %s", card_id, stream_id)
        return removed

    async def move_card(
        self,
        db: AsyncSession,
        stream_id: UUID,
        card_id: UUID,
        new_position: int,
        new_depth: int | None = None,
    ) -> bool:
        async with self.transaction(db, stream_id) as editor:
            moved = await editor.move(card_id, new_position, new_depth)
        if moved:
            logger.info("Moved card %s in stream %s to %d", card_id, stream_id, new_position)
        return moved

    async def toggle_ai_context(self, db: AsyncSession, stream_id: UUID, card_id: UUID) -> bool:
        async with self.transaction(db, stream_id) as editor:
            return await editor.toggle_ai_context(card_id)

    async def toggle_collapsed(self, db: AsyncSession, stream_id: UUID, card_id: UUID) -> bool:
        async with self.transaction(db, stream_id) as editor:
            return await editor.toggle_collapsed(card_id)

    async def update_entry(
        self,
        db: AsyncSession,
        stream_id: UUID,
        card_id: UUID,
        *,
        depth: int | None = None,
        is_in_ai_context: bool | None = None,
        is_collapsed: bool | None = None,
    ) -> StreamCard:
        async with self.transaction(db, stream_id) as editor:
            return await editor.update(
                card_id,
                depth=depth,
                is_in_ai_context=is_in_ai_context,
                is_collapsed=is_collapsed,
            )

    async def normalize_positions(self, db: AsyncSession, stream_id: UUID) -> int:
        async with self.transaction(db, stream_id) as editor:
            changed = await editor.normalize()
        if changed:
            logger.warning("Normalized %d positions in stream %s", changed, stream_id)
        return changed

    # -------------------------------------------------------------------------
    # Reads (no lock; they observe committed state)
    # -------------------------------------------------------------------------

    async def list_entries(self, db: AsyncSession, stream_id: UUID) -> list[tuple[StreamCard, Card]]:
        """Ordered (entry, card) pairs for the stream's active cards."""
        result = await db.execute(
            select(StreamCard, Card)
            .join(Card, Card.id == StreamCard.card_id)
            .where(StreamCard.stream_id == stream_id, Card.is_active.is_(True))
            .order_by(StreamCard.position, StreamCard.added_at, StreamCard.id)
        )
        return [(entry, card) for entry, card in result.all()]

    async def ai_context_cards(self, db: AsyncSession, stream_id: UUID) -> list[tuple[StreamCard, Card]]:
        return [
            (entry, card)
            for entry, card in await self.list_entries(db, stream_id)
            if entry.is_in_ai_context
        ]

    async def card_streams(self, db: AsyncSession, card_id: UUID) -> list[tuple[Stream, StreamCard]]:
        """Every stream containing the card, most recently accessed first."""
        result = await db.execute(
            select(Stream, StreamCard)
            .join(StreamCard, StreamCard.stream_id == Stream.id)
            .where(StreamCard.card_id == card_id)
            .order_by(Stream.last_accessed_at.desc())
        )
        return [(stream, entry) for stream, entry in result.all()]

    async def position_stats(self, db: AsyncSession, stream_id: UUID) -> PositionStats:
        result = await db.execute(
            select(StreamCard.position, StreamCard.is_in_ai_context).where(
                StreamCard.stream_id == stream_id
            )
        )
        rows = result.all()
        positions = [row.position for row in rows]
        unique = set(positions)
        total = len(positions)
        return PositionStats(
            total_cards=total,
            min_position=min(positions) if positions else None,
            max_position=max(positions) if positions else None,
            unique_positions=len(unique),
            ai_context_count=sum(1 for row in rows if row.is_in_ai_context),
            has_gaps=unique != set(range(total)),
            expected_max_position=total - 1,
        )


# Singleton instance
position_ledger = PositionLedger()
