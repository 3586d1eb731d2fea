"""Brain storage accounting and per-user quota checks."""

import logging
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clarity.db.models import Brain, Card, File, User
from clarity.db.session import atomic
from clarity.exceptions import NotFoundError, StorageQuotaExceededError

logger = logging.getLogger(__name__)


class StorageAccountant:
    async def recalculate(self, db: AsyncSession, brain_id: UUID) -> dict[str, int]:
        """
        Recompute storage_used from scratch: active card content bytes
        plus uploaded file bytes. Corrects any drift in the running counter.
        """
        async with atomic(db):
            brain = await db.get(Brain, brain_id)
            if brain is None:
                raise NotFoundError(f"Brain {brain_id} not found")

            cards_total = await db.scalar(
                select(func.coalesce(func.sum(Card.content_size), 0)).where(
                    Card.brain_id == brain_id, Card.is_active.is_(True)
                )
            )
            files_total = await db.scalar(
                select(func.coalesce(func.sum(File.file_size), 0)).where(File.brain_id == brain_id)
            )
            previous = brain.storage_used
            brain.storage_used = int(cards_total) + int(files_total)

        if previous != brain.storage_used:
            logger.info(
                "Storage for brain %s corrected from %d to %d bytes",
                brain_id, previous, brain.storage_used,
            )
        return {
            "previous_bytes": previous,
            "storage_used": brain.storage_used,
            "card_bytes": int(cards_total),
            "file_bytes": int(files_total),
        }

    async def user_usage(self, db: AsyncSession, user_id: UUID) -> int:
        total = await db.scalar(
            select(func.coalesce(func.sum(Brain.storage_used), 0)).where(Brain.user_id == user_id)
        )
        return int(total)

    async def check_quota(self, db: AsyncSession, user: User, incoming_bytes: int) -> None:
        """Raise StorageQuotaExceededError if `incoming_bytes` would exceed the user's quota."""
        used = await self.user_usage(db, user.id)
        if used + incoming_bytes > user.storage_quota:
            raise StorageQuotaExceededError(
                f"Upload of {incoming_bytes} bytes exceeds storage quota "
                f"({used} of {user.storage_quota} bytes used)"
            )


# Singleton instance
storage_accountant = StorageAccountant()
