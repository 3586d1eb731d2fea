"""Handlers wiring each JobType to the service that does the work."""

from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from clarity.db.models import JobType
from clarity.exceptions import ValidationError
from clarity.services.file_pipeline import FileUploadPipeline
from clarity.services.job_queue import JobQueue
from clarity.services.link_resolver import LinkResolver, link_resolver
from clarity.services.storage_usage import StorageAccountant, storage_accountant


def _uuid(input_data: dict[str, Any], key: str, *, required: bool = True) -> UUID | None:
    value = input_data.get(key)
    if value is None:
        if required:
            raise ValidationError(f"Job input is missing {key}")
        return None
    return UUID(str(value))


def register_handlers(
    queue: JobQueue,
    pipeline: FileUploadPipeline,
    resolver: LinkResolver = link_resolver,
    accountant: StorageAccountant = storage_accountant,
) -> JobQueue:
    async def process_file(db: AsyncSession, input_data: dict[str, Any]) -> dict[str, Any]:
        return await pipeline.process_stored_file(
            db,
            _uuid(input_data, "file_id"),
            stream_id=_uuid(input_data, "stream_id", required=False),
            job_queue=queue,
        )

    async def resolve_links(db: AsyncSession, input_data: dict[str, Any]) -> dict[str, Any]:
        return await resolver.update_card_links(db, _uuid(input_data, "card_id"))

    async def calculate_storage(db: AsyncSession, input_data: dict[str, Any]) -> dict[str, Any]:
        return await accountant.recalculate(db, _uuid(input_data, "brain_id"))

    queue.register(JobType.FILE_PROCESSING, process_file)
    queue.register(JobType.LINK_RESOLUTION, resolve_links)
    queue.register(JobType.STORAGE_CALCULATION, calculate_storage)
    return queue
