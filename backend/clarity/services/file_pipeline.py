"""
File upload pipeline.

Upload flow:
1. Validate the request (count, names, sizes, extensions) and the user's quota
2. Store each file's bytes in the document store and record a File row
3. Small files are turned into file cards inline; large files, and small
   ones whose inline processing failed, become FILE_PROCESSING jobs

One bad file does not abort the upload: per-file failures are reported
in the result list next to the files that succeeded.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal, Protocol
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from clarity.config import Settings, get_settings
from clarity.db.models import Brain, File, FileProcessingStatus, JobType, User
from clarity.db.session import atomic
from clarity.exceptions import (
    ClarityError,
    FileTooLargeError,
    NotFoundError,
    ProcessingError,
    ValidationError,
)
from clarity.services.card_factory import CardFactory, adjust_brain_storage, card_factory
from clarity.services.file_processors import extract_document, file_extension, file_kind
from clarity.services.storage import sanitize_file_name
from clarity.services.storage_usage import StorageAccountant, storage_accountant

if TYPE_CHECKING:
    from clarity.services.job_queue import JobQueue

logger = logging.getLogger(__name__)


class DocumentStore(Protocol):
    async def put(self, key: str, data: bytes, content_type: str = ...) -> None: ...

    async def get(self, key: str) -> bytes: ...

    async def delete(self, key: str) -> None: ...


@dataclass
class IncomingFile:
    file_name: str
    data: bytes
    content_type: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class UploadOptions:
    stream_id: UUID | None = None
    force_background: bool = False
    processing_priority: Literal["normal", "high"] = "normal"

    @property
    def job_priority(self) -> int:
        return 10 if self.processing_priority == "high" else 0


def format_bytes(size: float) -> str:
    if size < 1024:
        return f"{size:.0f} B"
    for unit in ("KB", "MB"):
        size /= 1024
        if size < 1024:
            return f"{size:.1f} {unit}"
    return f"{size / 1024:.1f} GB"


class FileUploadPipeline:
    """Accepts uploads and turns stored files into file cards."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        cards: CardFactory | None = None,
        accountant: StorageAccountant | None = None,
        settings: Settings | None = None,
    ):
        self.store = store
        self.cards = cards or card_factory
        self.accountant = accountant or storage_accountant
        self.settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate_file(self, file: IncomingFile) -> None:
        if not file.file_name or not file.file_name.strip():
            raise ValidationError("File must have a name", fields={"file": "missing file name"})
        if file.size > self.settings.max_file_size_bytes:
            raise FileTooLargeError(
                f"{file.file_name} is {format_bytes(file.size)}; "
                f"the limit is {format_bytes(self.settings.max_file_size_bytes)}"
            )
        file_kind(file.file_name)

    def validate_request(self, files: list[IncomingFile]) -> None:
        if not files:
            raise ValidationError("No files provided", fields={"files": "at least one file is required"})
        if len(files) > self.settings.max_files_per_upload:
            raise ValidationError(
                f"Too many files. Maximum {self.settings.max_files_per_upload} files allowed per upload.",
                fields={"files": f"at most {self.settings.max_files_per_upload} files"},
            )
        for file in files:
            self.validate_file(file)

    # -------------------------------------------------------------------------
    # Upload
    # -------------------------------------------------------------------------

    async def handle_upload(
        self,
        db: AsyncSession,
        user: User,
        brain: Brain,
        files: list[IncomingFile],
        options: UploadOptions,
        job_queue: "JobQueue",
    ) -> dict[str, Any]:
        self.validate_request(files)
        await self.accountant.check_quota(db, user, sum(file.size for file in files))
        # A failed file rolls the session back and expires loaded rows, so work from ids
        user_id, brain_id = user.id, brain.id

        results = []
        for file in files:
            try:
                results.append(await self._accept_file(db, user_id, brain_id, file, options, job_queue))
            except ClarityError as e:
                logger.error("Failed to accept file %s: %s", file.file_name, e)
                results.append({"file_name": file.file_name, "status": "failed", "error": e.message})

        summary = {
            "total": len(files),
            "completed": sum(1 for r in results if r["status"] == "completed"),
            "queued": sum(1 for r in results if r["status"] == "queued"),
            "failed": sum(1 for r in results if r["status"] == "failed"),
        }
        logger.info("Upload to brain %s finished: %s", brain_id, summary)
        return {
            "files": results,
            "job_ids": [r["job_id"] for r in results if r.get("job_id")],
            "summary": summary,
        }

    async def _accept_file(
        self,
        db: AsyncSession,
        user_id: UUID,
        brain_id: UUID,
        incoming: IncomingFile,
        options: UploadOptions,
        job_queue: "JobQueue",
    ) -> dict[str, Any]:
        file_name = sanitize_file_name(incoming.file_name)
        storage_key = f"brains/{brain_id}/files/{uuid4()}_{file_name}"
        await self.store.put(storage_key, incoming.data, incoming.content_type or "application/octet-stream")

        async with atomic(db):
            record = File(
                brain_id=brain_id,
                file_name=file_name,
                file_type=file_extension(file_name).lstrip("."),
                file_size=incoming.size,
                storage_key=storage_key,
                upload_method="web_upload",
            )
            db.add(record)
            await adjust_brain_storage(db, brain_id, incoming.size)
            await db.flush()
        file_id = record.id

        base = {"file_id": file_id, "file_name": file_name, "size": incoming.size}
        inline = incoming.size < self.settings.inline_processing_max_bytes and not options.force_background
        if inline:
            try:
                result = await self.process_stored_file(db, file_id, options.stream_id, job_queue)
                return {**base, "status": "completed", "card_id": result["card_id"]}
            except ClarityError as e:
                logger.warning("Inline processing of %s failed, queueing instead: %s", file_name, e)

        job_id = await job_queue.enqueue(
            JobType.FILE_PROCESSING,
            {
                "file_id": str(file_id),
                "stream_id": str(options.stream_id) if options.stream_id else None,
            },
            user_id=user_id,
            brain_id=brain_id,
            priority=options.job_priority,
        )
        return {**base, "status": "queued", "job_id": job_id}

    # -------------------------------------------------------------------------
    # Processing (inline or from a FILE_PROCESSING job)
    # -------------------------------------------------------------------------

    async def _mark(self, db: AsyncSession, record: File, status: FileProcessingStatus, error: str | None = None) -> None:
        async with atomic(db):
            record.processing_status = status.value
            record.processing_error = error
            if status == FileProcessingStatus.COMPLETED:
                record.processed_at = datetime.now(timezone.utc)

    async def process_stored_file(
        self,
        db: AsyncSession,
        file_id: UUID,
        stream_id: UUID | None = None,
        job_queue: "JobQueue | None" = None,
    ) -> dict[str, Any]:
        """Extract a stored file's text into a file card. Raises ProcessingError on failure."""
        record = await db.get(File, file_id)
        if record is None:
            raise NotFoundError(f"File {file_id} not found")
        brain_id, file_name, storage_key = record.brain_id, record.file_name, record.storage_key
        brain = await db.get(Brain, brain_id)
        owner_id = brain.user_id if brain is not None else None

        await self._mark(db, record, FileProcessingStatus.PROCESSING)
        try:
            data = await self.store.get(storage_key)
            document = await asyncio.to_thread(extract_document, file_name, data)
            card = await self.cards.create_file_card(
                db,
                brain_id,
                file_id,
                file_name,
                content=document.content,
                stream_id=stream_id,
            )
        except ClarityError as e:
            await self._mark(db, record, FileProcessingStatus.FAILED, e.message)
            logger.error("Processing file %s failed: %s", file_id, e.message)
            if isinstance(e, ProcessingError):
                raise
            raise ProcessingError(f"Failed to process file {file_name}: {e.message}") from e

        await self._mark(db, record, FileProcessingStatus.COMPLETED)
        logger.info("Processed file %s into card %s", file_id, card.id)

        if job_queue is not None and "[[" in card.content:
            await job_queue.enqueue(
                JobType.LINK_RESOLUTION,
                {"card_id": str(card.id)},
                user_id=owner_id,
                brain_id=brain_id,
            )
        return {"card_id": str(card.id), "characters": len(document.content), **document.metadata}
