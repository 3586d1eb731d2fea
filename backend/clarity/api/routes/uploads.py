"""API routes for file upload."""

import logging
from typing import Annotated, Literal
from uuid import UUID

from fastapi import APIRouter, File, Form, UploadFile, status

from clarity.api.deps import (
    CurrentUser,
    DbSession,
    JobQueueDep,
    UploadPipelineDep,
    get_owned_brain,
    get_owned_stream,
)
from clarity.exceptions import ValidationError
from clarity.schemas.jobs import UploadResponse
from clarity.services.file_pipeline import IncomingFile, UploadOptions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/uploads", tags=["uploads"])


@router.post("/brains/{brain_id}", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_files(
    brain_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
    job_queue: JobQueueDep,
    pipeline: UploadPipelineDep,
    files: Annotated[list[UploadFile], File(description="Markdown, text, PDF or EPUB files")],
    stream_id: Annotated[UUID | None, Form()] = None,
    force_background: Annotated[bool, Form()] = False,
    processing_priority: Annotated[Literal["normal", "high"], Form()] = "normal",
) -> UploadResponse:
    """
    Upload files into a brain.

    Flow:
    1. Files are validated (count, size, type) and checked against the storage quota
    2. Each file is stored and recorded
    3. Small files become file cards immediately; large ones are queued as
       FILE_PROCESSING jobs (poll /jobs/{job_id})
    4. With stream_id, the resulting cards are appended to that stream
    """
    brain = await get_owned_brain(db, brain_id, current_user.id)
    if stream_id is not None:
        stream = await get_owned_stream(db, stream_id, current_user.id)
        if stream.brain_id != brain.id:
            raise ValidationError(
                "Stream belongs to a different brain", fields={"stream_id": "not in this brain"}
            )

    incoming = [
        IncomingFile(
            file_name=upload.filename or "",
            data=await upload.read(),
            content_type=upload.content_type,
        )
        for upload in files
    ]
    logger.info("Upload of %d files into brain %s", len(incoming), brain_id)

    result = await pipeline.handle_upload(
        db,
        current_user,
        brain,
        incoming,
        UploadOptions(
            stream_id=stream_id,
            force_background=force_background,
            processing_priority=processing_priority,
        ),
        job_queue,
    )
    return UploadResponse.model_validate(result)
