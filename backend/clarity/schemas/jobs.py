"""Background job and upload schemas."""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import Field

from clarity.schemas.base import BaseSchema


class JobRead(BaseSchema):
    id: UUID
    job_type: str
    status: str
    priority: int
    retry_count: int
    user_id: UUID | None
    brain_id: UUID | None
    input_data: dict[str, Any]
    output_data: dict[str, Any] | None
    error_message: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


class JobStatsRead(BaseSchema):
    total: int
    by_status: dict[str, int]
    queued: int
    current_job_id: UUID | None
    is_running: bool


class RetryJobsRequest(BaseSchema):
    job_ids: list[UUID] = Field(..., min_length=1)


class RetryJobsResponse(BaseSchema):
    job_ids: list[UUID]


class CleanupResponse(BaseSchema):
    deleted: int


class UploadedFileResult(BaseSchema):
    file_name: str
    status: Literal["completed", "queued", "failed"]
    file_id: UUID | None = None
    size: int | None = None
    card_id: UUID | None = None
    job_id: UUID | None = None
    error: str | None = None


class UploadSummary(BaseSchema):
    total: int
    completed: int
    queued: int
    failed: int


class UploadResponse(BaseSchema):
    files: list[UploadedFileResult]
    job_ids: list[UUID]
    summary: UploadSummary
