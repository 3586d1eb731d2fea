"""Brain schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from clarity.schemas.base import BaseSchema


class BrainCreate(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)


class BrainUpdate(BaseSchema):
    name: str | None = Field(None, min_length=1, max_length=255)


class BrainRead(BaseSchema):
    id: UUID
    user_id: UUID
    name: str
    storage_used: int
    created_at: datetime
    updated_at: datetime


class TitleCheckResponse(BaseSchema):
    """Whether a saved-card title is already taken in the brain."""

    title: str
    exists: bool
