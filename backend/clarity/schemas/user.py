"""User schemas."""

from datetime import datetime
from uuid import UUID

from clarity.schemas.base import BaseSchema


class UserRead(BaseSchema):
    """Schema for reading user data."""

    id: UUID
    email: str | None
    name: str
    storage_quota: int
    created_at: datetime
    updated_at: datetime


class StorageUsageRead(BaseSchema):
    """Storage used across all of a user's brains."""

    storage_used: int
    storage_quota: int
