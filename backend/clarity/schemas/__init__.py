"""Pydantic schemas for API request/response validation."""

from clarity.schemas.user import StorageUsageRead, UserRead
from clarity.schemas.brains import BrainCreate, BrainRead, BrainUpdate, TitleCheckResponse
from clarity.schemas.cards import (
    CardDetail,
    CardRead,
    CardUpdate,
    ConvertToSavedRequest,
    FileCardRead,
    SavedCardCreate,
    SavedCardRead,
    UnsavedCardCreate,
    UnsavedCardRead,
    card_read,
)
from clarity.schemas.streams import (
    InsertCardRequest,
    MoveCardRequest,
    StreamCreate,
    StreamRead,
    StreamUpdate,
    StreamWithCards,
)
from clarity.schemas.jobs import JobRead, JobStatsRead, UploadResponse

__all__ = [
    # User
    "StorageUsageRead",
    "UserRead",
    # Brains
    "BrainCreate",
    "BrainRead",
    "BrainUpdate",
    "TitleCheckResponse",
    # Cards
    "CardDetail",
    "CardRead",
    "CardUpdate",
    "ConvertToSavedRequest",
    "FileCardRead",
    "SavedCardCreate",
    "SavedCardRead",
    "UnsavedCardCreate",
    "UnsavedCardRead",
    "card_read",
    # Streams
    "InsertCardRequest",
    "MoveCardRequest",
    "StreamCreate",
    "StreamRead",
    "StreamUpdate",
    "StreamWithCards",
    # Jobs
    "JobRead",
    "JobStatsRead",
    "UploadResponse",
]
