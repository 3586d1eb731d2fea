"""Stream and ledger schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from clarity.schemas.base import BaseSchema
from clarity.schemas.cards import CardRead


class StreamCreate(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    is_favorited: bool = False


class StreamUpdate(BaseSchema):
    name: str | None = Field(None, min_length=1, max_length=255)
    is_favorited: bool | None = None


class StreamRead(BaseSchema):
    id: UUID
    brain_id: UUID
    name: str
    is_favorited: bool
    created_at: datetime
    last_accessed_at: datetime


class StreamEntryRead(BaseSchema):
    """A card as it sits in a stream."""

    position: int
    depth: int
    is_in_ai_context: bool
    is_collapsed: bool
    added_at: datetime
    card: CardRead


class StreamWithCards(BaseSchema):
    stream: StreamRead
    cards: list[StreamEntryRead]


class InsertCardRequest(BaseSchema):
    card_id: UUID
    position: int | None = Field(None, ge=0, description="Omit to append")
    depth: int = Field(0, ge=0)
    is_in_ai_context: bool = False
    is_collapsed: bool = False


class MoveCardRequest(BaseSchema):
    position: int = Field(..., ge=0)
    depth: int | None = Field(None, ge=0)


class MoveCardResponse(BaseSchema):
    moved: bool


class EntryUpdateRequest(BaseSchema):
    depth: int | None = Field(None, ge=0)
    is_in_ai_context: bool | None = None
    is_collapsed: bool | None = None


class ToggleResponse(BaseSchema):
    value: bool


class NormalizeResponse(BaseSchema):
    updated: int


class PositionStatsRead(BaseSchema):
    total_cards: int
    min_position: int | None
    max_position: int | None
    unique_positions: int
    ai_context_count: int
    has_gaps: bool
    expected_max_position: int


class GenerateCardRequest(BaseSchema):
    prompt: str = Field(..., min_length=1, max_length=10000)
    position: int | None = Field(None, ge=0)
    insert_after: bool = False
