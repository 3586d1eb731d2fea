"""
Card schemas.

Cards are a tagged union on card_type so clients never infer "unsaved"
from a missing title.
"""

from datetime import datetime
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import Field, TypeAdapter

from clarity.schemas.base import BaseSchema


class CardReadBase(BaseSchema):
    id: UUID
    brain_id: UUID
    content: str
    content_preview: str
    content_size: int
    created_at: datetime
    updated_at: datetime


class SavedCardRead(CardReadBase):
    card_type: Literal["saved"]
    title: str


class UnsavedCardRead(CardReadBase):
    card_type: Literal["unsaved"]
    stream_id: UUID


class FileCardRead(CardReadBase):
    card_type: Literal["file"]
    title: str
    file_id: UUID | None


CardRead = Annotated[
    Union[SavedCardRead, UnsavedCardRead, FileCardRead],
    Field(discriminator="card_type"),
]

card_adapter: TypeAdapter[CardRead] = TypeAdapter(CardRead)


def card_read(card) -> SavedCardRead | UnsavedCardRead | FileCardRead:
    """Validate an ORM Card into the matching union member."""
    return card_adapter.validate_python(card, from_attributes=True)


class SavedCardCreate(BaseSchema):
    brain_id: UUID
    title: str = Field(..., max_length=200)
    content: str


class UnsavedCardCreate(BaseSchema):
    brain_id: UUID
    stream_id: UUID
    content: str = ""
    position: int | None = Field(None, ge=0)
    insert_after: bool = False


class CardUpdate(BaseSchema):
    """Update content and/or title. Unsaved cards accept content only."""

    title: str | None = Field(None, max_length=200)
    content: str | None = None


class ConvertToSavedRequest(BaseSchema):
    title: str = Field(..., max_length=200)


class LinkedCardRead(BaseSchema):
    id: UUID
    title: str | None
    content_preview: str
    brain_id: UUID


class CardLinkRead(BaseSchema):
    card: LinkedCardRead
    link_text: str
    position: int


class CardLinksResponse(BaseSchema):
    card_id: UUID
    forward_links: list[CardLinkRead]
    backlinks: list[CardLinkRead]


class CardStreamRead(BaseSchema):
    """A stream the card appears in, with the card's placement there."""

    stream_id: UUID
    stream_name: str
    position: int
    depth: int
    is_in_ai_context: bool


class CardDetail(BaseSchema):
    card: CardRead
    streams: list[CardStreamRead]
    links: CardLinksResponse


class LinkResolutionResponse(BaseSchema):
    links_found: int
    links_resolved: int
    broken_links: int
