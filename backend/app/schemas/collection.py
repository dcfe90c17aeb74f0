from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from app.models.post import Visibility
from app.schemas.common import PaginationMeta
from app.schemas.post import PostRead
from app.schemas.user import UserSummary


class CollectionBase(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    description: str | None = Field(default=None, max_length=200)
    visibility: Visibility = Visibility.public
    is_draft: bool = False
    cover_image_url: str | None = Field(default=None, max_length=2048)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Collection name is required")
        return value


class CollectionCreate(CollectionBase):
    post_ids: list[UUID] = Field(default_factory=list)


class CollectionUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=50)
    description: str | None = Field(default=None, max_length=200)
    visibility: Visibility | None = None
    is_draft: bool | None = None
    cover_image_url: str | None = Field(default=None, max_length=2048)


class CollectionRead(BaseModel):
    id: UUID
    name: str
    description: str | None = None
    visibility: Visibility
    is_draft: bool
    cover_image_url: str | None = None
    created_at: datetime
    updated_at: datetime
    user: UserSummary
    post_count: int = 0


class CollectionDetail(CollectionRead):
    posts: list[PostRead] = Field(default_factory=list)


class CollectionListResponse(BaseModel):
    items: list[CollectionRead]
    meta: PaginationMeta


class CollectionMembership(BaseModel):
    id: UUID
    name: str
    has_post: bool
