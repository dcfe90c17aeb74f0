from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from app.models.post import PostCategory, Visibility
from app.schemas.common import PaginationMeta
from app.schemas.user import UserSummary


class PostImageRead(BaseModel):
    id: UUID
    url: str
    description: str | None = None
    is_cover: bool
    sort_order: int


class PostCounts(BaseModel):
    likes: int = 0
    comments: int = 0
    saved: int = 0


class PostRead(BaseModel):
    id: UUID
    title: str
    description: str
    category: PostCategory
    visibility: Visibility
    is_draft: bool
    created_at: datetime
    updated_at: datetime
    user: UserSummary
    cover_image_url: str | None = None
    images: list[PostImageRead] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    counts: PostCounts = Field(default_factory=PostCounts)
    is_liked: bool = False
    is_saved: bool = False


class PostListResponse(BaseModel):
    items: list[PostRead]
    meta: PaginationMeta


def _normalize_tags(tags: list[str]) -> list[str]:
    cleaned: list[str] = []
    for tag in tags:
        value = tag.strip().lower()
        if not value:
            raise ValueError("Tag cannot be empty")
        if len(value) > 50:
            raise ValueError("Tag must be at most 50 characters")
        if value not in cleaned:
            cleaned.append(value)
    return cleaned


class PostCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1)
    category: PostCategory
    tags: list[str] = Field(min_length=1, max_length=10)

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, value: list[str]) -> list[str]:
        return _normalize_tags(value)


class PostImageInput(BaseModel):
    url: str = Field(min_length=1, max_length=2048)
    description: str | None = Field(default="", max_length=500)
    is_cover: bool = False
    existing_image_id: UUID | None = None


class PostUpdate(PostCreate):
    visibility: Visibility
    is_draft: bool = False
    images: list[PostImageInput] = Field(default_factory=list, max_length=10)

    @model_validator(mode="after")
    def _single_cover(self) -> "PostUpdate":
        if sum(1 for image in self.images if image.is_cover) > 1:
            raise ValueError("Only one image can be the cover")
        return self


class LikeToggleResponse(BaseModel):
    liked: bool
    likes: int


class SaveResponse(BaseModel):
    saved: bool


class CommentCreate(BaseModel):
    body: str = Field(min_length=1, max_length=500)

    @field_validator("body")
    @classmethod
    def _strip_body(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Comment body is required")
        return value


class CommentRead(BaseModel):
    id: UUID
    body: str
    created_at: datetime
    user: UserSummary


class CommentListResponse(BaseModel):
    items: list[CommentRead]
    meta: PaginationMeta
