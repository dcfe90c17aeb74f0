from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from app.schemas.common import PaginationMeta


class UserSummary(BaseModel):
    id: UUID
    username: str
    avatar_url: str | None = None


class UserListItem(UserSummary):
    bio: str | None = None
    followers: int = 0
    is_following: bool = False


class UserListResponse(BaseModel):
    items: list[UserListItem]
    meta: PaginationMeta


class ProfileCounts(BaseModel):
    followers: int
    following: int
    posts: int
    collections: int


class ProfileRead(UserSummary):
    bio: str | None = None
    created_at: datetime
    counts: ProfileCounts
    is_following: bool = False
    is_owner: bool = False


class ProfileUpdate(BaseModel):
    username: str | None = Field(default=None, min_length=3, max_length=20, pattern=r"^[A-Za-z0-9_.]+$")
    bio: str | None = Field(default=None, max_length=500)
    avatar_url: str | None = Field(default=None, max_length=1024)


class FollowToggleResponse(BaseModel):
    following: bool
    followers: int
