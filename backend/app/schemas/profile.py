from pydantic import BaseModel, Field

from app.models.post import PostCategory
from app.schemas.collection import CollectionRead
from app.schemas.post import PostRead
from app.schemas.user import ProfileRead


class CategoryStat(BaseModel):
    category: PostCategory
    count: int


class ProfilePage(BaseModel):
    profile: ProfileRead
    category_stats: list[CategoryStat] = Field(default_factory=list)
    posts: list[PostRead] = Field(default_factory=list)
    collections: list[CollectionRead] = Field(default_factory=list)


class PostStats(BaseModel):
    """Owner totals; engagement sums cover published posts only."""

    posts: int = 0
    drafts: int = 0
    likes: int = 0
    comments: int = 0
    saves: int = 0
    category_stats: list[CategoryStat] = Field(default_factory=list)


class DashboardStats(PostStats):
    followers: int = 0
    following: int = 0
    collections: int = 0


class Dashboard(BaseModel):
    avatar_url: str | None = None
    stats: DashboardStats
    recent_posts: list[PostRead] = Field(default_factory=list)
    drafts: list[PostRead] = Field(default_factory=list)
    collections: list[CollectionRead] = Field(default_factory=list)
