from app.db.base import Base  # noqa: F401
from app.models.user import User  # noqa: F401
from app.models.post import Post, PostCategory, PostImage, Tag, Visibility, post_tags  # noqa: F401
from app.models.collection import Collection, collection_posts  # noqa: F401
from app.models.social import Follow, PostComment, PostLike, SavedPost  # noqa: F401

__all__ = [
    "Base",
    "User",
    "Post",
    "PostCategory",
    "PostImage",
    "Tag",
    "Visibility",
    "post_tags",
    "Collection",
    "collection_posts",
    "Follow",
    "PostComment",
    "PostLike",
    "SavedPost",
]
