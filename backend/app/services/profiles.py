import logging
import uuid

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.collection import Collection
from app.models.post import Post
from app.models.social import Follow, PostComment, PostLike, SavedPost
from app.models.user import User
from app.schemas.profile import CategoryStat, Dashboard, DashboardStats, PostStats, ProfilePage
from app.schemas.user import ProfileCounts, ProfileRead, ProfileUpdate, UserListItem
from app.services import collections as collections_service
from app.services import follows as follows_service
from app.services import posts as posts_service
from app.services.asset_usage import referenced_elsewhere
from app.services.assets import AssetManager, CleanupPlan
from app.services.visibility import ViewerContext, resolve_owner_filter

logger = logging.getLogger(__name__)

PROFILE_PREVIEW_LIMIT = 5
DASHBOARD_PREVIEW_LIMIT = 3


async def _load_user(session: AsyncSession, user_id: uuid.UUID) -> User | None:
    result = await session.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_user(session: AsyncSession, user_id: uuid.UUID) -> User:
    user = await _load_user(session, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


async def _count(session: AsyncSession, stmt) -> int:
    return int(await session.scalar(stmt) or 0)


async def _category_stats(session: AsyncSession, user_id: uuid.UUID) -> list[CategoryStat]:
    result = await session.execute(
        select(Post.category, func.count())
        .where(Post.user_id == user_id, Post.is_draft.is_(False))
        .group_by(Post.category)
        .order_by(Post.category)
    )
    return [CategoryStat(category=category, count=int(count)) for category, count in result.all()]


async def get_profile(
    session: AsyncSession, assets: AssetManager, user_id: uuid.UUID, viewer: ViewerContext
) -> ProfilePage:
    user = await get_user(session, user_id)
    viewer_id = viewer.viewer_id
    is_owner = viewer_id is not None and viewer_id == user_id
    following = viewer.follows(user_id)

    counts = ProfileCounts(
        followers=await follows_service.count_followers(session, user_id),
        following=await follows_service.count_following(session, user_id),
        posts=await _count(
            session, select(func.count()).select_from(Post).where(Post.user_id == user_id, Post.is_draft.is_(False))
        ),
        collections=await _count(
            session,
            select(func.count())
            .select_from(Collection)
            .where(Collection.user_id == user_id, Collection.is_draft.is_(False)),
        ),
    )

    posts = (
        await session.execute(
            select(Post)
            .where(Post.user_id == user_id, resolve_owner_filter(Post, viewer_id, user_id, is_following=following))
            .order_by(Post.created_at.desc(), Post.id)
            .limit(PROFILE_PREVIEW_LIMIT)
        )
    ).scalars().all()
    collections = (
        await session.execute(
            select(Collection)
            .where(
                Collection.user_id == user_id,
                resolve_owner_filter(Collection, viewer_id, user_id, is_following=following),
            )
            .order_by(Collection.updated_at.desc(), Collection.id)
            .limit(PROFILE_PREVIEW_LIMIT)
        )
    ).scalars().all()

    avatar = await assets.sign_or_fallback(user.avatar_url)
    return ProfilePage(
        profile=ProfileRead(
            id=user.id,
            username=user.username,
            avatar_url=avatar,
            bio=user.bio,
            created_at=user.created_at,
            counts=counts,
            is_following=following,
            is_owner=is_owner,
        ),
        category_stats=await _category_stats(session, user_id),
        posts=await posts_service.build_post_reads(session, assets, posts, viewer_id),
        collections=await collections_service.build_collection_reads(session, assets, collections, viewer),
    )


async def _engagement_total(session: AsyncSession, model, user_id: uuid.UUID) -> int:
    return await _count(
        session,
        select(func.count())
        .select_from(model)
        .join(Post, Post.id == model.post_id)
        .where(Post.user_id == user_id, Post.is_draft.is_(False)),
    )


async def get_post_stats(session: AsyncSession, user_id: uuid.UUID) -> PostStats:
    rows = await session.execute(
        select(Post.is_draft, func.count()).where(Post.user_id == user_id).group_by(Post.is_draft)
    )
    by_draft = {bool(is_draft): int(count) for is_draft, count in rows.all()}
    return PostStats(
        posts=by_draft.get(False, 0),
        drafts=by_draft.get(True, 0),
        likes=await _engagement_total(session, PostLike, user_id),
        comments=await _engagement_total(session, PostComment, user_id),
        saves=await _engagement_total(session, SavedPost, user_id),
        category_stats=await _category_stats(session, user_id),
    )


async def get_dashboard(session: AsyncSession, assets: AssetManager, user: User) -> Dashboard:
    """Owner-only overview: totals including drafts, latest posts, drafts and collections."""
    post_stats = await get_post_stats(session, user.id)
    stats = DashboardStats(
        **post_stats.model_dump(),
        followers=await follows_service.count_followers(session, user.id),
        following=await follows_service.count_following(session, user.id),
        collections=await _count(
            session, select(func.count()).select_from(Collection).where(Collection.user_id == user.id)
        ),
    )
    recent = (
        await session.execute(
            select(Post)
            .where(Post.user_id == user.id, Post.is_draft.is_(False))
            .order_by(Post.created_at.desc(), Post.id)
            .limit(DASHBOARD_PREVIEW_LIMIT)
        )
    ).scalars().all()
    drafts = (
        await session.execute(
            select(Post)
            .where(Post.user_id == user.id, Post.is_draft.is_(True))
            .order_by(Post.updated_at.desc(), Post.id)
            .limit(DASHBOARD_PREVIEW_LIMIT)
        )
    ).scalars().all()
    collections = (
        await session.execute(
            select(Collection)
            .where(Collection.user_id == user.id)
            .order_by(Collection.created_at.desc(), Collection.id)
            .limit(DASHBOARD_PREVIEW_LIMIT)
        )
    ).scalars().all()

    owner = await ViewerContext.load(session, user.id)
    return Dashboard(
        avatar_url=await assets.sign_or_fallback(user.avatar_url),
        stats=stats,
        recent_posts=await posts_service.build_post_reads(session, assets, recent, user.id),
        drafts=await posts_service.build_post_reads(session, assets, drafts, user.id),
        collections=await collections_service.build_collection_reads(session, assets, collections, owner),
    )


async def update_profile(
    session: AsyncSession, assets: AssetManager, user: User, payload: ProfileUpdate
) -> tuple[User, CleanupPlan]:
    """Apply profile edits; a replaced avatar is trashed once the returned plan runs."""
    fields = payload.model_dump(exclude_unset=True)
    plan = CleanupPlan()

    if fields.get("username") and payload.username != user.username:
        taken = await session.execute(
            select(User.id).where(func.lower(User.username) == payload.username.lower(), User.id != user.id)
        )
        if taken.first():
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Username is already taken")
        user.username = payload.username
    if "bio" in fields:
        user.bio = payload.bio

    if "avatar_url" in fields:
        old_avatar = user.avatar_url
        new_avatar = payload.avatar_url or None
        if new_avatar and old_avatar and assets.identity(new_avatar) == assets.identity(old_avatar):
            new_avatar = old_avatar
        elif new_avatar:
            new_avatar = await assets.accept(new_avatar)
        if old_avatar and old_avatar != new_avatar:
            plan.trash(old_avatar)
        user.avatar_url = new_avatar

    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        raise
    logger.info("profile_updated", extra={"owner_id": str(user.id), "fields": sorted(fields)})
    plan = plan.without(await referenced_elsewhere(session, plan.references))
    return await get_user(session, user.id), plan


async def explore_users(
    session: AsyncSession,
    assets: AssetManager,
    viewer_id: uuid.UUID | None,
    *,
    search: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[UserListItem], int]:
    stmt = select(User)
    if search:
        stmt = stmt.where(User.username.ilike(f"%{search.strip()}%"))
    total = await _count(session, select(func.count()).select_from(stmt.subquery()))
    users = (
        await session.execute(stmt.order_by(User.username).offset((page - 1) * limit).limit(limit))
    ).scalars().all()
    return await build_user_items(session, assets, users, viewer_id), total


async def build_user_items(
    session: AsyncSession, assets: AssetManager, users, viewer_id: uuid.UUID | None
) -> list[UserListItem]:
    if not users:
        return []
    ids = [user.id for user in users]
    follower_rows = await session.execute(
        select(Follow.following_id, func.count()).where(Follow.following_id.in_(ids)).group_by(Follow.following_id)
    )
    followers = {user_id: int(count) for user_id, count in follower_rows.all()}
    followed: set[uuid.UUID] = set()
    if viewer_id is not None:
        rows = await session.execute(
            select(Follow.following_id).where(Follow.follower_id == viewer_id, Follow.following_id.in_(ids))
        )
        followed = set(rows.scalars().all())
    signed = await assets.sign_many(user.avatar_url for user in users)
    return [
        UserListItem(
            id=user.id,
            username=user.username,
            avatar_url=signed.get(user.avatar_url, user.avatar_url) if user.avatar_url else None,
            bio=user.bio,
            followers=followers.get(user.id, 0),
            is_following=user.id in followed,
        )
        for user in users
    ]
