import logging
import uuid
from typing import Sequence

from fastapi import HTTPException, status
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.collection import Collection, collection_posts
from app.models.post import Post, PostCategory, PostImage, Tag
from app.models.social import PostComment, PostLike, SavedPost
from app.models.user import User
from app.schemas.post import (
    CommentCreate,
    CommentRead,
    PostCounts,
    PostCreate,
    PostImageRead,
    PostRead,
    PostUpdate,
)
from app.schemas.user import UserSummary
from app.services.asset_usage import referenced_elsewhere
from app.services.assets import AssetManager, CleanupPlan, IncomingAsset
from app.services.visibility import ViewerContext, ensure_allowed, resolve_list_filter, resolve_single_item

logger = logging.getLogger(__name__)


async def _load_post(session: AsyncSession, post_id: uuid.UUID) -> Post | None:
    result = await session.execute(
        select(Post).where(Post.id == post_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_post(session: AsyncSession, post_id: uuid.UUID) -> Post:
    post = await _load_post(session, post_id)
    if not post:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Post not found")
    return post


async def get_visible_post(session: AsyncSession, post_id: uuid.UUID, viewer_id: uuid.UUID | None) -> Post:
    post = await get_post(session, post_id)
    ensure_allowed(await resolve_single_item(session, post, viewer_id))
    return post


async def _get_owned_post(session: AsyncSession, post_id: uuid.UUID, user_id: uuid.UUID) -> Post:
    post = await _load_post(session, post_id)
    if not post or post.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Post not found")
    return post


def cover_url(post: Post) -> str | None:
    if not post.images:
        return None
    cover = next((image for image in post.images if image.is_cover), post.images[0])
    return cover.url


async def _resolve_tags(session: AsyncSession, names: Sequence[str]) -> list[Tag]:
    if not names:
        return []
    result = await session.execute(select(Tag).where(Tag.name.in_(names)))
    existing = {tag.name: tag for tag in result.scalars().all()}
    tags: list[Tag] = []
    for name in names:
        tag = existing.get(name)
        if tag is None:
            tag = Tag(name=name)
            session.add(tag)
            existing[name] = tag
        tags.append(tag)
    return tags


async def create_post(session: AsyncSession, user_id: uuid.UUID, payload: PostCreate) -> Post:
    post = Post(
        user_id=user_id,
        title=payload.title.strip(),
        description=payload.description,
        category=payload.category,
        is_draft=True,
    )
    post.tags = await _resolve_tags(session, payload.tags)
    session.add(post)
    await session.commit()
    logger.info("post_created", extra={"post_id": str(post.id), "owner_id": str(user_id)})
    return await get_post(session, post.id)


async def _paginate(session: AsyncSession, stmt, *, page: int, limit: int) -> tuple[list[Post], int]:
    total = await session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery()))
    result = await session.execute(
        stmt.order_by(Post.created_at.desc(), Post.id).offset((page - 1) * limit).limit(limit)
    )
    return list(result.scalars().all()), int(total or 0)


async def explore_posts(
    session: AsyncSession,
    viewer: ViewerContext,
    *,
    search: str | None = None,
    category: PostCategory | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Post], int]:
    stmt = select(Post).where(resolve_list_filter(Post, viewer))
    if search:
        like = f"%{search.strip()}%"
        stmt = stmt.where(or_(Post.title.ilike(like), Post.description.ilike(like)))
    if category:
        stmt = stmt.where(Post.category == category)
    return await _paginate(session, stmt, page=page, limit=limit)


async def list_user_posts(
    session: AsyncSession, user_id: uuid.UUID, *, page: int = 1, limit: int = 20
) -> tuple[list[Post], int]:
    return await _paginate(session, select(Post).where(Post.user_id == user_id), page=page, limit=limit)


async def list_saved_posts(
    session: AsyncSession, viewer: ViewerContext, *, page: int = 1, limit: int = 20
) -> tuple[list[Post], int]:
    stmt = (
        select(Post)
        .join(SavedPost, SavedPost.post_id == Post.id)
        .where(SavedPost.user_id == viewer.viewer_id, resolve_list_filter(Post, viewer))
    )
    return await _paginate(session, stmt, page=page, limit=limit)


def _check_images(post: Post, payload: PostUpdate) -> None:
    if len(payload.images) > settings.post_max_images:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"A post can have at most {settings.post_max_images} images",
        )
    own_ids = {image.id for image in post.images}
    for image in payload.images:
        if image.existing_image_id is not None and image.existing_image_id not in own_ids:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Image does not belong to this post")


async def update_post(
    session: AsyncSession,
    assets: AssetManager,
    post_id: uuid.UUID,
    user_id: uuid.UUID,
    payload: PostUpdate,
) -> tuple[Post, CleanupPlan]:
    """Apply an edit to a post and its image list.

    New images are promoted before anything is written. Row removals, cover
    resets, inserts and the field update commit together; the returned plan
    trashes the images the post stopped using and must run after the commit.
    """
    post = await _get_owned_post(session, post_id, user_id)
    _check_images(post, payload)

    diff = assets.diff(
        [image.url for image in post.images],
        [IncomingAsset(image.url, image.existing_image_id) for image in payload.images],
    )
    stored: dict[str, str] = {}
    for item in diff.added:
        stored[item.reference] = await assets.accept(item.reference)

    rows_by_key = {assets.identity(image.url): image for image in post.images}
    images: list[PostImage] = []
    seen: set[str] = set()
    for image in payload.images:
        key = assets.identity(image.url)
        if key in seen:
            continue
        seen.add(key)
        row = rows_by_key.get(key)
        if row is None:
            row = PostImage(url=stored[image.url])
        row.description = image.description or ""
        row.is_cover = image.is_cover
        row.sort_order = len(images)
        images.append(row)

    try:
        post.images = images
        post.title = payload.title.strip()
        post.description = payload.description
        post.category = payload.category
        post.visibility = payload.visibility
        post.is_draft = payload.is_draft
        post.tags = await _resolve_tags(session, payload.tags)
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("post_update_failed", extra={"post_id": str(post_id), "owner_id": str(user_id)})
        raise

    plan = CleanupPlan()
    for reference in diff.removed:
        plan.trash(reference)
    plan = plan.without(await referenced_elsewhere(session, plan.references))
    logger.info(
        "post_updated",
        extra={
            "post_id": str(post_id),
            "added": len(diff.added),
            "retained": len(diff.retained),
            "removed": len(diff.removed),
        },
    )
    return await get_post(session, post_id), plan


async def delete_post(session: AsyncSession, post_id: uuid.UUID, user_id: uuid.UUID) -> CleanupPlan:
    post = await _get_owned_post(session, post_id, user_id)
    references = [image.url for image in post.images]
    cover = cover_url(post)
    try:
        if cover:
            await session.execute(
                update(Collection).where(Collection.cover_image_url == cover).values(cover_image_url=None)
            )
        for model in (PostLike, SavedPost, PostComment):
            await session.execute(delete(model).where(model.post_id == post_id))
        await session.execute(delete(collection_posts).where(collection_posts.c.post_id == post_id))
        await session.delete(post)
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        raise

    plan = CleanupPlan()
    for reference in references:
        plan.purge(reference)
    logger.info("post_deleted", extra={"post_id": str(post_id), "owner_id": str(user_id)})
    return plan.without(await referenced_elsewhere(session, plan.references))


async def toggle_like(session: AsyncSession, post_id: uuid.UUID, user_id: uuid.UUID) -> tuple[bool, int]:
    await get_visible_post(session, post_id, user_id)
    result = await session.execute(select(PostLike).where(PostLike.post_id == post_id, PostLike.user_id == user_id))
    like = result.scalar_one_or_none()
    if like:
        await session.delete(like)
        liked = False
    else:
        session.add(PostLike(post_id=post_id, user_id=user_id))
        liked = True
    await session.commit()
    counts = await _count_by_post(session, PostLike, [post_id])
    return liked, counts.get(post_id, 0)


async def save_post(session: AsyncSession, post_id: uuid.UUID, user_id: uuid.UUID) -> None:
    await get_visible_post(session, post_id, user_id)
    existing = await session.execute(
        select(SavedPost).where(SavedPost.post_id == post_id, SavedPost.user_id == user_id)
    )
    if existing.scalar_one_or_none():
        return
    session.add(SavedPost(post_id=post_id, user_id=user_id))
    await session.commit()


async def unsave_post(session: AsyncSession, post_id: uuid.UUID, user_id: uuid.UUID) -> None:
    result = await session.execute(
        select(SavedPost).where(SavedPost.post_id == post_id, SavedPost.user_id == user_id)
    )
    saved = result.scalar_one_or_none()
    if not saved:
        return
    await session.delete(saved)
    await session.commit()


async def list_comments(
    session: AsyncSession, post_id: uuid.UUID, viewer_id: uuid.UUID | None, *, page: int = 1, limit: int = 20
) -> tuple[list[PostComment], int]:
    await get_visible_post(session, post_id, viewer_id)
    total = await session.scalar(
        select(func.count()).select_from(PostComment).where(PostComment.post_id == post_id)
    )
    result = await session.execute(
        select(PostComment)
        .where(PostComment.post_id == post_id)
        .order_by(PostComment.created_at.desc(), PostComment.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), int(total or 0)


async def add_comment(
    session: AsyncSession, post_id: uuid.UUID, user_id: uuid.UUID, payload: CommentCreate
) -> PostComment:
    await get_visible_post(session, post_id, user_id)
    comment = PostComment(post_id=post_id, user_id=user_id, body=payload.body)
    session.add(comment)
    await session.commit()
    result = await session.execute(
        select(PostComment).where(PostComment.id == comment.id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def delete_comment(
    session: AsyncSession, post_id: uuid.UUID, comment_id: uuid.UUID, user_id: uuid.UUID
) -> None:
    """Remove a comment as its author or as the owner of the post it sits on."""
    result = await session.execute(
        select(PostComment, Post.user_id)
        .join(Post, Post.id == PostComment.post_id)
        .where(PostComment.id == comment_id, PostComment.post_id == post_id)
    )
    row = result.first()
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Comment not found")
    comment, post_owner_id = row
    if user_id not in (comment.user_id, post_owner_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Comment not found")
    await session.delete(comment)
    await session.commit()
    logger.info(
        "comment_deleted",
        extra={"comment_id": str(comment_id), "post_id": str(post_id), "by_post_owner": user_id != comment.user_id},
    )


async def _count_by_post(session: AsyncSession, model, post_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, int]:
    if not post_ids:
        return {}
    result = await session.execute(
        select(model.post_id, func.count()).where(model.post_id.in_(post_ids)).group_by(model.post_id)
    )
    return {post_id: int(count) for post_id, count in result.all()}


async def _viewer_post_ids(
    session: AsyncSession, model, viewer_id: uuid.UUID | None, post_ids: Sequence[uuid.UUID]
) -> set[uuid.UUID]:
    if viewer_id is None or not post_ids:
        return set()
    result = await session.execute(
        select(model.post_id).where(model.user_id == viewer_id, model.post_id.in_(post_ids))
    )
    return set(result.scalars().all())


def user_summary(user: User, signed: dict[str, str]) -> UserSummary:
    avatar = signed.get(user.avatar_url, user.avatar_url) if user.avatar_url else None
    return UserSummary(id=user.id, username=user.username, avatar_url=avatar)


async def build_post_reads(
    session: AsyncSession,
    assets: AssetManager,
    posts: Sequence[Post],
    viewer_id: uuid.UUID | None,
    *,
    include_images: bool = False,
) -> list[PostRead]:
    """Serialize posts with engagement counts and freshly signed asset URLs.

    List views sign the cover and author avatar only; ``include_images`` signs
    every image for detail pages.
    """
    if not posts:
        return []
    post_ids = [post.id for post in posts]
    likes = await _count_by_post(session, PostLike, post_ids)
    comments = await _count_by_post(session, PostComment, post_ids)
    saves = await _count_by_post(session, SavedPost, post_ids)
    liked = await _viewer_post_ids(session, PostLike, viewer_id, post_ids)
    saved = await _viewer_post_ids(session, SavedPost, viewer_id, post_ids)

    references: list[str | None] = []
    for post in posts:
        references.extend([post.user.avatar_url, cover_url(post)])
        if include_images:
            references.extend(image.url for image in post.images)
    signed = await assets.sign_many(references)

    reads: list[PostRead] = []
    for post in posts:
        cover = cover_url(post)
        images = []
        if include_images:
            images = [
                PostImageRead(
                    id=image.id,
                    url=signed.get(image.url, image.url),
                    description=image.description,
                    is_cover=image.is_cover,
                    sort_order=image.sort_order,
                )
                for image in post.images
            ]
        reads.append(
            PostRead(
                id=post.id,
                title=post.title,
                description=post.description,
                category=post.category,
                visibility=post.visibility,
                is_draft=post.is_draft,
                created_at=post.created_at,
                updated_at=post.updated_at,
                user=user_summary(post.user, signed),
                cover_image_url=signed.get(cover, cover) if cover else None,
                images=images,
                tags=[tag.name for tag in post.tags],
                counts=PostCounts(
                    likes=likes.get(post.id, 0),
                    comments=comments.get(post.id, 0),
                    saved=saves.get(post.id, 0),
                ),
                is_liked=post.id in liked,
                is_saved=post.id in saved,
            )
        )
    return reads


async def build_comment_reads(assets: AssetManager, comments: Sequence[PostComment]) -> list[CommentRead]:
    signed = await assets.sign_many(comment.user.avatar_url for comment in comments)
    return [
        CommentRead(id=comment.id, body=comment.body, created_at=comment.created_at, user=user_summary(comment.user, signed))
        for comment in comments
    ]
