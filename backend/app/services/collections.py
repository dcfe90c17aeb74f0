import logging
import uuid
from typing import Sequence

from fastapi import HTTPException, status
from sqlalchemy import exists, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.collection import Collection, collection_posts
from app.models.post import Post
from app.schemas.collection import CollectionCreate, CollectionMembership, CollectionRead, CollectionUpdate
from app.services.asset_usage import referenced_elsewhere
from app.services.assets import AssetManager, CleanupPlan
from app.services.posts import get_visible_post, user_summary
from app.services.visibility import ViewerContext, ensure_allowed, resolve_list_filter, resolve_owner_filter

logger = logging.getLogger(__name__)


async def _load_collection(session: AsyncSession, collection_id: uuid.UUID) -> Collection | None:
    result = await session.execute(
        select(Collection).where(Collection.id == collection_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_collection(session: AsyncSession, collection_id: uuid.UUID) -> Collection:
    collection = await _load_collection(session, collection_id)
    if not collection:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Collection not found")
    return collection


async def _get_owned_collection(session: AsyncSession, collection_id: uuid.UUID, user_id: uuid.UUID) -> Collection:
    collection = await _load_collection(session, collection_id)
    if not collection or collection.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Collection not found")
    return collection


async def _ensure_unique_name(
    session: AsyncSession, user_id: uuid.UUID, name: str, *, exclude_id: uuid.UUID | None = None
) -> None:
    stmt = select(Collection.id).where(Collection.user_id == user_id, func.lower(Collection.name) == name.lower())
    if exclude_id is not None:
        stmt = stmt.where(Collection.id != exclude_id)
    if (await session.execute(stmt)).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A collection with this name already exists")


async def create_collection(
    session: AsyncSession, assets: AssetManager, user_id: uuid.UUID, payload: CollectionCreate
) -> Collection:
    await _ensure_unique_name(session, user_id, payload.name)
    cover = await assets.accept(payload.cover_image_url) if payload.cover_image_url else None
    collection = Collection(
        user_id=user_id,
        name=payload.name,
        description=payload.description,
        visibility=payload.visibility,
        is_draft=payload.is_draft,
        cover_image_url=cover,
    )
    session.add(collection)
    await session.flush()
    for post_id in dict.fromkeys(payload.post_ids):
        await get_visible_post(session, post_id, user_id)
        await session.execute(collection_posts.insert().values(collection_id=collection.id, post_id=post_id))
    await session.commit()
    logger.info("collection_created", extra={"collection_id": str(collection.id), "owner_id": str(user_id)})
    return await get_collection(session, collection.id)


async def update_collection(
    session: AsyncSession,
    assets: AssetManager,
    collection_id: uuid.UUID,
    user_id: uuid.UUID,
    payload: CollectionUpdate,
) -> tuple[Collection, CleanupPlan]:
    collection = await _get_owned_collection(session, collection_id, user_id)
    fields = payload.model_dump(exclude_unset=True)
    plan = CleanupPlan()

    if "name" in fields:
        if payload.name is None or not payload.name.strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Collection name is required")
        await _ensure_unique_name(session, user_id, payload.name.strip(), exclude_id=collection.id)
        collection.name = payload.name.strip()
    if "description" in fields:
        collection.description = payload.description
    if payload.visibility is not None:
        collection.visibility = payload.visibility
    if payload.is_draft is not None:
        collection.is_draft = payload.is_draft

    if "cover_image_url" in fields:
        old_cover = collection.cover_image_url
        new_cover = payload.cover_image_url or None
        if new_cover and old_cover and assets.identity(new_cover) == assets.identity(old_cover):
            new_cover = old_cover
        elif new_cover:
            new_cover = await assets.accept(new_cover)
        if old_cover and old_cover != new_cover:
            plan.trash(old_cover)
        collection.cover_image_url = new_cover

    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        raise
    plan = plan.without(await referenced_elsewhere(session, plan.references))
    return await get_collection(session, collection_id), plan


async def delete_collection(session: AsyncSession, collection_id: uuid.UUID, user_id: uuid.UUID) -> CleanupPlan:
    collection = await _get_owned_collection(session, collection_id, user_id)
    cover = collection.cover_image_url
    try:
        await session.execute(collection_posts.delete().where(collection_posts.c.collection_id == collection_id))
        await session.delete(collection)
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        raise
    plan = CleanupPlan()
    plan.purge(cover)
    logger.info("collection_deleted", extra={"collection_id": str(collection_id), "owner_id": str(user_id)})
    return plan.without(await referenced_elsewhere(session, plan.references))


async def _contains(session: AsyncSession, collection_id: uuid.UUID, post_id: uuid.UUID) -> bool:
    result = await session.execute(
        select(
            exists().where(collection_posts.c.collection_id == collection_id, collection_posts.c.post_id == post_id)
        )
    )
    return bool(result.scalar())


async def add_post(session: AsyncSession, collection_id: uuid.UUID, post_id: uuid.UUID, user_id: uuid.UUID) -> None:
    await _get_owned_collection(session, collection_id, user_id)
    await get_visible_post(session, post_id, user_id)
    if await _contains(session, collection_id, post_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Post is already in this collection")
    await session.execute(collection_posts.insert().values(collection_id=collection_id, post_id=post_id))
    await session.commit()


async def remove_post(session: AsyncSession, collection_id: uuid.UUID, post_id: uuid.UUID, user_id: uuid.UUID) -> None:
    await _get_owned_collection(session, collection_id, user_id)
    if not await _contains(session, collection_id, post_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Post not found in this collection")
    await session.execute(
        collection_posts.delete().where(
            collection_posts.c.collection_id == collection_id, collection_posts.c.post_id == post_id
        )
    )
    await session.commit()


async def list_memberships(
    session: AsyncSession, post_id: uuid.UUID, user_id: uuid.UUID
) -> list[CollectionMembership]:
    """The user's collections by name, each flagged with whether it already holds ``post_id``."""
    await get_visible_post(session, post_id, user_id)
    holds_post = (
        exists()
        .where(collection_posts.c.collection_id == Collection.id, collection_posts.c.post_id == post_id)
        .label("has_post")
    )
    result = await session.execute(
        select(Collection.id, Collection.name, holds_post)
        .where(Collection.user_id == user_id)
        .order_by(func.lower(Collection.name), Collection.id)
    )
    return [
        CollectionMembership(id=collection_id, name=name, has_post=bool(has_post))
        for collection_id, name, has_post in result.all()
    ]


async def get_collection_with_posts(
    session: AsyncSession, collection_id: uuid.UUID, viewer: ViewerContext
) -> tuple[Collection, list[Post]]:
    """Collection detail plus the posts in it the viewer may see.

    A collection can hold posts by other authors, and each of them may have
    changed visibility since it was added, so every post is judged against its
    own author. Opening the collection itself never widens access to a post.
    """
    collection = await get_collection(session, collection_id)
    ensure_allowed(viewer.decide(collection))
    result = await session.execute(
        select(Post)
        .join(collection_posts, collection_posts.c.post_id == Post.id)
        .where(
            collection_posts.c.collection_id == collection_id,
            resolve_list_filter(Post, viewer, include_own_drafts=True),
        )
        .order_by(Post.created_at.desc(), Post.id)
    )
    return collection, list(result.scalars().all())


async def _paginate(session: AsyncSession, stmt, *, page: int, limit: int) -> tuple[list[Collection], int]:
    total = await session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery()))
    result = await session.execute(
        stmt.order_by(Collection.created_at.desc(), Collection.id).offset((page - 1) * limit).limit(limit)
    )
    return list(result.scalars().all()), int(total or 0)


async def explore_collections(
    session: AsyncSession, viewer: ViewerContext, *, search: str | None = None, page: int = 1, limit: int = 20
) -> tuple[list[Collection], int]:
    stmt = select(Collection).where(resolve_list_filter(Collection, viewer))
    if search:
        stmt = stmt.where(Collection.name.ilike(f"%{search.strip()}%"))
    return await _paginate(session, stmt, page=page, limit=limit)


async def list_user_collections(
    session: AsyncSession,
    owner_id: uuid.UUID,
    viewer_id: uuid.UUID | None,
    *,
    is_following: bool,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Collection], int]:
    stmt = select(Collection).where(
        Collection.user_id == owner_id,
        resolve_owner_filter(Collection, viewer_id, owner_id, is_following=is_following),
    )
    return await _paginate(session, stmt, page=page, limit=limit)


async def _post_counts(
    session: AsyncSession, collection_ids: Sequence[uuid.UUID], viewer: ViewerContext
) -> dict[uuid.UUID, int]:
    if not collection_ids:
        return {}
    result = await session.execute(
        select(collection_posts.c.collection_id, func.count())
        .join(Post, Post.id == collection_posts.c.post_id)
        .where(
            collection_posts.c.collection_id.in_(collection_ids),
            resolve_list_filter(Post, viewer, include_own_drafts=True),
        )
        .group_by(collection_posts.c.collection_id)
    )
    return {collection_id: int(count) for collection_id, count in result.all()}


async def build_collection_reads(
    session: AsyncSession, assets: AssetManager, collections: Sequence[Collection], viewer: ViewerContext
) -> list[CollectionRead]:
    """``post_count`` counts only the posts ``viewer`` could open."""
    counts = await _post_counts(session, [collection.id for collection in collections], viewer)
    references: list[str | None] = []
    for collection in collections:
        references.extend([collection.cover_image_url, collection.user.avatar_url])
    signed = await assets.sign_many(references)
    return [
        CollectionRead(
            id=collection.id,
            name=collection.name,
            description=collection.description,
            visibility=collection.visibility,
            is_draft=collection.is_draft,
            cover_image_url=(
                signed.get(collection.cover_image_url, collection.cover_image_url)
                if collection.cover_image_url
                else None
            ),
            created_at=collection.created_at,
            updated_at=collection.updated_at,
            user=user_summary(collection.user, signed),
            post_count=counts.get(collection.id, 0),
        )
        for collection in collections
    ]
