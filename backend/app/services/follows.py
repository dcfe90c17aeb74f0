import uuid

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.social import Follow
from app.models.user import User


async def _get_user(session: AsyncSession, user_id: uuid.UUID) -> User:
    user = await session.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


async def count_followers(session: AsyncSession, user_id: uuid.UUID) -> int:
    result = await session.execute(select(func.count()).select_from(Follow).where(Follow.following_id == user_id))
    return int(result.scalar_one())


async def count_following(session: AsyncSession, user_id: uuid.UUID) -> int:
    result = await session.execute(select(func.count()).select_from(Follow).where(Follow.follower_id == user_id))
    return int(result.scalar_one())


async def toggle_follow(session: AsyncSession, follower_id: uuid.UUID, user_id: uuid.UUID) -> tuple[bool, int]:
    """Follow ``user_id`` or drop an existing edge; returns (following, follower count)."""
    if follower_id == user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot follow yourself")
    await _get_user(session, user_id)
    result = await session.execute(
        select(Follow).where(Follow.follower_id == follower_id, Follow.following_id == user_id)
    )
    edge = result.scalar_one_or_none()
    if edge:
        await session.delete(edge)
        following = False
    else:
        session.add(Follow(follower_id=follower_id, following_id=user_id))
        following = True
    await session.commit()
    return following, await count_followers(session, user_id)


async def list_followers(
    session: AsyncSession, user_id: uuid.UUID, *, page: int = 1, limit: int = 20
) -> tuple[list[User], int]:
    await _get_user(session, user_id)
    total = await count_followers(session, user_id)
    result = await session.execute(
        select(User)
        .join(Follow, Follow.follower_id == User.id)
        .where(Follow.following_id == user_id)
        .order_by(Follow.created_at.desc(), User.username)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def list_following(
    session: AsyncSession, user_id: uuid.UUID, *, page: int = 1, limit: int = 20
) -> tuple[list[User], int]:
    await _get_user(session, user_id)
    total = await count_following(session, user_id)
    result = await session.execute(
        select(User)
        .join(Follow, Follow.following_id == User.id)
        .where(Follow.follower_id == user_id)
        .order_by(Follow.created_at.desc(), User.username)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total
