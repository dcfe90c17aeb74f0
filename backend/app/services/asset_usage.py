"""Lookups for asset references that are still stored on some entity."""

from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.collection import Collection
from app.models.post import PostImage
from app.models.user import User


async def referenced_elsewhere(session: AsyncSession, references: Iterable[str]) -> set[str]:
    """Return the subset of ``references`` still stored on a post image, collection cover or avatar.

    Run after the owning write committed so the rows it just removed no longer count.
    """
    refs = {ref for ref in references if ref}
    if not refs:
        return set()
    in_use: set[str] = set()
    for column in (PostImage.url, Collection.cover_image_url, User.avatar_url):
        rows = await session.execute(select(column).where(column.in_(refs)).distinct())
        in_use.update(value for value in rows.scalars().all() if value)
    return in_use
