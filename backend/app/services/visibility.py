"""Visibility resolution for posts, collections and profile content.

One decision table backs three entry points:

- ``decide`` / ``resolve_single_item`` for detail pages, which must tell
  "sign in" (UNAUTHORIZED) apart from "private" (FORBIDDEN);
- ``resolve_list_filter`` for explore/search lists, translated into a SQL
  predicate over a followed-id set loaded once per request;
- ``resolve_owner_filter`` for listings scoped to a single owner; rows by other
  authors (posts inside a collection) go through ``resolve_list_filter``.

A missing follow edge is an ordinary DENY input. Errors from the follow lookup
itself propagate unchanged so the API reports them as a transient failure.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

from fastapi import HTTPException, status
from sqlalchemy import and_, or_, select, true
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from app.models.post import Visibility
from app.models.social import Follow


class DenyReason(str, enum.Enum):
    forbidden = "FORBIDDEN"
    unauthorized = "UNAUTHORIZED"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: DenyReason | None = None


ALLOW = Decision(True)
DENY_FORBIDDEN = Decision(False, DenyReason.forbidden)
DENY_UNAUTHORIZED = Decision(False, DenyReason.unauthorized)

_DENY_DETAILS = {
    DenyReason.forbidden: (status.HTTP_403_FORBIDDEN, "This content is private"),
    DenyReason.unauthorized: (status.HTTP_401_UNAUTHORIZED, "Sign in to view this content"),
}


class OwnedItem(Protocol):
    user_id: uuid.UUID
    visibility: Visibility
    is_draft: bool


def decide(
    viewer_id: uuid.UUID | None,
    owner_id: uuid.UUID,
    visibility: Visibility,
    is_draft: bool,
    follows_owner: bool,
) -> Decision:
    if is_draft:
        return ALLOW if viewer_id == owner_id else DENY_FORBIDDEN
    if viewer_id is not None and viewer_id == owner_id:
        return ALLOW
    if visibility == Visibility.public:
        return ALLOW
    if visibility == Visibility.private:
        return DENY_FORBIDDEN
    if viewer_id is None:
        return DENY_UNAUTHORIZED
    return ALLOW if follows_owner else DENY_FORBIDDEN


def needs_follow_lookup(viewer_id: uuid.UUID | None, item: OwnedItem) -> bool:
    return (
        viewer_id is not None
        and viewer_id != item.user_id
        and not item.is_draft
        and item.visibility == Visibility.followers
    )


async def follow_exists(session: AsyncSession, follower_id: uuid.UUID, following_id: uuid.UUID) -> bool:
    result = await session.execute(
        select(Follow.id).where(Follow.follower_id == follower_id, Follow.following_id == following_id)
    )
    return result.scalar_one_or_none() is not None


async def load_followed_ids(session: AsyncSession, viewer_id: uuid.UUID | None) -> frozenset[uuid.UUID]:
    if viewer_id is None:
        return frozenset()
    result = await session.execute(select(Follow.following_id).where(Follow.follower_id == viewer_id))
    return frozenset(result.scalars().all())


async def resolve_single_item(session: AsyncSession, item: OwnedItem, viewer_id: uuid.UUID | None) -> Decision:
    follows_owner = False
    if needs_follow_lookup(viewer_id, item):
        follows_owner = await follow_exists(session, viewer_id, item.user_id)
    return decide(viewer_id, item.user_id, item.visibility, item.is_draft, follows_owner)


def ensure_allowed(decision: Decision) -> None:
    if decision.allowed:
        return
    status_code, detail = _DENY_DETAILS[decision.reason or DenyReason.forbidden]
    raise HTTPException(status_code=status_code, detail=detail)


@dataclass(frozen=True)
class ViewerContext:
    """Viewer identity plus the ids it follows, computed once per request."""

    viewer_id: uuid.UUID | None
    followed_ids: frozenset[uuid.UUID]

    @classmethod
    async def load(cls, session: AsyncSession, viewer_id: uuid.UUID | None) -> "ViewerContext":
        return cls(viewer_id=viewer_id, followed_ids=await load_followed_ids(session, viewer_id))

    @property
    def is_anonymous(self) -> bool:
        return self.viewer_id is None

    def follows(self, owner_id: uuid.UUID) -> bool:
        return owner_id in self.followed_ids

    def decide(self, item: OwnedItem) -> Decision:
        return decide(self.viewer_id, item.user_id, item.visibility, item.is_draft, self.follows(item.user_id))


def resolve_list_filter(
    model: Any, viewer: ViewerContext, *, include_own_drafts: bool = False
) -> ColumnElement[bool]:
    """``is_draft = false AND (public OR (followers AND owner IN followed) OR owner = viewer)``.

    Each row is judged against its own owner, so one predicate covers lists
    mixing many authors. With ``include_own_drafts`` the viewer's drafts pass
    too, which makes the predicate agree with ``decide`` row for row.
    """
    clauses: list[ColumnElement[bool]] = [model.visibility == Visibility.public]
    if viewer.followed_ids:
        followed = sorted(viewer.followed_ids, key=str)
        clauses.append(and_(model.visibility == Visibility.followers, model.user_id.in_(followed)))
    if viewer.viewer_id is not None:
        clauses.append(model.user_id == viewer.viewer_id)
    listed = and_(model.is_draft.is_(False), or_(*clauses))
    if include_own_drafts and viewer.viewer_id is not None:
        return or_(model.user_id == viewer.viewer_id, listed)
    return listed


def resolve_owner_filter(
    model: Any, viewer_id: uuid.UUID | None, owner_id: uuid.UUID, *, is_following: bool
) -> ColumnElement[bool]:
    if viewer_id is not None and viewer_id == owner_id:
        return true()
    allowed = [Visibility.public]
    if is_following and viewer_id is not None:
        allowed.append(Visibility.followers)
    return and_(model.is_draft.is_(False), model.visibility.in_(allowed))
