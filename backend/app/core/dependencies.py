from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import decode_token
from app.db.session import get_session
from app.models.user import User
from app.services.assets import AssetManager
from app.services.visibility import ViewerContext

bearer_scheme = HTTPBearer(auto_error=False)


def _subject_id(token: str) -> UUID | None:
    payload = decode_token(token)
    if not payload or payload.get("type") != "access":
        return None
    try:
        return UUID(str(payload.get("sub")))
    except ValueError:
        return None


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_session),
) -> User:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user_id = _subject_id(credentials.credentials)
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


async def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_session),
) -> User | None:
    """Like ``get_current_user`` but an absent or unusable token means an anonymous viewer."""
    if credentials is None:
        return None
    user_id = _subject_id(credentials.credentials)
    if user_id is None:
        return None
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_viewer_context(
    user: User | None = Depends(get_optional_user),
    session: AsyncSession = Depends(get_session),
) -> ViewerContext:
    return await ViewerContext.load(session, user.id if user else None)


def get_asset_manager(request: Request) -> AssetManager:
    return request.app.state.asset_manager
