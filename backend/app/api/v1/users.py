import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import get_asset_manager, get_current_user, get_optional_user, get_viewer_context
from app.db.session import get_session
from app.models.user import User
from app.schemas.collection import CollectionListResponse
from app.schemas.common import PaginationMeta
from app.schemas.profile import Dashboard, ProfilePage
from app.schemas.user import FollowToggleResponse, ProfileUpdate, UserListResponse, UserSummary
from app.services import collections as collections_service
from app.services import follows as follows_service
from app.services import profiles as profiles_service
from app.services.assets import AssetManager
from app.services.visibility import ViewerContext

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/explore", response_model=UserListResponse)
async def explore_users(
    search: str | None = Query(default=None, max_length=50),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=50),
    viewer: User | None = Depends(get_optional_user),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> UserListResponse:
    items, total = await profiles_service.explore_users(
        session, assets, viewer.id if viewer else None, search=search, page=page, limit=limit
    )
    return UserListResponse(items=items, meta=PaginationMeta.build(total, page, limit))


@router.put("/me", response_model=UserSummary)
async def update_me(
    payload: ProfileUpdate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> UserSummary:
    user, cleanup = await profiles_service.update_profile(session, assets, current_user, payload)
    if cleanup:
        background_tasks.add_task(assets.run_cleanup, cleanup)
    return UserSummary(id=user.id, username=user.username, avatar_url=await assets.sign_or_fallback(user.avatar_url))


@router.get("/me/dashboard", response_model=Dashboard)
async def my_dashboard(
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> Dashboard:
    return await profiles_service.get_dashboard(session, assets, current_user)


@router.get("/{user_id}", response_model=ProfilePage)
async def get_profile(
    user_id: uuid.UUID,
    viewer: ViewerContext = Depends(get_viewer_context),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> ProfilePage:
    return await profiles_service.get_profile(session, assets, user_id, viewer)


@router.get("/{user_id}/collections", response_model=CollectionListResponse)
async def user_collections(
    user_id: uuid.UUID,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=50),
    viewer: ViewerContext = Depends(get_viewer_context),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> CollectionListResponse:
    await profiles_service.get_user(session, user_id)
    collections, total = await collections_service.list_user_collections(
        session, user_id, viewer.viewer_id, is_following=viewer.follows(user_id), page=page, limit=limit
    )
    items = await collections_service.build_collection_reads(session, assets, collections, viewer)
    return CollectionListResponse(items=items, meta=PaginationMeta.build(total, page, limit))


@router.post("/{user_id}/follow", response_model=FollowToggleResponse)
async def toggle_follow(
    user_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> FollowToggleResponse:
    following, followers = await follows_service.toggle_follow(session, current_user.id, user_id)
    return FollowToggleResponse(following=following, followers=followers)


@router.get("/{user_id}/followers", response_model=UserListResponse)
async def list_followers(
    user_id: uuid.UUID,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=50),
    viewer: User | None = Depends(get_optional_user),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> UserListResponse:
    users, total = await follows_service.list_followers(session, user_id, page=page, limit=limit)
    items = await profiles_service.build_user_items(session, assets, users, viewer.id if viewer else None)
    return UserListResponse(items=items, meta=PaginationMeta.build(total, page, limit))


@router.get("/{user_id}/following", response_model=UserListResponse)
async def list_following(
    user_id: uuid.UUID,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=50),
    viewer: User | None = Depends(get_optional_user),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> UserListResponse:
    users, total = await follows_service.list_following(session, user_id, page=page, limit=limit)
    items = await profiles_service.build_user_items(session, assets, users, viewer.id if viewer else None)
    return UserListResponse(items=items, meta=PaginationMeta.build(total, page, limit))
