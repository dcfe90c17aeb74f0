import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import get_asset_manager, get_current_user, get_viewer_context
from app.db.session import get_session
from app.models.user import User
from app.schemas.collection import (
    CollectionCreate,
    CollectionDetail,
    CollectionListResponse,
    CollectionRead,
    CollectionUpdate,
)
from app.schemas.common import PaginationMeta
from app.services import collections as collections_service
from app.services import posts as posts_service
from app.services.assets import AssetManager
from app.services.visibility import ViewerContext

router = APIRouter(prefix="/collections", tags=["collections"])


async def _read(session: AsyncSession, assets: AssetManager, collection, viewer: ViewerContext) -> CollectionRead:
    reads = await collections_service.build_collection_reads(session, assets, [collection], viewer)
    return reads[0]


@router.post("", response_model=CollectionRead, status_code=status.HTTP_201_CREATED)
async def create_collection(
    payload: CollectionCreate,
    current_user: User = Depends(get_current_user),
    viewer: ViewerContext = Depends(get_viewer_context),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> CollectionRead:
    collection = await collections_service.create_collection(session, assets, current_user.id, payload)
    return await _read(session, assets, collection, viewer)


@router.get("/explore", response_model=CollectionListResponse)
async def explore_collections(
    search: str | None = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=50),
    viewer: ViewerContext = Depends(get_viewer_context),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> CollectionListResponse:
    collections, total = await collections_service.explore_collections(
        session, viewer, search=search, page=page, limit=limit
    )
    items = await collections_service.build_collection_reads(session, assets, collections, viewer)
    return CollectionListResponse(items=items, meta=PaginationMeta.build(total, page, limit))


@router.get("/{collection_id}", response_model=CollectionDetail)
async def get_collection(
    collection_id: uuid.UUID,
    viewer: ViewerContext = Depends(get_viewer_context),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> CollectionDetail:
    collection, posts = await collections_service.get_collection_with_posts(session, collection_id, viewer)
    read = await _read(session, assets, collection, viewer)
    post_reads = await posts_service.build_post_reads(session, assets, posts, viewer.viewer_id)
    return CollectionDetail(**read.model_dump(), posts=post_reads)


@router.put("/{collection_id}", response_model=CollectionRead)
async def update_collection(
    collection_id: uuid.UUID,
    payload: CollectionUpdate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    viewer: ViewerContext = Depends(get_viewer_context),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> CollectionRead:
    collection, cleanup = await collections_service.update_collection(
        session, assets, collection_id, current_user.id, payload
    )
    if cleanup:
        background_tasks.add_task(assets.run_cleanup, cleanup)
    return await _read(session, assets, collection, viewer)


@router.delete("/{collection_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_collection(
    collection_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> None:
    cleanup = await collections_service.delete_collection(session, collection_id, current_user.id)
    if cleanup:
        background_tasks.add_task(assets.run_cleanup, cleanup)
    return None


@router.post("/{collection_id}/posts/{post_id}", status_code=status.HTTP_204_NO_CONTENT)
async def add_post(
    collection_id: uuid.UUID,
    post_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> None:
    await collections_service.add_post(session, collection_id, post_id, current_user.id)
    return None


@router.delete("/{collection_id}/posts/{post_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_post(
    collection_id: uuid.UUID,
    post_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> None:
    await collections_service.remove_post(session, collection_id, post_id, current_user.id)
    return None
