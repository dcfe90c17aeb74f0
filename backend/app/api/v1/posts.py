import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import get_asset_manager, get_current_user, get_optional_user, get_viewer_context
from app.db.session import get_session
from app.models.post import PostCategory
from app.models.user import User
from app.schemas.common import PaginationMeta
from app.schemas.post import (
    CommentCreate,
    CommentListResponse,
    CommentRead,
    LikeToggleResponse,
    PostCreate,
    PostListResponse,
    PostRead,
    PostUpdate,
    SaveResponse,
)
from app.schemas.collection import CollectionMembership
from app.schemas.profile import PostStats
from app.services import collections as collections_service
from app.services import posts as posts_service
from app.services import profiles as profiles_service
from app.services.assets import AssetManager
from app.services.visibility import ViewerContext

router = APIRouter(prefix="/posts", tags=["posts"])


@router.post("", response_model=PostRead, status_code=status.HTTP_201_CREATED)
async def create_post(
    payload: PostCreate,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> PostRead:
    post = await posts_service.create_post(session, current_user.id, payload)
    reads = await posts_service.build_post_reads(session, assets, [post], current_user.id, include_images=True)
    return reads[0]


@router.get("/explore", response_model=PostListResponse)
async def explore_posts(
    search: str | None = Query(default=None, max_length=100),
    category: PostCategory | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=50),
    viewer: ViewerContext = Depends(get_viewer_context),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> PostListResponse:
    posts, total = await posts_service.explore_posts(
        session, viewer, search=search, category=category, page=page, limit=limit
    )
    items = await posts_service.build_post_reads(session, assets, posts, viewer.viewer_id)
    return PostListResponse(items=items, meta=PaginationMeta.build(total, page, limit))


@router.get("/mine", response_model=PostListResponse)
async def my_posts(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> PostListResponse:
    posts, total = await posts_service.list_user_posts(session, current_user.id, page=page, limit=limit)
    items = await posts_service.build_post_reads(session, assets, posts, current_user.id)
    return PostListResponse(items=items, meta=PaginationMeta.build(total, page, limit))


@router.get("/mine/stats", response_model=PostStats)
async def my_post_stats(
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> PostStats:
    return await profiles_service.get_post_stats(session, current_user.id)


@router.get("/saved", response_model=PostListResponse)
async def saved_posts(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    viewer: ViewerContext = Depends(get_viewer_context),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> PostListResponse:
    posts, total = await posts_service.list_saved_posts(session, viewer, page=page, limit=limit)
    items = await posts_service.build_post_reads(session, assets, posts, current_user.id)
    return PostListResponse(items=items, meta=PaginationMeta.build(total, page, limit))


@router.get("/{post_id}", response_model=PostRead)
async def get_post(
    post_id: uuid.UUID,
    viewer: User | None = Depends(get_optional_user),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> PostRead:
    viewer_id = viewer.id if viewer else None
    post = await posts_service.get_visible_post(session, post_id, viewer_id)
    reads = await posts_service.build_post_reads(session, assets, [post], viewer_id, include_images=True)
    return reads[0]


@router.put("/{post_id}", response_model=PostRead)
async def update_post(
    post_id: uuid.UUID,
    payload: PostUpdate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> PostRead:
    post, cleanup = await posts_service.update_post(session, assets, post_id, current_user.id, payload)
    if cleanup:
        background_tasks.add_task(assets.run_cleanup, cleanup)
    reads = await posts_service.build_post_reads(session, assets, [post], current_user.id, include_images=True)
    return reads[0]


@router.delete("/{post_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_post(
    post_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> None:
    cleanup = await posts_service.delete_post(session, post_id, current_user.id)
    if cleanup:
        background_tasks.add_task(assets.run_cleanup, cleanup)
    return None


@router.post("/{post_id}/like", response_model=LikeToggleResponse)
async def toggle_like(
    post_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> LikeToggleResponse:
    liked, likes = await posts_service.toggle_like(session, post_id, current_user.id)
    return LikeToggleResponse(liked=liked, likes=likes)


@router.post("/{post_id}/save", response_model=SaveResponse)
async def save_post(
    post_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> SaveResponse:
    await posts_service.save_post(session, post_id, current_user.id)
    return SaveResponse(saved=True)


@router.delete("/{post_id}/save", response_model=SaveResponse)
async def unsave_post(
    post_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> SaveResponse:
    await posts_service.unsave_post(session, post_id, current_user.id)
    return SaveResponse(saved=False)


@router.get("/{post_id}/comments", response_model=CommentListResponse)
async def list_comments(
    post_id: uuid.UUID,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=50),
    viewer: User | None = Depends(get_optional_user),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> CommentListResponse:
    comments, total = await posts_service.list_comments(
        session, post_id, viewer.id if viewer else None, page=page, limit=limit
    )
    items = await posts_service.build_comment_reads(assets, comments)
    return CommentListResponse(items=items, meta=PaginationMeta.build(total, page, limit))


@router.post("/{post_id}/comments", response_model=CommentRead, status_code=status.HTTP_201_CREATED)
async def add_comment(
    post_id: uuid.UUID,
    payload: CommentCreate,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    assets: AssetManager = Depends(get_asset_manager),
) -> CommentRead:
    comment = await posts_service.add_comment(session, post_id, current_user.id, payload)
    reads = await posts_service.build_comment_reads(assets, [comment])
    return reads[0]


@router.delete("/{post_id}/comments/{comment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_comment(
    post_id: uuid.UUID,
    comment_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> None:
    await posts_service.delete_comment(session, post_id, comment_id, current_user.id)
    return None


@router.get("/{post_id}/collections", response_model=list[CollectionMembership])
async def post_collections(
    post_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> list[CollectionMembership]:
    return await collections_service.list_memberships(session, post_id, current_user.id)
