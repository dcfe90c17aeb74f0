from fastapi import APIRouter

from app.api.v1 import collections
from app.api.v1 import posts
from app.api.v1 import uploads
from app.api.v1 import users
from app.core.metrics import snapshot as metrics_snapshot

api_router = APIRouter()

api_router.include_router(uploads.router)
api_router.include_router(posts.router)
api_router.include_router(collections.router)
api_router.include_router(users.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict:
    return metrics_snapshot()
