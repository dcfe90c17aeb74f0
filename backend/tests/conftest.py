import asyncio
import os
from collections.abc import Generator
from typing import Dict
from uuid import UUID

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""

from app.core import metrics
from app.core.dependencies import get_asset_manager
from app.core.security import create_access_token
from app.db.base import Base
from app.db.session import get_session
from app.main import app
from app.models.user import User
from app.services.assets import AssetManager
from app.services.object_store import ObjectNotFoundError, ObjectStoreError, S3ObjectStore

BUCKET = "snippitt-test"
REGION = "us-east-1"
PUBLIC_BASE = f"https://{BUCKET}.s3.{REGION}.amazonaws.com"


class FakeObjectStore(S3ObjectStore):
    """In-memory bucket with the same surface as ``S3ObjectStore``."""

    def __init__(self) -> None:
        super().__init__(None, BUCKET, region=REGION)
        self.objects: dict[str, bytes] = {}
        self.tags: dict[str, dict[str, str]] = {}
        self.calls: list[tuple[str, str]] = []
        self.failing: set[str] = set()

    def put(self, key: str, body: bytes = b"data", *, tags: dict[str, str] | None = None) -> str:
        self.objects[key] = body
        self.tags[key] = dict(tags or {})
        return self.public_url(key)

    def _maybe_fail(self, op: str, key: str) -> None:
        self.calls.append((op, key))
        if op in self.failing:
            raise ObjectStoreError(f"{op} failed", key=key)

    def presign(self, key: str, method: str, expires_in: int, *, content_type: str | None = None) -> str:
        self._maybe_fail("presign", key)
        return f"{self.public_url(key)}?X-Amz-Method={method.upper()}&X-Amz-Expires={int(expires_in)}&X-Amz-Signature=fake"

    def copy(self, source_key: str, dest_key: str, *, tags: dict[str, str] | None = None) -> None:
        self._maybe_fail("copy", source_key)
        if source_key not in self.objects:
            raise ObjectNotFoundError("source object missing", key=source_key)
        self.objects[dest_key] = self.objects[source_key]
        self.tags[dest_key] = dict(tags) if tags else dict(self.tags.get(source_key, {}))

    def delete(self, key: str) -> None:
        self._maybe_fail("delete", key)
        self.objects.pop(key, None)
        self.tags.pop(key, None)

    def get_tags(self, key: str) -> dict[str, str]:
        self._maybe_fail("tags", key)
        if key not in self.objects:
            raise ObjectNotFoundError("object missing", key=key)
        return dict(self.tags.get(key, {}))

    def exists(self, key: str) -> bool:
        self._maybe_fail("exists", key)
        return key in self.objects

    def list_keys(self, prefix: str, *, start_after: str | None = None, limit: int = 1000) -> list[str]:
        self._maybe_fail("list", prefix)
        keys = sorted(key for key in self.objects if key.startswith(prefix) and (not start_after or key > start_after))
        return keys[:limit]

    def keys(self, prefix: str) -> list[str]:
        return sorted(key for key in self.objects if key.startswith(prefix))


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def create_user(session_factory, username: str, *, avatar_url: str | None = None) -> tuple[str, UUID]:
    async def create() -> tuple[str, UUID]:
        async with session_factory() as session:
            user = User(username=username, email=f"{username}@example.com", avatar_url=avatar_url)
            session.add(user)
            await session.commit()
            return create_access_token(str(user.id)), user.id

    return asyncio.run(create())


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def asset_manager(store: FakeObjectStore) -> AssetManager:
    return AssetManager(store, upload_ttl_seconds=3600, view_ttl_seconds=3600)


@pytest.fixture
def test_app(store: FakeObjectStore, asset_manager: AssetManager) -> Generator[Dict[str, object], None, None]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_asset_manager] = lambda: asset_manager
    client = TestClient(app)
    yield {"client": client, "session_factory": SessionLocal, "store": store}
    client.close()
    app.dependency_overrides.clear()
    asyncio.run(engine.dispose())


def create_post(client: TestClient, token: str, *, title: str = "Sunset", tags: list[str] | None = None) -> dict:
    resp = client.post(
        "/api/v1/posts",
        json={"title": title, "description": "Golden hour", "category": "PHOTOGRAPHY", "tags": tags or ["sky"]},
        headers=auth_headers(token),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def update_post(
    client: TestClient,
    token: str,
    post_id: str,
    images: list[dict],
    *,
    visibility: str = "PUBLIC",
    is_draft: bool = False,
    title: str = "Sunset",
):
    return client.put(
        f"/api/v1/posts/{post_id}",
        json={
            "title": title,
            "description": "Golden hour",
            "category": "PHOTOGRAPHY",
            "tags": ["sky"],
            "visibility": visibility,
            "is_draft": is_draft,
            "images": images,
        },
        headers=auth_headers(token),
    )


def publish_post(
    client: TestClient,
    store: FakeObjectStore,
    token: str,
    owner_id: UUID,
    *,
    visibility: str = "PUBLIC",
    name: str = "one.png",
) -> dict:
    post = create_post(client, token)
    staged = store.put(f"temp/{owner_id}/1700000000000-{name}")
    resp = update_post(client, token, post["id"], [{"url": staged, "is_cover": True}], visibility=visibility)
    assert resp.status_code == 200, resp.text
    return resp.json()
