import asyncio
from typing import Dict
from uuid import UUID

from fastapi.testclient import TestClient
from sqlalchemy import select

from app.models.post import Post, PostImage
from app.services.assets import extract_key
from conftest import FakeObjectStore, auth_headers, create_post, create_user, publish_post, update_post


def _image_rows(session_factory, post_id: str) -> list[PostImage]:
    async def load() -> list[PostImage]:
        async with session_factory() as session:
            result = await session.execute(
                select(PostImage).where(PostImage.post_id == UUID(post_id)).order_by(PostImage.sort_order)
            )
            return list(result.scalars().all())

    return asyncio.run(load())


def _post_row(session_factory, post_id: str) -> Post | None:
    async def load() -> Post | None:
        async with session_factory() as session:
            return (await session.execute(select(Post).where(Post.id == UUID(post_id)))).scalar_one_or_none()

    return asyncio.run(load())


def test_new_post_is_a_private_draft(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    owner_token, _ = create_user(SessionLocal, "alice")
    other_token, _ = create_user(SessionLocal, "bob")

    post = create_post(client, owner_token, tags=["Sky", "sky", " Night "])
    assert post["is_draft"] is True
    assert sorted(post["tags"]) == ["night", "sky"]

    assert client.get(f"/api/v1/posts/{post['id']}", headers=auth_headers(owner_token)).status_code == 200
    denied = client.get(f"/api/v1/posts/{post['id']}", headers=auth_headers(other_token))
    assert denied.status_code == 403
    assert denied.json()["detail"] == "This content is private"
    assert client.get(f"/api/v1/posts/{post['id']}").status_code == 403

    explore = client.get("/api/v1/posts/explore", headers=auth_headers(owner_token)).json()
    assert explore["items"] == []
    mine = client.get("/api/v1/posts/mine", headers=auth_headers(owner_token)).json()
    assert [item["id"] for item in mine["items"]] == [post["id"]]


def test_unknown_post_is_404(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    resp = client.get("/api/v1/posts/00000000-0000-0000-0000-000000000000")
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Post not found"


def test_followers_only_post_requires_follow(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    store: FakeObjectStore = test_app["store"]  # type: ignore[assignment]
    a_token, a_id = create_user(SessionLocal, "alice")
    b_token, _ = create_user(SessionLocal, "bob")

    post = publish_post(client, store, a_token, a_id, visibility="FOLLOWERS")
    url = f"/api/v1/posts/{post['id']}"

    assert client.get(url, headers=auth_headers(b_token)).status_code == 403
    anonymous = client.get(url)
    assert anonymous.status_code == 401
    assert anonymous.json()["detail"] == "Sign in to view this content"
    assert client.get("/api/v1/posts/explore", headers=auth_headers(b_token)).json()["items"] == []

    follow = client.post(f"/api/v1/users/{a_id}/follow", headers=auth_headers(b_token))
    assert follow.status_code == 200
    assert follow.json() == {"following": True, "followers": 1}

    visible = client.get(url, headers=auth_headers(b_token))
    assert visible.status_code == 200
    assert visible.json()["user"]["username"] == "alice"
    explore = client.get("/api/v1/posts/explore", headers=auth_headers(b_token)).json()
    assert [item["id"] for item in explore["items"]] == [post["id"]]
    assert client.get("/api/v1/posts/explore").json()["items"] == []


def test_edit_promotes_new_images_and_trashes_removed_ones(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    store: FakeObjectStore = test_app["store"]  # type: ignore[assignment]
    token, user_id = create_user(SessionLocal, "alice")
    post = create_post(client, token)

    first = store.put(f"temp/{user_id}/1700000000000-first.png")
    second = store.put(f"temp/{user_id}/1700000000001-second.png")
    resp = update_post(
        client,
        token,
        post["id"],
        [{"url": first, "is_cover": True, "description": "cover"}, {"url": second}],
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert len(body["images"]) == 2
    assert store.keys("temp/") == []
    assert len(store.keys("uploads/")) == 2
    assert all("X-Amz-Method=GET" in image["url"] for image in body["images"])
    assert body["cover_image_url"] == body["images"][0]["url"]

    kept, removed = body["images"]
    third = store.put(f"temp/{user_id}/1700000000002-third.png")
    resp = update_post(
        client,
        token,
        post["id"],
        [
            {"url": kept["url"], "existing_image_id": kept["id"], "is_cover": True, "description": "still cover"},
            {"url": third},
        ],
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()

    rows = _image_rows(SessionLocal, post["id"])
    assert len(rows) == 2
    assert str(rows[0].id) == kept["id"]
    assert rows[0].description == "still cover"
    assert extract_key(rows[0].url) == extract_key(kept["url"])
    assert extract_key(rows[1].url).startswith("uploads/")
    assert extract_key(rows[1].url).endswith("-1700000000002-third.png")

    removed_key = extract_key(removed["url"])
    assert removed_key not in store.objects
    assert any(key.endswith(removed_key.rsplit("/", 1)[-1]) for key in store.keys("trash/"))
    assert [extract_key(image["url"]) for image in body["images"]] == [extract_key(row.url) for row in rows]


def test_edit_rejects_second_cover_and_foreign_image_ids(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    store: FakeObjectStore = test_app["store"]  # type: ignore[assignment]
    token, user_id = create_user(SessionLocal, "alice")
    post = create_post(client, token)
    one = store.put(f"temp/{user_id}/1-one.png")
    two = store.put(f"temp/{user_id}/2-two.png")

    resp = update_post(client, token, post["id"], [{"url": one, "is_cover": True}, {"url": two, "is_cover": True}])
    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_error"

    resp = update_post(
        client, token, post["id"], [{"url": one, "existing_image_id": "00000000-0000-0000-0000-000000000001"}]
    )
    assert resp.status_code == 400
    assert store.keys("temp/") == sorted([extract_key(one), extract_key(two)])


def test_edit_by_non_owner_is_404(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    owner_token, _ = create_user(SessionLocal, "alice")
    other_token, _ = create_user(SessionLocal, "bob")
    post = create_post(client, owner_token)

    assert update_post(client, other_token, post["id"], []).status_code == 404
    assert client.delete(f"/api/v1/posts/{post['id']}", headers=auth_headers(other_token)).status_code == 404


def test_store_outage_aborts_the_edit(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    store: FakeObjectStore = test_app["store"]  # type: ignore[assignment]
    token, user_id = create_user(SessionLocal, "alice")
    post = create_post(client, token, title="Before")
    staged = store.put(f"temp/{user_id}/1700000000000-one.png")
    store.failing.add("copy")

    resp = update_post(client, token, post["id"], [{"url": staged}], title="After")

    assert resp.status_code == 503
    assert resp.json()["code"] == "store_unavailable"
    row = _post_row(SessionLocal, post["id"])
    assert row is not None and row.title == "Before" and row.is_draft is True
    assert _image_rows(SessionLocal, post["id"]) == []


def test_missing_upload_is_reported(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    store: FakeObjectStore = test_app["store"]  # type: ignore[assignment]
    token, user_id = create_user(SessionLocal, "alice")
    post = create_post(client, token)

    resp = update_post(client, token, post["id"], [{"url": store.public_url(f"temp/{user_id}/1700000000000-gone.png")}])

    assert resp.status_code == 409
    assert resp.json()["code"] == "upload_missing"


def test_retried_edit_reuses_promoted_image(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    store: FakeObjectStore = test_app["store"]  # type: ignore[assignment]
    token, user_id = create_user(SessionLocal, "alice")
    post = create_post(client, token)
    staged = store.put(f"temp/{user_id}/1700000000000-one.png")

    assert update_post(client, token, post["id"], [{"url": staged}]).status_code == 200
    retry = update_post(client, token, post["id"], [{"url": staged}])

    assert retry.status_code == 200
    assert len(_image_rows(SessionLocal, post["id"])) == 1
    assert len(store.keys("uploads/")) == 1


def test_external_image_is_stored_as_is(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    store: FakeObjectStore = test_app["store"]  # type: ignore[assignment]
    token, _ = create_user(SessionLocal, "alice")
    post = create_post(client, token)
    external = "https://images.example.org/sunset.jpg"

    resp = update_post(client, token, post["id"], [{"url": external}])

    assert resp.status_code == 200
    assert resp.json()["images"][0]["url"] == external
    assert store.calls == []


def test_delete_post_purges_images_and_clears_collection_cover(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    store: FakeObjectStore = test_app["store"]  # type: ignore[assignment]
    token, user_id = create_user(SessionLocal, "alice")
    post = publish_post(client, store, token, user_id)
    cover_key = extract_key(post["images"][0]["url"])

    collection = client.post(
        "/api/v1/collections",
        json={"name": "Skies", "cover_image_url": post["images"][0]["url"], "post_ids": [post["id"]]},
        headers=auth_headers(token),
    )
    assert collection.status_code == 201, collection.text

    resp = client.delete(f"/api/v1/posts/{post['id']}", headers=auth_headers(token))
    assert resp.status_code == 204
    assert cover_key not in store.objects
    assert store.keys("uploads/") == []

    detail = client.get(f"/api/v1/collections/{collection.json()['id']}", headers=auth_headers(token)).json()
    assert detail["cover_image_url"] is None
    assert detail["posts"] == []
    assert detail["post_count"] == 0
    assert client.get(f"/api/v1/posts/{post['id']}", headers=auth_headers(token)).status_code == 404


def test_likes_saves_and_comments(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    store: FakeObjectStore = test_app["store"]  # type: ignore[assignment]
    a_token, a_id = create_user(SessionLocal, "alice")
    b_token, _ = create_user(SessionLocal, "bob")
    post = publish_post(client, store, a_token, a_id)
    url = f"/api/v1/posts/{post['id']}"

    assert client.post(f"{url}/like", headers=auth_headers(b_token)).json() == {"liked": True, "likes": 1}
    assert client.post(f"{url}/save", headers=auth_headers(b_token)).json() == {"saved": True}
    comment = client.post(f"{url}/comments", json={"body": "  Lovely light  "}, headers=auth_headers(b_token))
    assert comment.status_code == 201
    assert comment.json()["body"] == "Lovely light"
    assert comment.json()["user"]["username"] == "bob"

    detail = client.get(url, headers=auth_headers(b_token)).json()
    assert detail["counts"] == {"likes": 1, "comments": 1, "saved": 1}
    assert detail["is_liked"] is True and detail["is_saved"] is True

    saved = client.get("/api/v1/posts/saved", headers=auth_headers(b_token)).json()
    assert [item["id"] for item in saved["items"]] == [post["id"]]
    comments = client.get(f"{url}/comments").json()
    assert comments["meta"]["total_items"] == 1

    assert client.post(f"{url}/like", headers=auth_headers(b_token)).json() == {"liked": False, "likes": 0}
    assert client.delete(f"{url}/save", headers=auth_headers(b_token)).json() == {"saved": False}
    assert client.get("/api/v1/posts/saved", headers=auth_headers(b_token)).json()["items"] == []
    assert client.post(f"{url}/comments", json={"body": "   "}, headers=auth_headers(b_token)).status_code == 422


def test_private_post_blocks_engagement(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    store: FakeObjectStore = test_app["store"]  # type: ignore[assignment]
    a_token, a_id = create_user(SessionLocal, "alice")
    b_token, _ = create_user(SessionLocal, "bob")
    post = publish_post(client, store, a_token, a_id, visibility="PRIVATE")
    url = f"/api/v1/posts/{post['id']}"

    assert client.post(f"{url}/like", headers=auth_headers(b_token)).status_code == 403
    assert client.post(f"{url}/save", headers=auth_headers(b_token)).status_code == 403
    assert client.get(f"{url}/comments").status_code == 403


def test_explore_search_and_category(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    store: FakeObjectStore = test_app["store"]  # type: ignore[assignment]
    token, user_id = create_user(SessionLocal, "alice")
    post = publish_post(client, store, token, user_id)

    found = client.get("/api/v1/posts/explore", params={"search": "sun"}).json()
    assert [item["id"] for item in found["items"]] == [post["id"]]
    assert found["items"][0]["images"] == []
    assert "X-Amz-Method=GET" in found["items"][0]["cover_image_url"]
    assert found["meta"] == {"total_items": 1, "total_pages": 1, "page": 1, "limit": 20}
    assert client.get("/api/v1/posts/explore", params={"search": "nothing"}).json()["items"] == []
    assert client.get("/api/v1/posts/explore", params={"category": "MUSIC"}).json()["items"] == []


def test_comment_removal_by_author_or_post_owner(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    store: FakeObjectStore = test_app["store"]  # type: ignore[assignment]
    a_token, a_id = create_user(SessionLocal, "alice")
    b_token, _ = create_user(SessionLocal, "bob")
    c_token, _ = create_user(SessionLocal, "carol")
    post = publish_post(client, store, a_token, a_id)
    other_post = publish_post(client, store, a_token, a_id, name="two.png")
    url = f"/api/v1/posts/{post['id']}/comments"
    bob_comment = client.post(url, json={"body": "Nice"}, headers=auth_headers(b_token)).json()
    carol_comment = client.post(url, json={"body": "Spam"}, headers=auth_headers(c_token)).json()

    assert client.delete(f"{url}/{bob_comment['id']}", headers=auth_headers(c_token)).status_code == 404
    assert client.delete(f"{url}/{bob_comment['id']}").status_code == 401
    wrong_post = f"/api/v1/posts/{other_post['id']}/comments/{bob_comment['id']}"
    assert client.delete(wrong_post, headers=auth_headers(b_token)).status_code == 404

    assert client.delete(f"{url}/{bob_comment['id']}", headers=auth_headers(b_token)).status_code == 204
    assert client.delete(f"{url}/{carol_comment['id']}", headers=auth_headers(a_token)).status_code == 204
    assert client.delete(f"{url}/{carol_comment['id']}", headers=auth_headers(a_token)).status_code == 404
    assert client.get(url).json()["meta"]["total_items"] == 0


def test_owner_post_stats(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    store: FakeObjectStore = test_app["store"]  # type: ignore[assignment]
    a_token, a_id = create_user(SessionLocal, "alice")
    b_token, _ = create_user(SessionLocal, "bob")
    post = publish_post(client, store, a_token, a_id)
    publish_post(client, store, a_token, a_id, visibility="FOLLOWERS", name="two.png")
    create_post(client, a_token, title="Unfinished")
    url = f"/api/v1/posts/{post['id']}"
    client.post(f"{url}/like", headers=auth_headers(b_token))
    client.post(f"{url}/save", headers=auth_headers(b_token))
    client.post(f"{url}/comments", json={"body": "Wow"}, headers=auth_headers(b_token))
    client.post(f"{url}/comments", json={"body": "Thanks"}, headers=auth_headers(a_token))

    stats = client.get("/api/v1/posts/mine/stats", headers=auth_headers(a_token))

    assert stats.status_code == 200
    assert stats.json() == {
        "posts": 2,
        "drafts": 1,
        "likes": 1,
        "comments": 2,
        "saves": 1,
        "category_stats": [{"category": "PHOTOGRAPHY", "count": 2}],
    }
    empty = client.get("/api/v1/posts/mine/stats", headers=auth_headers(b_token)).json()
    assert empty["posts"] == 0 and empty["category_stats"] == []
    assert client.get("/api/v1/posts/mine/stats").status_code == 401
