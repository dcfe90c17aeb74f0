from typing import Dict

from fastapi.testclient import TestClient

from app.services.assets import extract_key
from conftest import FakeObjectStore, auth_headers, create_post, create_user, publish_post


def test_follow_toggle_and_lists(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    a_token, a_id = create_user(SessionLocal, "alice")
    b_token, b_id = create_user(SessionLocal, "bob")

    assert client.post(f"/api/v1/users/{a_id}/follow", headers=auth_headers(a_token)).status_code == 400
    assert client.post(f"/api/v1/users/{a_id}/follow").status_code == 401
    assert client.post(
        "/api/v1/users/00000000-0000-0000-0000-000000000000/follow", headers=auth_headers(b_token)
    ).status_code == 404

    assert client.post(f"/api/v1/users/{a_id}/follow", headers=auth_headers(b_token)).json()["following"] is True

    followers = client.get(f"/api/v1/users/{a_id}/followers").json()
    assert [item["username"] for item in followers["items"]] == ["bob"]
    assert followers["meta"]["total_items"] == 1
    following = client.get(f"/api/v1/users/{b_id}/following", headers=auth_headers(b_token)).json()
    assert [item["username"] for item in following["items"]] == ["alice"]
    assert following["items"][0]["is_following"] is True
    assert following["items"][0]["followers"] == 1

    unfollow = client.post(f"/api/v1/users/{a_id}/follow", headers=auth_headers(b_token)).json()
    assert unfollow == {"following": False, "followers": 0}
    assert client.get(f"/api/v1/users/{a_id}/followers").json()["items"] == []


def test_profile_counts_and_previews(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    store: FakeObjectStore = test_app["store"]  # type: ignore[assignment]
    a_token, a_id = create_user(
        SessionLocal, "alice", avatar_url="https://lh3.googleusercontent.com/a/alice.jpg"
    )
    b_token, _ = create_user(SessionLocal, "bob")
    publish_post(client, store, a_token, a_id, name="public.png")
    publish_post(client, store, a_token, a_id, visibility="FOLLOWERS", name="followers.png")
    create_post(client, a_token, title="Draft")
    client.post("/api/v1/collections", json={"name": "Shown"}, headers=auth_headers(a_token))
    client.post("/api/v1/collections", json={"name": "Hidden", "visibility": "PRIVATE"}, headers=auth_headers(a_token))

    stranger = client.get(f"/api/v1/users/{a_id}", headers=auth_headers(b_token)).json()
    assert stranger["profile"]["username"] == "alice"
    assert stranger["profile"]["avatar_url"] == "https://lh3.googleusercontent.com/a/alice.jpg"
    assert stranger["profile"]["counts"] == {"followers": 0, "following": 0, "posts": 2, "collections": 2}
    assert stranger["profile"]["is_following"] is False
    assert stranger["profile"]["is_owner"] is False
    assert len(stranger["posts"]) == 1
    assert [item["name"] for item in stranger["collections"]] == ["Shown"]
    assert stranger["category_stats"] == [{"category": "PHOTOGRAPHY", "count": 2}]

    client.post(f"/api/v1/users/{a_id}/follow", headers=auth_headers(b_token))
    follower = client.get(f"/api/v1/users/{a_id}", headers=auth_headers(b_token)).json()
    assert follower["profile"]["is_following"] is True
    assert len(follower["posts"]) == 2

    owner = client.get(f"/api/v1/users/{a_id}", headers=auth_headers(a_token)).json()
    assert owner["profile"]["is_owner"] is True
    assert len(owner["posts"]) == 3
    assert len(owner["collections"]) == 2

    listed = client.get(f"/api/v1/users/{a_id}/collections").json()
    assert [item["name"] for item in listed["items"]] == ["Shown"]
    assert client.get("/api/v1/users/00000000-0000-0000-0000-000000000000").status_code == 404


def test_update_profile_promotes_avatar_and_trashes_old_one(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    store: FakeObjectStore = test_app["store"]  # type: ignore[assignment]
    token, user_id = create_user(SessionLocal, "alice")
    create_user(SessionLocal, "bob")

    first = store.put(f"temp/{user_id}/1700000000000-me.png")
    resp = client.put("/api/v1/users/me", json={"avatar_url": first, "bio": "hi"}, headers=auth_headers(token))
    assert resp.status_code == 200, resp.text
    first_key = extract_key(resp.json()["avatar_url"])
    assert first_key.startswith("uploads/")

    second = store.put(f"temp/{user_id}/1700000000001-me2.png")
    resp = client.put("/api/v1/users/me", json={"avatar_url": second}, headers=auth_headers(token))
    assert resp.status_code == 200
    assert first_key not in store.objects
    assert any(key.endswith(first_key.rsplit("/", 1)[-1]) for key in store.keys("trash/"))

    unchanged = client.put(
        "/api/v1/users/me", json={"avatar_url": resp.json()["avatar_url"]}, headers=auth_headers(token)
    )
    assert extract_key(unchanged.json()["avatar_url"]) == extract_key(resp.json()["avatar_url"])
    assert len(store.keys("uploads/")) == 1

    taken = client.put("/api/v1/users/me", json={"username": "BOB"}, headers=auth_headers(token))
    assert taken.status_code == 409
    renamed = client.put("/api/v1/users/me", json={"username": "alice_b"}, headers=auth_headers(token))
    assert renamed.json()["username"] == "alice_b"


def test_explore_users_search(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    store: FakeObjectStore = test_app["store"]  # type: ignore[assignment]
    avatar = store.put("uploads/1700000000000-abcdef-alice.png")
    create_user(SessionLocal, "alice", avatar_url=avatar)
    create_user(SessionLocal, "albert")
    create_user(SessionLocal, "bob")

    found = client.get("/api/v1/users/explore", params={"search": "al"}).json()
    assert [item["username"] for item in found["items"]] == ["albert", "alice"]
    assert "X-Amz-Method=GET" in found["items"][1]["avatar_url"]
    assert found["meta"]["total_items"] == 2


def test_owner_dashboard(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    store: FakeObjectStore = test_app["store"]  # type: ignore[assignment]
    a_token, a_id = create_user(SessionLocal, "alice")
    b_token, _ = create_user(SessionLocal, "bob")
    published = publish_post(client, store, a_token, a_id)
    draft = create_post(client, a_token, title="Unfinished")
    client.post("/api/v1/collections", json={"name": "Secret", "visibility": "PRIVATE"}, headers=auth_headers(a_token))
    client.post(f"/api/v1/users/{a_id}/follow", headers=auth_headers(b_token))
    client.post(f"/api/v1/posts/{published['id']}/like", headers=auth_headers(b_token))

    resp = client.get("/api/v1/users/me/dashboard", headers=auth_headers(a_token))

    assert resp.status_code == 200
    dashboard = resp.json()
    assert dashboard["stats"]["followers"] == 1
    assert dashboard["stats"]["following"] == 0
    assert dashboard["stats"]["posts"] == 1
    assert dashboard["stats"]["drafts"] == 1
    assert dashboard["stats"]["likes"] == 1
    assert dashboard["stats"]["collections"] == 1
    assert [post["id"] for post in dashboard["recent_posts"]] == [published["id"]]
    assert [post["id"] for post in dashboard["drafts"]] == [draft["id"]]
    assert [item["name"] for item in dashboard["collections"]] == ["Secret"]
    assert client.get("/api/v1/users/me/dashboard").status_code == 401
