"""
Tests for the forum HTTP endpoints.

Tests cover:
- Posting root messages and replies
- Listing roots with reply previews and paging
- Cursor-paginated replies
- Message lookup with the expanded reply-to chain
- Author-only deletion
- Reply index resync
- Error mapping and request headers
"""

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from dao_forum.coordinator import ConsistencyCoordinator
from dao_forum.main import app, get_coordinator, get_reply_index
from dao_forum.reply_index import InMemoryReplyIndex
from dao_forum.storage import SessionLocal, Base, engine, init_db, get_db, SqlMessageStore, SqlThreadOwners


DAO_ID = "dao-1"
DAO_OWNER = "owner-1"


def post_message(client, author: str, text: str, reply_to: str = None, dao_id: str = DAO_ID):
    """Helper to post a message as `author`."""
    body = {"message": text}
    if reply_to is not None:
        body["reply_to"] = reply_to
    return client.post(f"/daos/{dao_id}/messages", json=body, headers={"X-User-Id": author})


def create_message(client, author: str, text: str, reply_to: str = None) -> dict:
    response = post_message(client, author, text, reply_to)
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture(scope="function")
def client(clock):
    """Create test client with fresh database and reply index for each test."""
    init_db()
    with SessionLocal() as db:
        SqlThreadOwners(db).add(DAO_ID, DAO_OWNER)

    def coordinator_with_clock(db: Session = Depends(get_db), index=Depends(get_reply_index)):
        return ConsistencyCoordinator(SqlMessageStore(db), index, SqlThreadOwners(db), clock=clock)

    app.state.reply_index = InMemoryReplyIndex()
    app.dependency_overrides[get_coordinator] = coordinator_with_clock

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    app.state.reply_index = None
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def thread(client):
    """M1 <- M2 <- M3, where M3 answers M2."""
    m1 = create_message(client, "alice", "hello")
    m2 = create_message(client, "bob", "hi back", m1["id"])
    m3 = create_message(client, "carol", "and you?", m2["id"])
    return m1, m2, m3


class TestCreateMessage:
    def test_create_root(self, client):
        response = post_message(client, "alice", "hello")

        assert response.status_code == 201
        data = response.json()
        assert data["dao_id"] == DAO_ID
        assert data["author_id"] == "alice"
        assert data["body"] == "hello"
        assert data["root_message_id"] is None
        assert data["deleted_at"] is None

    def test_replies_are_flattened(self, thread):
        m1, m2, m3 = thread

        assert m2["root_message_id"] == m1["id"]
        assert m3["root_message_id"] == m1["id"]
        assert m3["reply_to_message_id"] == m2["id"]
        assert m3["reply_to_author_id"] == "bob"

    def test_missing_identity(self, client):
        response = client.post(f"/daos/{DAO_ID}/messages", json={"message": "hello"})

        assert response.status_code == 401

    def test_empty_body_rejected(self, client):
        response = post_message(client, "alice", "")

        assert response.status_code == 400
        assert response.json()["code"] == "BAD_PARAMS"

    def test_long_body_rejected(self, client):
        response = post_message(client, "alice", "x" * 257)

        assert response.status_code == 400

    def test_unknown_dao(self, client):
        response = post_message(client, "alice", "hello", dao_id="nope")

        assert response.status_code == 400
        assert response.json()["code"] == "BAD_PARAMS"

    def test_reply_to_missing_message(self, client):
        response = post_message(client, "alice", "hello", reply_to="missing")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


class TestListMessages:
    def test_empty_dao(self, client):
        response = client.get(f"/daos/{DAO_ID}/messages")

        assert response.status_code == 200
        assert response.json() == {"list": [], "total": 0, "pages": 0}

    def test_roots_with_previews(self, client, thread):
        m1, m2, m3 = thread
        newer = create_message(client, "dave", "another topic")

        response = client.get(f"/daos/{DAO_ID}/messages", params={"reply_limit": 1})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["pages"] == 1
        assert [item["id"] for item in data["list"]] == [newer["id"], m1["id"]]
        assert data["list"][0]["reply_count"] == 0
        assert data["list"][1]["reply_count"] == 2
        assert [r["id"] for r in data["list"][1]["replies"]] == [m2["id"]]

    def test_page_is_clamped(self, client):
        ids = [create_message(client, "alice", f"topic {i}")["id"] for i in range(5)]

        response = client.get(f"/daos/{DAO_ID}/messages", params={"page": 50, "size": 2})

        assert response.status_code == 200
        data = response.json()
        assert data["pages"] == 3
        assert [item["id"] for item in data["list"]] == [ids[0]]

    def test_invalid_size(self, client):
        response = client.get(f"/daos/{DAO_ID}/messages", params={"size": 0})

        assert response.status_code == 422

    def test_response_includes_request_id_header(self, client):
        response = client.get(f"/daos/{DAO_ID}/messages")

        assert "x-request-id" in response.headers


class TestReplies:
    def test_reply_window(self, client, thread):
        m1, m2, m3 = thread

        response = client.get(f"/messages/{m1['id']}/replies", params={"cursor": 0, "limit": 10})

        assert response.status_code == 200
        data = response.json()
        assert [r["id"] for r in data["items"]] == [m2["id"], m3["id"]]
        assert data["total_items"] == 2
        assert data["cursor"] == {"next": None, "previous": None}

    def test_reply_cursor(self, client, thread):
        m1, m2, m3 = thread

        first = client.get(f"/messages/{m1['id']}/replies", params={"limit": 1}).json()
        second = client.get(f"/messages/{m1['id']}/replies", params={"cursor": 1, "limit": 1}).json()

        assert [r["id"] for r in first["items"]] == [m2["id"]]
        assert first["cursor"] == {"next": 1, "previous": None}
        assert [r["id"] for r in second["items"]] == [m3["id"]]
        assert second["cursor"] == {"next": None, "previous": 0}


class TestGetMessage:
    def test_plain_lookup(self, client, thread):
        m1, m2, m3 = thread

        response = client.get(f"/messages/{m3['id']}")

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == m3["id"]
        assert data["reply_to"] is None

    def test_expanded_chain(self, client, thread):
        m1, m2, m3 = thread

        response = client.get(f"/messages/{m3['id']}", params={"expand": True})

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == m3["id"]
        assert data["reply_to"]["id"] == m2["id"]
        assert data["reply_to"]["reply_to"]["id"] == m1["id"]
        assert data["reply_to"]["reply_to"]["reply_to"] is None

    def test_missing_message(self, client):
        response = client.get("/messages/missing")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


class TestDeleteMessage:
    def test_delete_reply(self, client, thread):
        m1, m2, m3 = thread

        response = client.delete(f"/messages/{m2['id']}", headers={"X-User-Id": "bob"})
        assert response.status_code == 204

        replies = client.get(f"/messages/{m1['id']}/replies").json()
        assert [r["id"] for r in replies["items"]] == [m3["id"]]
        assert replies["total_items"] == 1

        listing = client.get(f"/daos/{DAO_ID}/messages").json()
        assert listing["list"][0]["reply_count"] == 1

    def test_deleted_ancestor_is_tombstone(self, client, thread):
        m1, m2, m3 = thread
        client.delete(f"/messages/{m2['id']}", headers={"X-User-Id": "bob"})

        data = client.get(f"/messages/{m3['id']}", params={"expand": True}).json()

        assert data["deleted"] is False
        assert data["reply_to"]["id"] == m2["id"]
        assert data["reply_to"]["deleted"] is True
        assert data["reply_to"]["body"] is None
        assert data["reply_to"]["reply_to"]["id"] == m1["id"]

    def test_delete_by_other_user(self, client, thread):
        m1, m2, m3 = thread

        response = client.delete(f"/messages/{m2['id']}", headers={"X-User-Id": "mallory"})

        assert response.status_code == 403
        assert response.json()["code"] == "UNAUTHORIZED"

    def test_delete_twice(self, client, thread):
        m1, m2, m3 = thread
        client.delete(f"/messages/{m3['id']}", headers={"X-User-Id": "carol"})

        response = client.delete(f"/messages/{m3['id']}", headers={"X-User-Id": "carol"})

        assert response.status_code == 404

    def test_delete_root_hides_thread(self, client, thread):
        m1, m2, m3 = thread

        client.delete(f"/messages/{m1['id']}", headers={"X-User-Id": "alice"})

        assert client.get(f"/daos/{DAO_ID}/messages").json()["total"] == 0
        assert client.get(f"/messages/{m1['id']}/replies").json()["total_items"] == 0
        # Replies themselves are still addressable
        assert client.get(f"/messages/{m2['id']}").status_code == 200


class TestResync:
    def test_resync_rebuilds_index(self, client, thread):
        m1, m2, m3 = thread
        app.state.reply_index.delete_all(m1["id"])

        response = client.post(f"/daos/{DAO_ID}/reply-index/resync")

        assert response.status_code == 200
        assert response.json() == {"roots": 1, "replies": 2}
        replies = client.get(f"/messages/{m1['id']}/replies").json()
        assert [r["id"] for r in replies["items"]] == [m2["id"], m3["id"]]


class TestHealth:
    def test_live(self, client):
        assert client.get("/health/live").json() == {"status": "ok", "reason": None}

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_metrics(self, client, thread):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "forum_writes_total" in response.text

    def test_request_id_is_echoed(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "trace-123"})

        assert response.headers["X-Request-ID"] == "trace-123"

    def test_request_id_is_generated(self, client):
        response = client.get("/health/live")

        assert response.headers["X-Request-ID"]

    def test_metrics_use_route_template(self, client, thread):
        client.get(f"/messages/{thread[0]['id']}")

        text = client.get("/metrics").text
        assert 'path="/messages/{message_id}"' in text
