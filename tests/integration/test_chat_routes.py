"""API tests for the chat endpoints."""

from __future__ import annotations

from fastapi import status
from fastapi.testclient import TestClient
import pytest

from topicchat.core.crypto import AESGCM_PREFIX
from topicchat.database import get_db
from topicchat.main import app
from topicchat.models import ChatMessage, Topic, User

pytestmark = pytest.mark.integration

API = "/api/v1/chat"


@pytest.fixture
def client(session_factory):
    def _override_get_db():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def seed(session_factory):
    db = session_factory()
    alice = User(nickname="Alice", email="alice@example.com")
    bob = User(nickname="Bob")
    db.add_all([alice, bob])
    db.flush()
    topic = Topic(title="Morning runs", created_by=alice.id)
    db.add(topic)
    db.commit()
    ids = {"alice": alice.id, "bob": bob.id, "topic": topic.id}
    db.close()
    return ids


def test_health(client) -> None:
    response = client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["status"] == "ok"
    assert body["broadcast"] is True
    assert body["encryption"] is True


class TestTopicMessageRoutes:
    def test_send_and_list(self, client, seed, session_factory) -> None:
        url = f"{API}/topics/{seed['topic']}/messages"

        response = client.post(url, json={"user_id": seed["bob"], "message": "see you at 7"})

        assert response.status_code == status.HTTP_201_CREATED
        created = response.json()
        assert created["text"] == "see you at 7"
        assert created["conversation_id"] == seed["topic"]
        assert created["author"]["name"] == "Bob"
        assert created["author"]["avatar"].startswith("https://ui-avatars.com/api/?name=Bob")

        db = session_factory()
        stored = db.query(ChatMessage).filter_by(id=created["id"]).one()
        db.close()
        assert stored.message.startswith(AESGCM_PREFIX)

        listing = client.get(url, params={"limit": 10})
        assert listing.status_code == status.HTTP_200_OK
        page = listing.json()
        assert page["limit"] == 10
        assert page["offset"] == 0
        assert [m["text"] for m in page["messages"]] == ["see you at 7"]

        topics = client.get(f"{API}/users/{seed['bob']}/topics")
        assert topics.json() == {"topic_ids": [seed["topic"]]}

    def test_unknown_topic(self, client, seed) -> None:
        response = client.post(
            f"{API}/topics/01HZZZZZZZZZZZZZZZZZZZZZZZ/messages",
            json={"user_id": seed["bob"], "message": "hello"},
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_blank_message_rejected(self, client, seed) -> None:
        response = client.post(
            f"{API}/topics/{seed['topic']}/messages",
            json={"user_id": seed["bob"], "message": "   "},
        )

        assert response.status_code == 422

    def test_overlong_message_rejected(self, client, seed) -> None:
        response = client.post(
            f"{API}/topics/{seed['topic']}/messages",
            json={"user_id": seed["bob"], "message": "x" * 1001},
        )

        assert response.status_code == 422


class TestPrivateChatRoutes:
    def test_conversation_flow(self, client, seed) -> None:
        created = client.post(
            f"{API}/private-chats",
            json={"user_id": seed["alice"], "other_user_id": seed["bob"]},
        )
        assert created.status_code == status.HTTP_200_OK
        chat_id = created.json()["chat_id"]

        again = client.post(
            f"{API}/private-chats",
            json={"user_id": seed["bob"], "other_user_id": seed["alice"]},
        )
        assert again.json()["chat_id"] == chat_id

        sent = client.post(
            f"{API}/private-chats/{chat_id}/messages",
            json={"sender_id": seed["bob"], "message": "  lunch?  "},
        )
        assert sent.status_code == status.HTTP_201_CREATED
        assert sent.json()["text"] == "lunch?"

        chats = client.get(f"{API}/users/{seed['alice']}/private-chats").json()["chats"]
        assert len(chats) == 1
        assert chats[0]["id"] == chat_id
        assert chats[0]["other_user"]["name"] == "Bob"
        assert chats[0]["last_message"] == "lunch?"
        assert chats[0]["unread_count"] == 1

        read = client.post(f"{API}/private-chats/{chat_id}/read", json={"user_id": seed["alice"]})
        assert read.json() == {"success": True, "updated": 1}

        messages = client.get(f"{API}/private-chats/{chat_id}/messages").json()["messages"]
        assert [m["is_read"] for m in messages] == [True]

    def test_self_chat_rejected(self, client, seed) -> None:
        response = client.post(
            f"{API}/private-chats",
            json={"user_id": seed["alice"], "other_user_id": seed["alice"]},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_outsider_cannot_send(self, client, seed, session_factory) -> None:
        db = session_factory()
        carol = User(nickname="Carol")
        db.add(carol)
        db.commit()
        carol_id = carol.id
        db.close()
        chat_id = client.post(
            f"{API}/private-chats",
            json={"user_id": seed["alice"], "other_user_id": seed["bob"]},
        ).json()["chat_id"]

        response = client.post(
            f"{API}/private-chats/{chat_id}/messages",
            json={"sender_id": carol_id, "message": "hi"},
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN
