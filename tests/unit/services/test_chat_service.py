from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from topicchat.core.exceptions import ForbiddenException, NotFoundException, ValidationException
from topicchat.models import ChatMessage, Topic, TopicParticipant, User
from topicchat.services.chat_service import ChatService


@pytest.fixture
def users(db):
    alice = User(nickname="Alice", email="alice@example.com")
    bob = User(nickname="Bob", email="bob@example.com")
    carol = User(nickname="Carol")
    db.add_all([alice, bob, carol])
    db.commit()
    return alice, bob, carol


@pytest.fixture
def topic(db, users):
    alice = users[0]
    topic = Topic(title="Park benches", created_by=alice.id)
    db.add(topic)
    db.commit()
    return topic


@pytest.fixture
def service(db) -> ChatService:
    return ChatService(db)


class TestTopicMessages:
    def test_send_records_message_and_participation(self, service, db, users, topic) -> None:
        _, bob, _ = users

        record = service.send_topic_message(topic.id, bob.id, "v2:cipher")

        assert record.conversation_id == topic.id
        assert record.user_id == bob.id
        assert record.message == "v2:cipher"
        assert record.author.name == "Bob"
        assert record.created_at.tzinfo is not None
        participant = db.query(TopicParticipant).filter_by(topic_id=topic.id, user_id=bob.id).one()
        assert participant.is_active is True
        db.refresh(topic)
        assert topic.last_activity_at is not None

    def test_send_to_unknown_topic(self, service, users) -> None:
        with pytest.raises(NotFoundException):
            service.send_topic_message("01HZZZZZZZZZZZZZZZZZZZZZZZ", users[0].id, "hi")

    def test_send_from_unknown_user(self, service, topic) -> None:
        with pytest.raises(NotFoundException):
            service.send_topic_message(topic.id, "01HZZZZZZZZZZZZZZZZZZZZZZZ", "hi")

    def test_history_returns_newest_page_oldest_first(self, service, db, users, topic) -> None:
        alice = users[0]
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for minute in range(5):
            db.add(
                ChatMessage(
                    topic_id=topic.id,
                    user_id=alice.id,
                    message=f"m{minute}",
                    created_at=base + timedelta(minutes=minute),
                )
            )
        db.commit()

        page = service.get_topic_messages(topic.id, limit=3)
        older = service.get_topic_messages(topic.id, limit=3, offset=3)

        assert [r.message for r in page] == ["m2", "m3", "m4"]
        assert [r.message for r in older] == ["m0", "m1"]

    def test_unread_counts_only_other_users_after_since(self, service, db, users, topic) -> None:
        alice, bob, _ = users
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        db.add_all(
            [
                ChatMessage(topic_id=topic.id, user_id=bob.id, message="old", created_at=base),
                ChatMessage(topic_id=topic.id, user_id=bob.id, message="new", created_at=base + timedelta(hours=2)),
                ChatMessage(topic_id=topic.id, user_id=alice.id, message="mine", created_at=base + timedelta(hours=3)),
            ]
        )
        db.commit()

        assert service.count_unread_since(topic.id, alice.id, base + timedelta(hours=1)) == 1

    def test_update_message_body(self, service, users, topic) -> None:
        record = service.send_topic_message(topic.id, users[0].id, "ENC2_legacy")

        assert service.update_message_body(record.id, "v2:new") is True
        assert service.get_topic_messages(topic.id)[0].message == "v2:new"
        assert service.update_message_body("missing", "v2:x") is False

    def test_participating_topics(self, service, db, users, topic) -> None:
        alice, bob, carol = users
        other = Topic(title="Lakeside", created_by=carol.id)
        db.add(other)
        db.commit()
        service.send_topic_message(other.id, bob.id, "hello")

        assert service.get_participating_topic_ids(alice.id) == [topic.id]
        assert service.get_participating_topic_ids(bob.id) == [other.id]
        assert service.get_participating_topic_ids(carol.id) == [other.id]

    def test_get_author(self, service, users) -> None:
        author = service.get_author(users[0].id)

        assert author.name == "Alice"
        assert author.email == "alice@example.com"
        assert service.get_author("missing") is None


class TestPrivateChats:
    def test_get_or_create_is_order_independent(self, service, users) -> None:
        alice, bob, _ = users

        first = service.get_or_create_private_chat(alice.id, bob.id)
        second = service.get_or_create_private_chat(bob.id, alice.id)

        assert first == second

    def test_cannot_chat_with_self(self, service, users) -> None:
        with pytest.raises(ValidationException):
            service.get_or_create_private_chat(users[0].id, users[0].id)

    def test_unknown_partner(self, service, users) -> None:
        with pytest.raises(NotFoundException):
            service.get_or_create_private_chat(users[0].id, "01HZZZZZZZZZZZZZZZZZZZZZZZ")

    def test_only_participants_can_send(self, service, users) -> None:
        alice, bob, carol = users
        chat_id = service.get_or_create_private_chat(alice.id, bob.id)

        with pytest.raises(ForbiddenException):
            service.send_private_message(chat_id, carol.id, "hi")
        with pytest.raises(NotFoundException):
            service.send_private_message("missing", alice.id, "hi")

    def test_list_mark_read_and_unread(self, service, users) -> None:
        alice, bob, _ = users
        chat_id = service.get_or_create_private_chat(alice.id, bob.id)
        service.send_private_message(chat_id, bob.id, "first")
        service.send_private_message(chat_id, bob.id, "second")
        service.send_private_message(chat_id, alice.id, "reply")

        [summary] = service.list_private_chats(alice.id)
        assert summary.id == chat_id
        assert summary.other_user.name == "Bob"
        assert summary.last_message == "reply"
        assert summary.unread_count == 2
        assert summary.last_message_at is not None

        assert service.mark_private_messages_read(chat_id, alice.id) == 2
        assert service.unread_counts_for_chats([chat_id], alice.id).get(chat_id, 0) == 0
        assert service.unread_counts_for_chats([chat_id], bob.id).get(chat_id, 0) == 1

    def test_private_messages_are_stored_as_sent(self, service, users) -> None:
        alice, bob, _ = users
        chat_id = service.get_or_create_private_chat(alice.id, bob.id)

        record = service.send_private_message(chat_id, alice.id, "plain words")

        assert record.message == "plain words"
        assert [r.message for r in service.get_private_messages(chat_id)] == ["plain words"]
