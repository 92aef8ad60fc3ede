# topicchat/repositories/topic_repository.py
"""
Topic Repository.

Participation queries used for realtime subscription discovery.
"""

from datetime import datetime
from typing import List

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..models.topic import Topic, TopicParticipant
from .base_repository import BaseRepository


class TopicRepository(BaseRepository[Topic]):
    def __init__(self, db: Session):
        super().__init__(db, Topic)

    def get_participating_topic_ids(self, user_id: str) -> List[str]:
        """
        Topics the user created or actively participates in.

        Ordered by most recent activity first so the busiest conversations
        claim realtime slots before quiet ones.
        """
        active_participation = (
            self.db.query(TopicParticipant.topic_id)
            .filter(TopicParticipant.user_id == user_id, TopicParticipant.is_active.is_(True))
        )
        rows = (
            self.db.query(Topic.id)
            .filter(or_(Topic.created_by == user_id, Topic.id.in_(active_participation)))
            .order_by(Topic.last_activity_at.desc().nullslast(), Topic.created_at.desc())
            .all()
        )
        return [str(row.id) for row in rows]

    def upsert_participant(self, topic_id: str, user_id: str) -> TopicParticipant:
        """Mark ``user_id`` as an active participant of ``topic_id``."""
        participant = (
            self.db.query(TopicParticipant)
            .filter(TopicParticipant.topic_id == topic_id, TopicParticipant.user_id == user_id)
            .first()
        )
        if participant is None:
            participant = TopicParticipant(topic_id=topic_id, user_id=user_id, is_active=True)
            self.db.add(participant)
        else:
            participant.is_active = True
        self.db.flush()
        return participant

    def touch(self, topic_id: str, when: datetime) -> None:
        self.db.query(Topic).filter(Topic.id == topic_id).update(
            {Topic.last_activity_at: when}, synchronize_session=False
        )
