# topicchat/repositories/user_repository.py
"""
User Repository.

Author lookups for message rendering.
"""

from typing import Dict, Iterable, List

from sqlalchemy.orm import Session

from ..models.user import User
from .base_repository import BaseRepository


class UserRepository(BaseRepository[User]):
    def __init__(self, db: Session):
        super().__init__(db, User)

    def get_many(self, user_ids: Iterable[str]) -> Dict[str, User]:
        """Batch lookup keyed by id; missing ids are simply absent."""
        ids: List[str] = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        users = self.db.query(User).filter(User.id.in_(ids)).all()
        return {str(user.id): user for user in users}
