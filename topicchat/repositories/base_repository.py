# topicchat/repositories/base_repository.py
"""
Shared data access for the chat repositories.

Sessions belong to the service layer: repositories flush to obtain ids and
server defaults, and leave commit/rollback of the unit of work to
``BaseService.transaction``.

Connection-level failures (``OperationalError``) propagate unwrapped so the
database retry wrapper can classify them; every other SQLAlchemy error is
wrapped in ``RepositoryException``.
"""

from contextlib import contextmanager
import logging
from typing import Any, Generic, Iterator, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException

T = TypeVar("T")

logger = logging.getLogger(__name__)


class BaseRepository(Generic[T]):
    """
    Lookup and insert helpers keyed on a model's string ``id``.

    Attributes:
        db: SQLAlchemy session
        model: mapped class this repository reads and writes
    """

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    @contextmanager
    def _translate_errors(self, action: str, *, rollback: bool = False) -> Iterator[None]:
        name = self.model.__name__
        try:
            yield
        except OperationalError:
            if rollback:
                self.db.rollback()
            raise
        except IntegrityError as exc:
            self.logger.error("[DB] Integrity error during %s of %s: %s", action, name, exc)
            if rollback:
                self.db.rollback()
            raise RepositoryException(f"Integrity constraint violated for {name}: {exc}") from exc
        except SQLAlchemyError as exc:
            self.logger.error("[DB] %s of %s failed: %s", action, name, exc)
            if rollback:
                self.db.rollback()
            raise RepositoryException(f"Failed to {action} {name}: {exc}") from exc

    def get_by_id(self, id: str) -> Optional[T]:
        with self._translate_errors("load"):
            return self.db.get(self.model, id)

    def exists(self, **criteria: Any) -> bool:
        with self._translate_errors("query"):
            return self.db.query(self.model.id).filter_by(**criteria).first() is not None

    def create(self, **values: Any) -> T:
        """
        Add a row and flush it so generated columns are populated.

        Does not commit.
        """
        with self._translate_errors("create", rollback=True):
            entity = self.model(**values)
            self.db.add(entity)
            self.db.flush()
            return entity
