# topicchat/services/base.py
"""
Common behaviour for the persistence services.

Services own the unit of work. Repositories flush; ``transaction()`` commits
or rolls back. Connection failures leave as ``OperationalError`` so the
database retry helper can repeat the call, other SQLAlchemy failures become
``ServiceException``.
"""

from contextlib import contextmanager
from functools import wraps
import logging
import time
from typing import Any, Callable, Iterator, TypeVar, cast

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import ServiceException

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SLOW_OPERATION_SECONDS = 1.0


class BaseService:
    def __init__(self, db: Session):
        self.db = db
        self.logger = logging.getLogger(self.__class__.__name__)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Commit the enclosed writes, or roll them back and re-raise.

        Usage:
            with self.transaction():
                self.message_repository.create(...)
        """
        try:
            yield self.db
        except BaseException:
            self.db.rollback()
            raise

        try:
            self.db.commit()
        except OperationalError as exc:
            self.logger.warning("[DB] Commit lost its connection: %s", exc)
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.logger.error("[DB] Commit failed: %s", exc)
            self.db.rollback()
            raise ServiceException(f"Database operation failed: {exc}") from exc

    @staticmethod
    def measure_operation(operation_name: str) -> Callable[[F], F]:
        """Log a warning when the wrapped service call runs longer than ``SLOW_OPERATION_SECONDS``."""

        def decorator(func: F) -> F:
            @wraps(func)
            def wrapper(self: "BaseService", *args: Any, **kwargs: Any) -> Any:
                started = time.perf_counter()
                try:
                    return func(self, *args, **kwargs)
                finally:
                    elapsed = time.perf_counter() - started
                    if elapsed > SLOW_OPERATION_SECONDS:
                        self.logger.warning(
                            "[SLOW] %s took %.2fs", operation_name, elapsed,
                            extra={"operation": operation_name, "elapsed_seconds": round(elapsed, 3)},
                        )

            return cast(F, wrapper)

        return decorator
