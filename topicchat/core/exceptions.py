# topicchat/core/exceptions.py
"""
Error types shared by the stores, services and routes.

``DomainException`` subclasses carry an HTTP status so routes can hand them
to FastAPI with ``to_http_exception``. ``NetworkError`` is the transient
kind; it is the only domain error the retry helpers repeat.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class DomainException(Exception):
    """A chat operation was refused or could not complete."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Chat operation failed"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code, "details": self.details}

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.to_dict())


class ValidationException(DomainException):
    """Message text or request arguments are unusable (blank, too long, self chat)."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid chat request"


class NotFoundException(DomainException):
    """Unknown topic, user or private chat."""

    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class ConflictException(DomainException):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Conflicting chat state"


class UnauthorizedException(DomainException):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication required"


class ForbiddenException(DomainException):
    """The caller is not a participant of the conversation."""

    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Not allowed in this conversation"


class ServiceException(DomainException):
    """Persistence failed for a reason other than a dropped connection."""

    default_message = "An error occurred processing your request"


class NetworkError(DomainException):
    """Transient transport failure: timeouts, refused or dropped connections."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Realtime service unavailable"


class RepositoryException(Exception):
    """A query or write failed below the service layer (constraint, bad SQL)."""
