# backend/core/error_handling.py

"""
Error taxonomy for the rental core.

Services raise the ``APIError`` subclasses below and never build HTTP
responses themselves. Whatever serves requests wraps its handlers with
``handle_api_errors``, which turns these errors (and a few well known
database failures) into ``HTTPException`` instances.
"""

from typing import Callable, Dict, Any, Optional
from functools import wraps
import inspect
import logging

from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, OperationalError

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base class for every error a service raises on purpose"""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "details": self.details}


class NotFoundError(APIError):
    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} {identifier} does not exist",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": str(identifier)},
        )


class ConflictError(APIError):
    """Someone else changed the row first, or the row is still referenced"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status.HTTP_409_CONFLICT, details)


class APIValidationError(APIError):
    """Bad input caught by a service; not pydantic's ValidationError"""

    def __init__(self, message: str, errors: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            {"fields": errors} if errors else None,
        )


class AuthorizationError(APIError):
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, status.HTTP_403_FORBIDDEN)


class InvalidStateError(APIError):
    """The requested transition is not legal from the current status"""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(
            message,
            status.HTTP_400_BAD_REQUEST,
            {"current_status": current_status} if current_status else None,
        )


class DomainRuleError(APIError):
    """A business rule rejected the operation; ``reason_code`` is stable for clients"""

    def __init__(
        self,
        reason_code: str,
        message: str,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.reason_code = reason_code
        payload = {"reason_code": reason_code}
        payload.update(details or {})
        super().__init__(message, status_code, payload)


class GoneError(APIError):
    """Resource existed but its validity window has passed"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status.HTTP_410_GONE, details)


def to_http_exception(e: Exception) -> HTTPException:
    """Map a service-layer exception onto an HTTPException."""
    if isinstance(e, APIError):
        logger.warning(f"{type(e).__name__}: {e.message} {e.details}")
        return HTTPException(status_code=e.status_code, detail=e.to_dict())

    if isinstance(e, ValidationError):
        logger.warning(f"Rejected payload: {e.errors()}")
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": "Invalid payload", "errors": e.errors()},
        )

    if isinstance(e, IntegrityError):
        logger.error(f"Integrity error: {e.orig}")
        if "unique" in str(e.orig or e).lower():
            return HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"message": "A record with these values already exists"},
            )
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Constraint violated"},
        )

    if isinstance(e, OperationalError):
        logger.error(f"Database unavailable: {e.orig}")
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": "Database temporarily unavailable"},
        )

    logger.exception(f"Unhandled error: {e}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"message": "An unexpected error occurred"},
    )


def handle_api_errors(func: Callable) -> Callable:
    """
    Decorator converting service exceptions to HTTP exceptions.
    Works on both plain and ``async`` handlers.

    Usage:
        @handle_api_errors
        def confirm(order_id: int, actor: Actor):
            ...
    """

    if inspect.iscoroutinefunction(func):

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except HTTPException:
                raise
            except Exception as e:
                raise to_http_exception(e) from e

        return async_wrapper

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except HTTPException:
            raise
        except Exception as e:
            raise to_http_exception(e) from e

    return wrapper
