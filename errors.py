"""Error hierarchy for the signaling relay.

Transient-unreachable targets and stale sessions are not errors and never
reach this module; they are absorbed by the relay. What remains is
malformed input (rejected before any state changes) and an unreachable
Redis (fails closed and shows up in health).
"""

import functools
from enum import Enum
from typing import Any, Optional

from redis.exceptions import RedisError

from logging_config import get_logger

logger = get_logger(__name__)


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    RESOURCE_NOT_FOUND = "resource_not_found"
    STORE = "store"
    INTERNAL = "internal"


class RelayError(Exception):
    """Base exception carrying a stable code and the HTTP status to report."""

    def __init__(
        self,
        message: str,
        code: str,
        category: ErrorCategory,
        http_status: int = 500,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.http_status = http_status
        self.details = details

    def to_response(self) -> dict:
        error = {
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
        }
        if self.details is not None:
            error["details"] = self.details
        return {"error": error}

    def to_event(self) -> dict:
        """Render as an outbound `error` event for the calling session."""
        event = {"event": "error", "code": self.code, "message": self.message}
        if self.details is not None:
            event["details"] = self.details
        return event


class MalformedInputError(RelayError):
    """Inbound payload is missing required fields or has the wrong shape."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message, "MALFORMED_INPUT", ErrorCategory.VALIDATION, 400, details)


class PeerNotFoundError(RelayError):
    def __init__(self, peer_id: str):
        super().__init__(f"Peer '{peer_id}' not found", "PEER_NOT_FOUND", ErrorCategory.RESOURCE_NOT_FOUND, 404)
        self.peer_id = peer_id


class StoreUnavailableError(RelayError):
    """Redis could not be reached; the operation did not complete."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(
            f"Presence store unavailable during {operation}",
            "STORE_UNAVAILABLE",
            ErrorCategory.STORE,
            503,
        )
        self.operation = operation
        self.__cause__ = cause


def translate_store_errors(func):
    """Re-raise redis-py failures as StoreUnavailableError."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except RedisError as e:
            logger.error(f"Redis error in {func.__qualname__}: {e}", exc_info=True)
            raise StoreUnavailableError(func.__name__, e) from e

    return wrapper
