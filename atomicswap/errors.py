"""
Swap coordination errors.

Every rejection carries a stable integer code (also used as the CLI exit
status), the HTTP status the admin API answers with, and a message naming
the guard that failed. Only infrastructure failures are retryable.
"""

from enum import IntEnum
from typing import Any, Dict, Mapping, Optional


class ErrorCode(IntEnum):
    """Stable error codes for coordinator rejections."""
    INVALID_TERMS = 10
    NOT_FOUND = 11
    ALREADY_TAKEN = 12
    INVALID_TRANSITION = 13
    HASH_MISMATCH = 14
    EXPIRY_VIOLATION = 15
    STALE_EVENT = 16
    CONFLICT = 17
    STORE_UNAVAILABLE = 20
    GATEWAY_ERROR = 21


class SwapError(Exception):
    """Base class for coordinator errors."""

    code: ErrorCode = ErrorCode.INVALID_TRANSITION
    http_status: int = 400
    retryable: bool = False

    def __init__(self, message: str, *, context: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context) if context else {}

    @property
    def name(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        return f"{self.name}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "error": self.name,
            "code": int(self.code),
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.context:
            out["context"] = self.context
        return out


class InvalidTerms(SwapError):
    """Malformed offer or acceptance input."""
    code = ErrorCode.INVALID_TERMS
    http_status = 400


class NotFound(SwapError):
    code = ErrorCode.NOT_FOUND
    http_status = 404


class AlreadyTaken(SwapError):
    """Offer already has a taker (double-accept race)."""
    code = ErrorCode.ALREADY_TAKEN
    http_status = 409


class InvalidTransition(SwapError):
    """Guard failed for the offer's current state."""
    code = ErrorCode.INVALID_TRANSITION
    http_status = 409


class HashMismatch(SwapError):
    """Secret does not hash to the offer's commitment."""
    code = ErrorCode.HASH_MISMATCH
    http_status = 422


class ExpiryViolation(SwapError):
    """Leg expiry ordering violated, or the action came too late / too early."""
    code = ErrorCode.EXPIRY_VIOLATION
    http_status = 422


class StaleEvent(SwapError):
    """Chain observation older than what was already applied."""
    code = ErrorCode.STALE_EVENT
    http_status = 409


class Conflict(SwapError):
    """Concurrent mutation detected by the store's version check."""
    code = ErrorCode.CONFLICT
    http_status = 409
    retryable = True


class StoreUnavailable(SwapError):
    """Offer store I/O failed. Retry the whole operation."""
    code = ErrorCode.STORE_UNAVAILABLE
    http_status = 503
    retryable = True


class GatewayError(SwapError):
    """Chain gateway call failed or is not configured."""
    code = ErrorCode.GATEWAY_ERROR
    http_status = 502
    retryable = True
