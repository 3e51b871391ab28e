"""Error taxonomy for the feed-sync client layer.

Backend failures fall into three families that callers treat differently:

- ``TransportError``: the network is unreachable, the request timed out, or
  the backend answered with a server error. Rolled back, generic message.
- ``BackendValidationError``: the backend rejected the payload. Rolled back,
  the server-provided message is shown verbatim.
- ``AuthorizationError``: the session is missing or expired. Rolled back,
  the user is asked to sign in again. Never retried.

Data-integrity anomalies (orphaned comments, null owners) are not errors at
all; the derivation functions absorb them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

GENERIC_NETWORK_MESSAGE = "Network error. Please check your connection."
GENERIC_FAILURE_MESSAGE = "Something went wrong. Please try again."
REAUTHENTICATE_MESSAGE = "Session expired or invalid. Please sign in again."
RATE_LIMIT_MESSAGE = "You're posting too fast. Please wait a moment."


class ErrorKind(str, Enum):
    """Classification surfaced alongside every user-facing error."""

    TRANSPORT = "transport"
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    RATE_LIMIT = "rate_limit"
    UNKNOWN = "unknown"


class FeedSyncError(RuntimeError):
    """Base exception for all feed-sync failures."""


class BackendError(FeedSyncError):
    """Base exception raised for failures talking to the hosted backend."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TransportError(BackendError):
    """Raised when the backend cannot be reached or fails on its side."""

    kind = ErrorKind.TRANSPORT


class BackendValidationError(BackendError):
    """Raised when the backend rejects a payload (``{"error": ...}``)."""

    kind = ErrorKind.VALIDATION


class AuthorizationError(BackendError):
    """Raised when the backend refuses the session credentials."""

    kind = ErrorKind.AUTHORIZATION


class MutationError(FeedSyncError):
    """Raised by the mutation pipeline after an optimistic write was rolled back."""

    def __init__(self, mutation: str, kind: ErrorKind, user_message: str) -> None:
        super().__init__(f"{mutation} failed: {user_message}")
        self.mutation = mutation
        self.kind = kind
        self.user_message = user_message


@dataclass(frozen=True)
class UserFacingError:
    """Normalized description of a failure suitable for display."""

    kind: ErrorKind
    message: str
    raw_message: str


def describe_error(exc: BaseException) -> UserFacingError:
    """Map an exception to the message a user should see.

    Args:
        exc: Any exception raised while talking to the backend.

    Returns:
        The normalized error, keeping the raw message for logs.
    """
    raw = str(exc) or exc.__class__.__name__
    lowered = raw.lower()

    if "rate limit" in lowered or "too many" in lowered:
        return UserFacingError(ErrorKind.RATE_LIMIT, RATE_LIMIT_MESSAGE, raw)
    if isinstance(exc, AuthorizationError):
        return UserFacingError(ErrorKind.AUTHORIZATION, REAUTHENTICATE_MESSAGE, raw)
    if isinstance(exc, BackendValidationError):
        message = exc.message.strip() or GENERIC_FAILURE_MESSAGE
        return UserFacingError(ErrorKind.VALIDATION, message, raw)
    if isinstance(exc, ValueError):
        # Input rejected locally before anything was sent.
        return UserFacingError(ErrorKind.VALIDATION, raw, raw)
    if isinstance(exc, TransportError):
        return UserFacingError(ErrorKind.TRANSPORT, GENERIC_NETWORK_MESSAGE, raw)
    return UserFacingError(ErrorKind.UNKNOWN, GENERIC_FAILURE_MESSAGE, raw)
