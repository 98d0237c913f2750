"""
auth/errors.py -- The single error type raised by the auth core.

Every failure leaving auth/ is an AuthError with a fixed (kind, message, cause)
shape. The API layer maps ErrorKind to an HTTP status in one place.

Information leakage policy:
  UNAUTHORIZED covers bad credentials, bad codes, and expired, invalid or
  already-used challenges. The message is always generic; the specific reason
  travels only in `cause` (ChallengeRejected / TokenRejected) and in the logs.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_INPUT = "invalid_input"
    UNAUTHORIZED = "unauthorized"
    INTERNAL = "internal"


class AuthError(Exception):
    """Typed failure of an auth operation.

    Args:
        kind:    ErrorKind classifying the failure.
        message: Caller-safe message. For UNAUTHORIZED and INTERNAL this must
                 not reveal which check failed.
        cause:   Optional underlying exception, kept for logging and tests.
    """

    def __init__(self, kind: ErrorKind, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __repr__(self) -> str:
        return f"AuthError({self.kind.value!r}, {self.message!r})"


class ChallengeFailure(str, Enum):
    """Internal reasons a challenge was rejected. Logged, never returned."""

    BAD_ENVELOPE = "bad_envelope"
    WRONG_PURPOSE = "wrong_purpose"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    INVALID = "invalid"
    SECOND_FACTOR = "second_factor"


class ChallengeRejected(Exception):
    """Cause attached to the generic UNAUTHORIZED error for a failed challenge."""

    def __init__(self, reason: ChallengeFailure) -> None:
        super().__init__(reason.value)
        self.reason = reason


class TokenRejected(Exception):
    """Cause attached to UNAUTHORIZED when a signed token fails verification.

    reason is one of "invalid_signature", "expired", "malformed".
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def unauthorized(cause: BaseException | None = None, message: str = "Unauthorized.") -> AuthError:
    return AuthError(ErrorKind.UNAUTHORIZED, message, cause)
