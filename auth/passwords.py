"""
auth/passwords.py -- bcrypt password hashing.

bcrypt is used directly rather than through passlib: passlib's wrap-bug
detection creates a password longer than 72 bytes, which bcrypt 4.x rejects.

72-byte limit:
  bcrypt only reads the first 72 bytes of its input and current releases raise
  ValueError for longer inputs. hash() rejects such passwords as INVALID_INPUT
  instead of truncating, so verify() can answer False for them -- no stored
  digest can ever match.
"""

from __future__ import annotations

import logging

import bcrypt

from auth.errors import AuthError, ErrorKind

_BCRYPT_MAX_BYTES = 72


class PasswordHasher:
    """Salted, deliberately slow one-way hashing of user passwords.

    Args:
        rounds: bcrypt cost factor (log2 of iterations). Default 10.
        logger: Logger for digest corruption reports.
    """

    def __init__(self, rounds: int = 10, logger: logging.Logger | None = None) -> None:
        self.rounds = rounds
        self.logger = logger or logging.getLogger("stepguard.auth.passwords")
        # Timing equalization dummy hash. Computed once so the first
        # unknown-email login is not measurably slower than later ones.
        self._dummy_hash = self.hash("stepguard_timing_dummy")

    def hash(self, plaintext: str) -> str:
        """Return a bcrypt digest of the given plaintext password."""
        encoded = plaintext.encode("utf-8")
        if len(encoded) > _BCRYPT_MAX_BYTES:
            raise AuthError(ErrorKind.INVALID_INPUT, "Password must be at most 72 bytes.")
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plaintext: str, digest: str) -> bool:
        """Return True if plaintext matches digest.

        A wrong password is never an error. A digest bcrypt cannot parse means
        the stored row is corrupt and is reported as INTERNAL.
        """
        encoded = plaintext.encode("utf-8")
        if len(encoded) > _BCRYPT_MAX_BYTES:
            return False
        try:
            return bcrypt.checkpw(encoded, digest.encode("utf-8"))
        except ValueError as exc:
            self.logger.error("Stored password digest is malformed")
            raise AuthError(ErrorKind.INTERNAL, "An unexpected error occurred.", exc) from exc

    def dummy_verify(self, plaintext: str) -> None:
        """Burn one bcrypt comparison so a missing account costs the same as a wrong password."""
        self.verify(plaintext, self._dummy_hash)
