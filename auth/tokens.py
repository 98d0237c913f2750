"""
auth/tokens.py -- Signed tokens and keyed digests.

Security design decisions:
  JWT: python-jose with HS256. Three token families, three keys [K1]:
       access   (key A, 15 min) -- bearer credential for API calls.
       refresh  (key B, 20 min) -- only exchangeable for a new access token.
       envelope (key C, TTL of the challenge) -- transports an opaque
                challenge value between two requests so the server keeps
                nothing but its digest.
       Every token carries a `typ` claim and verification checks it, so a
       token of one family is rejected where another is expected even if the
       keys were ever misconfigured.

  Digests: HMAC-SHA256(key, raw) as hex. Challenge values and refresh tokens
       are long random strings, so bcrypt's slowness buys nothing; a keyed
       hash lets the store compare in O(1) while a DB dump alone cannot be
       replayed. Comparison is constant-time (hmac.compare_digest).

Layer rule: no imports from api/ or notify/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import AuthError, ErrorKind, TokenRejected
from auth.models import ChallengePurpose, EnvelopeClaims
from core.clock import Clock, SystemClock

if TYPE_CHECKING:
    from core.config import Settings

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"
ENVELOPE = "envelope"


class TokenIssuer:
    """Creates and validates short-lived, stateless signed tokens.

    Keys are read from Settings once at construction and never mutated.
    """

    def __init__(self, settings: Settings, clock: Clock | None = None, logger: logging.Logger | None = None) -> None:
        self.access_key = settings.access_token_secret
        self.refresh_key = settings.refresh_token_secret
        self.envelope_key = settings.envelope_token_secret
        self.access_ttl = settings.access_token_expire_seconds
        self.refresh_ttl = settings.refresh_token_expire_seconds
        self.clock = clock or SystemClock()
        self.logger = logger or logging.getLogger("stepguard.auth.tokens")

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def _encode(self, claims: dict, key: str, ttl_seconds: int) -> str:
        now = self.clock.now()
        payload = {**claims, "iat": now, "exp": now + timedelta(seconds=ttl_seconds)}
        return jwt.encode(payload, key, algorithm=_ALGORITHM)

    def issue_access(self, user_id: int) -> str:
        return self._encode({"sub": str(user_id), "typ": ACCESS}, self.access_key, self.access_ttl)

    def issue_refresh(self, user_id: int) -> str:
        """Refresh tokens carry a random jti so two logins in the same second never collide."""
        claims = {"sub": str(user_id), "typ": REFRESH, "jti": secrets.token_hex(16)}
        return self._encode(claims, self.refresh_key, self.refresh_ttl)

    def issue_envelope(
        self,
        user_id: int,
        opaque_value: str,
        purpose: ChallengePurpose,
        ttl_seconds: int,
        stepped_up: bool = False,
    ) -> str:
        """Wrap a challenge's raw value in a signed token for the caller to present later."""
        claims = {
            "sub": str(user_id),
            "typ": ENVELOPE,
            "val": opaque_value,
            "pur": purpose.value,
            "stp": stepped_up,
        }
        return self._encode(claims, self.envelope_key, ttl_seconds)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, token: str, key: str, expected_type: str | None = None) -> dict:
        """Decode and verify a token. Returns the payload or raises UNAUTHORIZED.

        The cause is a TokenRejected carrying "expired", "invalid_signature"
        or "malformed" for the logs; callers only ever see the generic kind.
        """
        try:
            payload = jwt.decode(token, key, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise AuthError(ErrorKind.UNAUTHORIZED, "Unauthorized.", TokenRejected("expired")) from exc
        except JWTError as exc:
            raise AuthError(ErrorKind.UNAUTHORIZED, "Unauthorized.", TokenRejected("invalid_signature")) from exc
        if expected_type is not None and payload.get("typ") != expected_type:
            raise AuthError(ErrorKind.UNAUTHORIZED, "Unauthorized.", TokenRejected("malformed"))
        try:
            payload["user_id"] = int(payload["sub"])
        except (KeyError, TypeError, ValueError) as exc:
            raise AuthError(ErrorKind.UNAUTHORIZED, "Unauthorized.", TokenRejected("malformed")) from exc
        return payload

    def verify_access(self, token: str) -> dict:
        return self.verify(token, self.access_key, ACCESS)

    def verify_refresh(self, token: str) -> dict:
        return self.verify(token, self.refresh_key, REFRESH)

    def verify_envelope(self, token: str) -> EnvelopeClaims:
        payload = self.verify(token, self.envelope_key, ENVELOPE)
        try:
            return EnvelopeClaims(
                user_id=payload["user_id"],
                raw_token=str(payload["val"]),
                purpose=ChallengePurpose(payload["pur"]),
                stepped_up=bool(payload.get("stp", False)),
            )
        except (KeyError, ValueError) as exc:
            raise AuthError(ErrorKind.UNAUTHORIZED, "Unauthorized.", TokenRejected("malformed")) from exc

    def refresh_access(self, refresh_token: str) -> str:
        """Validate a refresh token and issue a fresh access token for the same user.

        The refresh token itself is not rotated.
        """
        payload = self.verify_refresh(refresh_token)
        return self.issue_access(payload["user_id"])

    # ------------------------------------------------------------------
    # Keyed digests
    # ------------------------------------------------------------------

    @staticmethod
    def digest(raw: str, key: str) -> str:
        """Return HMAC-SHA256(key, raw) as a hex string."""
        return hmac.new(key.encode(), raw.encode(), hashlib.sha256).hexdigest()

    @classmethod
    def matches(cls, raw: str, digest: str | None, key: str) -> bool:
        """Constant-time check that raw hashes to digest."""
        if not digest:
            return False
        return hmac.compare_digest(cls.digest(raw, key), digest)

    def challenge_digest(self, raw: str) -> str:
        return self.digest(raw, self.envelope_key)

    def refresh_digest(self, refresh_token: str) -> str:
        return self.digest(refresh_token, self.refresh_key)
