"""
auth/challenges.py -- Single-use, time-limited challenges bound to one user and one purpose.

A challenge is a random opaque value. The server keeps only its HMAC digest
and expiry; the raw value travels to the caller inside a signed envelope
token and comes back on the next request.

consume() order matters:
  1. envelope signature + expiry     (stateless)
  2. purpose binding                 (envelope says what it is for)
  3. stored digest present           (NOT_FOUND otherwise)
  4. stored expiry not passed        (EXPIRED)
  5. constant-time digest compare    (INVALID)
  6. TOTP code for step-up purposes  (SECOND_FACTOR)
  7. conditional clear in the store  (NOT_FOUND if someone else got there first)

Nothing is written until every check has passed, and step 7 is a single
statement that re-checks digest and expiry, so a challenge is consumed at most
once even under concurrent requests. All seven failure reasons collapse into
one generic UNAUTHORIZED for the caller; the reason is logged and attached as
the error's cause.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import NoReturn

from auth.errors import AuthError, ChallengeFailure, ChallengeRejected, ErrorKind, unauthorized
from auth.models import ChallengePurpose, EnvelopeClaims, IssuedChallenge, ResetChallenge
from auth.store import AuthStore
from auth.tokens import TokenIssuer
from auth.totp import TotpEngine
from core.clock import Clock

_RAW_TOKEN_BYTES = 32


class ChallengeManager:
    def __init__(
        self,
        store: AuthStore,
        tokens: TokenIssuer,
        totp: TotpEngine,
        clock: Clock,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.totp = totp
        self.clock = clock
        self.logger = logger or logging.getLogger("stepguard.auth.challenges")

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(
        self,
        user_id: int,
        purpose: ChallengePurpose,
        ttl_seconds: int,
        stepped_up: bool = False,
    ) -> IssuedChallenge:
        """Create a challenge for user_id+purpose, superseding any live one.

        Raises ValueError for a non-positive ttl (expiry must be in the future)
        and AuthError(INTERNAL) if a step-up challenge is requested for a user
        without an enabled enrollment to hold it. A reset step-up never
        displaces an unexpired login step-up; that case raises CONFLICT.
        """
        if ttl_seconds <= 0:
            raise ValueError("Challenge ttl must be positive.")
        raw = secrets.token_urlsafe(_RAW_TOKEN_BYTES)
        token_hash = self.tokens.challenge_digest(raw)
        expires_at = self.clock.now() + timedelta(seconds=ttl_seconds)

        if purpose.is_step_up:
            # An unauthenticated reset request may not cancel a pending sign-in.
            held_by = ChallengePurpose.LOGIN if purpose is ChallengePurpose.RESET_STEP_UP else None
            written = self.store.set_step_up_challenge(
                user_id, purpose, token_hash, expires_at, unless_pending=held_by, now=self.clock.now()
            )
            if not written:
                enrollment = self.store.get_enrollment(user_id)
                if held_by is not None and enrollment is not None and enrollment.is_enabled:
                    self.logger.info("Step-up slot for user %s held by a pending %s", user_id, held_by.value)
                    raise AuthError(
                        ErrorKind.CONFLICT,
                        "A sign-in verification is already pending. Try again in a few minutes.",
                    )
                raise AuthError(
                    ErrorKind.INTERNAL,
                    "An unexpected error occurred.",
                    RuntimeError(f"no enabled enrollment to hold a {purpose.value} challenge"),
                )
        else:
            self.store.put_reset_challenge(
                ResetChallenge(user_id=user_id, purpose=purpose.value, token_hash=token_hash, expires_at=expires_at)
            )

        envelope = self.tokens.issue_envelope(user_id, raw, purpose, ttl_seconds, stepped_up=stepped_up)
        self.logger.debug("Issued %s challenge for user %s (expires %s)", purpose.value, user_id, expires_at)
        return IssuedChallenge(raw_token=raw, envelope_token=envelope, expires_at=expires_at)

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    def consume(self, envelope_token: str, purpose: ChallengePurpose, code: str | None = None) -> EnvelopeClaims:
        """Verify and burn a challenge. Returns the envelope claims on success.

        Raises AuthError(UNAUTHORIZED) with a ChallengeRejected cause on any
        failure. The stored challenge is left untouched unless every check
        passed.
        """
        try:
            claims = self.tokens.verify_envelope(envelope_token)
        except AuthError as exc:
            self._reject(None, purpose, ChallengeFailure.BAD_ENVELOPE, exc.cause)

        user_id = claims.user_id
        if claims.purpose is not purpose:
            self._reject(user_id, purpose, ChallengeFailure.WRONG_PURPOSE)

        stored_hash, expires_at = self._load(user_id, purpose)
        if stored_hash is None or expires_at is None:
            self._reject(user_id, purpose, ChallengeFailure.NOT_FOUND)

        now = self.clock.now()
        if now > expires_at:
            self._reject(user_id, purpose, ChallengeFailure.EXPIRED)

        if not self.tokens.matches(claims.raw_token, stored_hash, self.tokens.envelope_key):
            self._reject(user_id, purpose, ChallengeFailure.INVALID)

        if purpose.requires_second_factor:
            enrollment = self.store.get_enrollment(user_id)
            if enrollment is None or not enrollment.is_enabled:
                self._reject(user_id, purpose, ChallengeFailure.SECOND_FACTOR)
            if not self.totp.verify_code(enrollment.secret_key, code, at=now):
                self._reject(user_id, purpose, ChallengeFailure.SECOND_FACTOR)
            cleared = self.store.consume_step_up_challenge(user_id, purpose, stored_hash, now)
        else:
            cleared = self.store.consume_reset_challenge(user_id, purpose.value, stored_hash, now)

        if not cleared:
            # Lost the race against a concurrent consumer or the sweeper
            self._reject(user_id, purpose, ChallengeFailure.NOT_FOUND)

        self.logger.info("Consumed %s challenge for user %s", purpose.value, user_id)
        return claims

    def revoke_all(self, user_id: int, purpose: ChallengePurpose) -> int:
        """Drop outstanding challenges of this kind for a user. Returns how many were removed."""
        if purpose.is_step_up:
            return 1 if self.store.clear_step_up_challenge(user_id) else 0
        return self.store.delete_reset_challenges(user_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, user_id: int, purpose: ChallengePurpose) -> tuple[str | None, datetime | None]:
        if purpose.is_step_up:
            enrollment = self.store.get_enrollment(user_id)
            if enrollment is None or enrollment.challenge_purpose != purpose.value:
                return None, None
            return enrollment.challenge_hash, enrollment.challenge_expires_at
        challenge = self.store.get_reset_challenge(user_id, purpose.value)
        if challenge is None:
            return None, None
        return challenge.token_hash, challenge.expires_at

    def _reject(
        self,
        user_id: int | None,
        purpose: ChallengePurpose,
        reason: ChallengeFailure,
        detail: BaseException | None = None,
    ) -> NoReturn:
        self.logger.info(
            "Rejected %s challenge for user %s: %s%s",
            purpose.value,
            user_id if user_id is not None else "?",
            reason.value,
            f" ({detail})" if detail is not None else "",
        )
        raise unauthorized(ChallengeRejected(reason))
