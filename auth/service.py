"""
auth/service.py -- AuthService, the public face of the auth core.

State machine:
  ANONYMOUS -> CREDENTIALS_VERIFIED -> (2FA enrolled) STEP_UP_PENDING -> AUTHENTICATED
                                    -> (no 2FA)                       -> AUTHENTICATED
AUTHENTICATED is terminal: it yields an access + refresh pair and the refresh
token's digest is stored against the user, replacing the previous one.

Password reset:
  forgot_password        no 2FA: email a single-use reset link.
                         2FA:    return a step-up envelope instead; the link is
                                 only emailed after verify_reset_step_up().
  reset_password         consume the reset challenge, replace the hash, revoke
                         every other reset challenge, notify.

Security ordering:
  [A1] Inputs are validated before any storage access (password mismatch in
       reset_password is checked before the challenge is even looked at).
  [A2] Unknown email and wrong password produce the same error and cost the
       same bcrypt work (dummy_verify).
  [A3] forgot_password answers an unknown email exactly like a known email
       without a second factor.
  [A4] Storage failures surface as INTERNAL with a generic message; the full
       exception goes to the log only.

Layer rule: no imports from api/. Imports NotificationKind and the Notifier
protocol from notify.mailer; the concrete notifier is injected.
"""

from __future__ import annotations

import functools
import logging
import math

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.challenges import ChallengeManager
from auth.errors import AuthError, ErrorKind, unauthorized
from auth.models import (
    ChallengePurpose,
    EnrollmentResult,
    ForgotPasswordResult,
    PasswordResetDone,
    StepUpRequired,
    TokenPair,
    TwoFactorEnrollment,
    User,
)
from auth.passwords import PasswordHasher
from auth.store import AuthStore
from auth.tokens import TokenIssuer
from auth.totp import TotpEngine
from core.clock import Clock, SystemClock
from core.config import Settings
from notify.mailer import NotificationKind, Notifier

_BAD_CREDENTIALS = "Incorrect email or password."


def _storage_guard(method):
    """Re-raise unexpected storage failures as INTERNAL [A4]."""

    @functools.wraps(method)
    def wrapper(self: AuthService, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except SQLAlchemyError as exc:
            self.logger.exception("Storage failure in %s", method.__name__)
            raise AuthError(ErrorKind.INTERNAL, "An unexpected error occurred.", exc) from exc

    return wrapper


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Registration, login, step-up, two-factor enrollment and password reset.

    Stateless between requests: everything it remembers lives in the store.
    """

    def __init__(
        self,
        store: AuthStore,
        hasher: PasswordHasher,
        tokens: TokenIssuer,
        totp: TotpEngine,
        challenges: ChallengeManager,
        notifier: Notifier,
        settings: Settings,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.tokens = tokens
        self.totp = totp
        self.challenges = challenges
        self.notifier = notifier
        self.step_up_ttl = settings.step_up_ttl_seconds
        self.reset_ttl = settings.reset_ttl_seconds
        self.frontend_url = settings.frontend_url.rstrip("/")
        self.logger = logger or logging.getLogger("stepguard.auth.service")

    @classmethod
    def build(
        cls,
        settings: Settings,
        store: AuthStore,
        notifier: Notifier,
        clock: Clock | None = None,
        logger: logging.Logger | None = None,
    ) -> AuthService:
        """Wire the full component graph from settings.

        Each component gets a child of `logger` so log lines stay attributable
        without any module reaching for a shared global.
        """
        clock = clock or SystemClock()
        logger = logger or logging.getLogger("stepguard.auth")
        tokens = TokenIssuer(settings, clock, logger=logger.getChild("tokens"))
        totp = TotpEngine(settings.totp_issuer, settings.recovery_code_count)
        return cls(
            store=store,
            hasher=PasswordHasher(settings.bcrypt_rounds, logger=logger.getChild("passwords")),
            tokens=tokens,
            totp=totp,
            challenges=ChallengeManager(store, tokens, totp, clock, logger=logger.getChild("challenges")),
            notifier=notifier,
            settings=settings,
            logger=logger.getChild("service"),
        )

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    @_storage_guard
    def register(self, email: str, password: str) -> User:
        """Create an account and send the registration notification.

        Raises CONFLICT if the email is taken, including when a concurrent
        registration wins the race between the check and the insert.
        """
        email = normalize_email(email)
        if not email or not password:
            raise AuthError(ErrorKind.INVALID_INPUT, "Email and password are required.")
        if self.store.get_by_email(email) is not None:
            raise AuthError(ErrorKind.CONFLICT, "A user with that email already exists.")
        password_hash = self.hasher.hash(password)
        try:
            user_id = self.store.create_user(User(email=email, password_hash=password_hash))
        except IntegrityError as exc:
            raise AuthError(ErrorKind.CONFLICT, "A user with that email already exists.", exc) from exc
        self.logger.info("Registered user %s", user_id)
        self.notifier.send(NotificationKind.REGISTRATION, email, {})
        return self.store.get_by_id(user_id)

    @_storage_guard
    def login(self, email: str, password: str) -> TokenPair | StepUpRequired:
        """Check primary credentials; return tokens or a step-up envelope [A2]."""
        user = self.store.get_by_email(normalize_email(email))
        if user is None:
            self.hasher.dummy_verify(password)
            self.logger.info("Login failed: unknown account")
            raise unauthorized(message=_BAD_CREDENTIALS)
        if not self.hasher.verify(password, user.password_hash):
            self.logger.info("Login failed: bad password for user %s", user.id)
            raise unauthorized(message=_BAD_CREDENTIALS)

        if self._has_second_factor(user.id):
            issued = self.challenges.issue(user.id, ChallengePurpose.LOGIN, self.step_up_ttl)
            self.logger.info("Login for user %s pending step-up", user.id)
            return StepUpRequired(envelope_token=issued.envelope_token)
        return self._start_session(user.id)

    @_storage_guard
    def verify_step_up(self, envelope_token: str, code: str) -> TokenPair:
        """Complete a pending login with the TOTP code."""
        claims = self.challenges.consume(envelope_token, ChallengePurpose.LOGIN, code)
        if self.store.get_by_id(claims.user_id) is None:
            raise unauthorized()
        return self._start_session(claims.user_id)

    @_storage_guard
    def refresh_access_token(self, refresh_token: str) -> str:
        """Exchange the user's current refresh token for a new access token.

        Only the most recently issued refresh token is accepted: its digest
        must match the one stored at login.
        """
        payload = self.tokens.verify_refresh(refresh_token)
        user = self.store.get_by_id(payload["user_id"])
        if user is None or not self.tokens.matches(refresh_token, user.refresh_token_hash, self.tokens.refresh_key):
            self.logger.info("Refresh rejected for user %s: superseded or revoked", payload["user_id"])
            raise unauthorized()
        return self.tokens.issue_access(user.id)

    @_storage_guard
    def current_user(self, access_token: str) -> User:
        """Resolve a bearer access token to its user."""
        payload = self.tokens.verify_access(access_token)
        user = self.store.get_by_id(payload["user_id"])
        if user is None:
            raise unauthorized()
        return user

    # ------------------------------------------------------------------
    # Two-factor enrollment
    # ------------------------------------------------------------------

    @_storage_guard
    def enable_two_factor(self, email: str) -> EnrollmentResult:
        """Generate a TOTP secret and recovery codes; the enrollment is active at once.

        Raw recovery codes are returned once and only their digests are kept.
        """
        user = self._require_user(email)
        if self.store.get_enrollment(user.id) is not None:
            raise AuthError(ErrorKind.CONFLICT, "Two-factor authentication is already enabled.")
        secret = self.totp.generate_secret()
        codes = sorted(self.totp.generate_recovery_codes())
        enrollment = TwoFactorEnrollment(
            user_id=user.id,
            secret_key=secret,
            recovery_codes=[self.tokens.challenge_digest(code) for code in codes],
            is_enabled=True,
        )
        try:
            self.store.create_enrollment(enrollment)
        except IntegrityError as exc:
            raise AuthError(ErrorKind.CONFLICT, "Two-factor authentication is already enabled.", exc) from exc
        self.logger.info("Enabled two-factor authentication for user %s", user.id)
        return EnrollmentResult(
            secret=secret,
            provisioning_uri=self.totp.provisioning_uri(secret, user.email),
            recovery_codes=codes,
        )

    @_storage_guard
    def disable_two_factor(self, email: str) -> bool:
        """Remove the enrollment if present. Idempotent; returns whether anything was removed."""
        user = self.store.get_by_email(normalize_email(email))
        if user is None:
            return False
        removed = self.store.delete_enrollment(user.id)
        if removed:
            self.logger.info("Disabled two-factor authentication for user %s", user.id)
        return removed

    @_storage_guard
    def is_two_factor_enabled(self, user_id: int) -> bool:
        return self._has_second_factor(user_id)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    @_storage_guard
    def forgot_password(self, email: str) -> ForgotPasswordResult:
        """Start a reset. Never reveals whether a plain account exists [A3]."""
        user = self.store.get_by_email(normalize_email(email))
        if user is None:
            self.logger.info("Password reset requested for unknown account")
            return ForgotPasswordResult()
        if self._has_second_factor(user.id):
            issued = self.challenges.issue(user.id, ChallengePurpose.RESET_STEP_UP, self.step_up_ttl)
            self.logger.info("Password reset for user %s requires step-up", user.id)
            return ForgotPasswordResult(
                sent=False,
                redirect_to_verification=True,
                envelope_token=issued.envelope_token,
            )
        self._send_reset_link(user, stepped_up=False)
        return ForgotPasswordResult()

    @_storage_guard
    def verify_reset_step_up(self, envelope_token: str, code: str) -> ForgotPasswordResult:
        """Prove the second factor for a pending reset, then email the reset link."""
        claims = self.challenges.consume(envelope_token, ChallengePurpose.RESET_STEP_UP, code)
        user = self.store.get_by_id(claims.user_id)
        if user is None:
            raise unauthorized()
        self._send_reset_link(user, stepped_up=True)
        return ForgotPasswordResult()

    @_storage_guard
    def reset_password(
        self, envelope_token: str, new_password: str, repeat_password: str
    ) -> PasswordResetDone | StepUpRequired:
        """Replace the password using a reset envelope [A1].

        A link issued before the user enrolled a second factor is still
        single-use: it is consumed here, and the caller is sent through a
        step-up instead of getting the password changed.
        """
        if new_password != repeat_password:
            raise AuthError(ErrorKind.INVALID_INPUT, "Passwords do not match.")
        if not new_password:
            raise AuthError(ErrorKind.INVALID_INPUT, "Password is required.")
        new_hash = self.hasher.hash(new_password)

        claims = self.challenges.consume(envelope_token, ChallengePurpose.PASSWORD_RESET)
        user = self.store.get_by_id(claims.user_id)
        if user is None:
            raise unauthorized()

        if self._has_second_factor(user.id) and not claims.stepped_up:
            issued = self.challenges.issue(user.id, ChallengePurpose.RESET_STEP_UP, self.step_up_ttl)
            self.logger.info("Reset for user %s redirected to step-up", user.id)
            return StepUpRequired(envelope_token=issued.envelope_token)

        self.store.update_password(user.id, new_hash)
        self.challenges.revoke_all(user.id, ChallengePurpose.PASSWORD_RESET)
        self.logger.info("Password reset for user %s", user.id)
        self.notifier.send(NotificationKind.RESET_CONFIRMATION, user.email, {})
        return PasswordResetDone()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _start_session(self, user_id: int) -> TokenPair:
        access = self.tokens.issue_access(user_id)
        refresh = self.tokens.issue_refresh(user_id)
        self.store.set_refresh_token_hash(user_id, self.tokens.refresh_digest(refresh))
        self.logger.info("User %s authenticated", user_id)
        return TokenPair(access_token=access, refresh_token=refresh)

    def _has_second_factor(self, user_id: int) -> bool:
        enrollment = self.store.get_enrollment(user_id)
        return enrollment is not None and enrollment.is_enabled

    def _require_user(self, email: str) -> User:
        user = self.store.get_by_email(normalize_email(email))
        if user is None:
            raise AuthError(ErrorKind.NOT_FOUND, "User not found.")
        return user

    def _send_reset_link(self, user: User, stepped_up: bool) -> None:
        issued = self.challenges.issue(user.id, ChallengePurpose.PASSWORD_RESET, self.reset_ttl, stepped_up=stepped_up)
        reset_link = f"{self.frontend_url}/reset-password?token={issued.envelope_token}"
        self.logger.info("Reset link issued for user %s", user.id)
        self.notifier.send(
            NotificationKind.RESET_REQUEST,
            user.email,
            {"reset_link": reset_link, "expires_minutes": math.ceil(self.reset_ttl / 60)},
        )
