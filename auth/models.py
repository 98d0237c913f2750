"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store, challenge manager and service do the work.

Raw secrets never appear in the persisted entities below -- only their HMAC
digests. The result types at the bottom are what AuthService hands back to
callers; they are the only place raw tokens exist outside a request.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ChallengePurpose(str, Enum):
    """What a single-use challenge authorizes.

    LOGIN and RESET_STEP_UP are step-up challenges: they live in the user's
    two-factor enrollment row and require a TOTP code to consume.
    PASSWORD_RESET lives in the reset_challenges table and needs no code.
    """

    LOGIN = "login"
    RESET_STEP_UP = "password-reset-step-up"
    PASSWORD_RESET = "password-reset"

    @property
    def is_step_up(self) -> bool:
        return self is not ChallengePurpose.PASSWORD_RESET

    @property
    def requires_second_factor(self) -> bool:
        return self.is_step_up


# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------


@dataclass
class User:
    """A registered identity.

    refresh_token_hash is the HMAC digest of the most recently issued refresh
    token; it is replaced on every successful login and cleared on reset.
    """

    email: str
    password_hash: str
    id: int | None = None
    refresh_token_hash: str | None = None
    created_at: str | None = None


@dataclass
class TwoFactorEnrollment:
    """One per user. The challenge_* trio is all-set or all-None."""

    user_id: int
    secret_key: str  # base32, generated once at enrollment
    recovery_codes: list[str] = field(default_factory=list)  # HMAC digests
    is_enabled: bool = True
    id: int | None = None
    challenge_hash: str | None = None
    challenge_purpose: str | None = None
    challenge_expires_at: datetime | None = None
    created_at: str | None = None


@dataclass
class ResetChallenge:
    """At most one live row per (user_id, purpose)."""

    user_id: int
    purpose: str
    token_hash: str
    expires_at: datetime
    id: int | None = None
    created_at: str | None = None


# ---------------------------------------------------------------------------
# Challenge manager types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IssuedChallenge:
    raw_token: str
    envelope_token: str
    expires_at: datetime


@dataclass(frozen=True)
class EnvelopeClaims:
    user_id: int
    raw_token: str
    purpose: ChallengePurpose
    stepped_up: bool = False


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class StepUpRequired:
    """Primary credentials accepted; a TOTP code must be presented next."""

    envelope_token: str
    requires_step_up: bool = True


@dataclass(frozen=True)
class EnrollmentResult:
    secret: str
    provisioning_uri: str
    recovery_codes: list[str]


@dataclass(frozen=True)
class ForgotPasswordResult:
    """Same shape for unknown and known emails.

    redirect_to_verification is True only when the account has a second
    factor; envelope_token then carries the step-up challenge to present
    with a TOTP code.
    """

    sent: bool = True
    redirect_to_verification: bool = False
    envelope_token: str | None = None


@dataclass(frozen=True)
class PasswordResetDone:
    message: str = "Password reset successfully."
