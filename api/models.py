"""
API request and response models for StepGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

One request model per operation, with required fields enumerated explicitly;
anything not listed is ignored rather than destructured from a loose dict.
"""

from typing import Annotated, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from auth.models import (
    EnrollmentResult,
    ForgotPasswordResult,
    PasswordResetDone,
    StepUpRequired,
    TokenPair,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Only the email is trimmed; passwords are hashed exactly as sent.
    """

    email: Annotated[str, StringConstraints(strip_whitespace=True, max_length=255, pattern=EMAIL_PATTERN)]
    password: str = Field(min_length=1, max_length=128)  # hasher enforces bcrypt's 72-byte cap


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)  # hasher enforces bcrypt's 72-byte cap


class StepUpRequest(BaseModel):
    """Request body for POST /auth/2fa/verify and POST /auth/password/verify."""

    model_config = ConfigDict(str_strip_whitespace=True)

    envelope_token: str = Field(min_length=1, max_length=4096)
    code: str = Field(min_length=6, max_length=10)


class EmailRequest(BaseModel):
    """Request body for the 2FA enable/disable and forgot-password endpoints."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/password/reset."""

    envelope_token: str = Field(min_length=1, max_length=4096)
    new_password: str = Field(min_length=1, max_length=128)
    repeat_password: str = Field(min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh."""

    refresh_token: str = Field(min_length=1, max_length=4096)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public identity of a user. Never includes hashes."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    two_factor_enabled: bool


class TokenPairResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenPairResponse":
        return cls(access_token=pair.access_token, refresh_token=pair.refresh_token)


class StepUpResponse(BaseModel):
    """Primary check passed; present envelope_token with a TOTP code next."""

    model_config = ConfigDict(frozen=True)

    requires_step_up: bool = True
    envelope_token: str

    @classmethod
    def from_result(cls, result: StepUpRequired) -> "StepUpResponse":
        return cls(envelope_token=result.envelope_token)


class AccessTokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"


class EnrollmentResponse(BaseModel):
    """Returned once at enrollment. The secret and codes are never shown again."""

    model_config = ConfigDict(frozen=True)

    secret: str
    provisioning_uri: str
    recovery_codes: list[str]

    @classmethod
    def from_result(cls, result: EnrollmentResult) -> "EnrollmentResponse":
        return cls(
            secret=result.secret,
            provisioning_uri=result.provisioning_uri,
            recovery_codes=list(result.recovery_codes),
        )


class DisableResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    disabled: bool


class ForgotPasswordResponse(BaseModel):
    """Identical shape whether or not the email belongs to an account."""

    model_config = ConfigDict(frozen=True)

    sent: bool
    redirect_to_verification: bool
    envelope_token: Optional[str] = None

    @classmethod
    def from_result(cls, result: ForgotPasswordResult) -> "ForgotPasswordResponse":
        return cls(
            sent=result.sent,
            redirect_to_verification=result.redirect_to_verification,
            envelope_token=result.envelope_token,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str

    @classmethod
    def from_result(cls, result: PasswordResetDone) -> "MessageResponse":
        return cls(message=result.message)


LoginResponse = Union[TokenPairResponse, StepUpResponse]
ResetPasswordResponse = Union[MessageResponse, StepUpResponse]


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
