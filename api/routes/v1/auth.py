"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register           -- create an account; 201
  POST /api/v1/auth/login              -- password login; tokens or step-up envelope
  POST /api/v1/auth/2fa/verify         -- complete a pending login with a TOTP code
  POST /api/v1/auth/2fa/enable         -- enroll a TOTP secret (requires auth); 201
  POST /api/v1/auth/2fa/disable        -- remove the enrollment (requires auth)
  POST /api/v1/auth/password/forgot    -- start a password reset
  POST /api/v1/auth/password/verify    -- prove the second factor for a pending reset
  POST /api/v1/auth/password/reset     -- set a new password with a reset envelope
  POST /api/v1/auth/refresh            -- trade a refresh token for an access token
  GET  /api/v1/auth/me                 -- current user info (requires auth)

Security:
  [R1] Cache-Control: no-store on every response that carries a token.
  [R2] 2FA enable/disable act on the email in the body, but only for the owner
       of the bearer token. Anyone else gets the same 401 as a bad token.
  AuthError raised by the service is mapped to an HTTP status by the handler
  in api/main.py; routes never build error responses themselves.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.models import (
    AccessTokenResponse,
    DisableResponse,
    EmailRequest,
    EnrollmentResponse,
    ForgotPasswordResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    ResetPasswordResponse,
    StepUpRequest,
    StepUpResponse,
    TokenPairResponse,
    UserResponse,
)
from auth.dependencies import get_current_user
from auth.models import StepUpRequired, User
from auth.service import AuthService, normalize_email

# Auth policy:
# - POST /api/v1/auth/register:         public
# - POST /api/v1/auth/login:            public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/2fa/verify:       public -- the envelope token is the credential
# - POST /api/v1/auth/2fa/enable:       requires auth + email ownership [R2]
# - POST /api/v1/auth/2fa/disable:      requires auth + email ownership [R2]
# - POST /api/v1/auth/password/*:       public -- the envelope token is the credential
# - POST /api/v1/auth/refresh:          public -- the refresh token is the credential
# - GET  /api/v1/auth/me:               requires auth (get_current_user)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _no_store(model) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=model.model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [R1]
    return resp


def _require_owner(current_user: User, email: str) -> None:
    """Reject the request unless the bearer token belongs to `email` [R2]."""
    if normalize_email(email) != current_user.email:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Unauthorized."},
            headers={"WWW-Authenticate": "Bearer"},
        )


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create an account. 409 if the email is already registered."""
    user = _service(request).register(body.email, body.password)
    return UserResponse(id=user.id, email=user.email)


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Check email and password.

    Accounts without a second factor get an access/refresh pair straight
    away. Accounts with one get a short-lived envelope token to present to
    POST /auth/2fa/verify with a TOTP code.
    """
    result = _service(request).login(body.email, body.password)
    if isinstance(result, StepUpRequired):
        return _no_store(StepUpResponse.from_result(result))
    return _no_store(TokenPairResponse.from_pair(result))


@router.post("/auth/2fa/verify", response_model=TokenPairResponse)
def verify_step_up(request: Request, body: StepUpRequest) -> JSONResponse:
    """Exchange a login envelope and TOTP code for a token pair. Single use."""
    pair = _service(request).verify_step_up(body.envelope_token, body.code)
    return _no_store(TokenPairResponse.from_pair(pair))


@router.post("/auth/refresh", response_model=AccessTokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Issue a new access token. Only the latest refresh token is honoured."""
    access = _service(request).refresh_access_token(body.refresh_token)
    return _no_store(AccessTokenResponse(access_token=access))


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(
        id=current_user.id,
        email=current_user.email,
        two_factor_enabled=_service(request).is_two_factor_enabled(current_user.id),
    )


# ---------------------------------------------------------------------------
# Two-factor enrollment (authenticated)
# ---------------------------------------------------------------------------


@router.post("/auth/2fa/enable", response_model=EnrollmentResponse, status_code=201)
def enable_two_factor(
    request: Request,
    body: EmailRequest,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Enroll a TOTP secret. The secret and recovery codes are shown ONCE."""
    _require_owner(current_user, body.email)
    result = _service(request).enable_two_factor(body.email)
    resp = JSONResponse(status_code=201, content=EnrollmentResponse.from_result(result).model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [R1]
    return resp


@router.post("/auth/2fa/disable", response_model=DisableResponse)
def disable_two_factor(
    request: Request,
    body: EmailRequest,
    current_user: User = Depends(get_current_user),
) -> DisableResponse:
    """Remove the enrollment. Calling it twice is harmless."""
    _require_owner(current_user, body.email)
    return DisableResponse(disabled=_service(request).disable_two_factor(body.email))


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/password/forgot", response_model=ForgotPasswordResponse)
def forgot_password(request: Request, body: EmailRequest) -> ForgotPasswordResponse:
    """Start a reset.

    Unknown emails get the same answer as accounts without a second factor.
    Accounts with one get redirect_to_verification and an envelope token for
    POST /auth/password/verify; the reset link is only emailed after that.
    """
    result = _service(request).forgot_password(body.email)
    return ForgotPasswordResponse.from_result(result)


@router.post("/auth/password/verify", response_model=ForgotPasswordResponse)
def verify_reset_step_up(request: Request, body: StepUpRequest) -> JSONResponse:
    result = _service(request).verify_reset_step_up(body.envelope_token, body.code)
    return _no_store(ForgotPasswordResponse.from_result(result))


@router.post("/auth/password/reset", response_model=ResetPasswordResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Set a new password. Once the passwords match, the envelope is spent."""
    result = _service(request).reset_password(body.envelope_token, body.new_password, body.repeat_password)
    if isinstance(result, StepUpRequired):
        return _no_store(StepUpResponse.from_result(result))
    return _no_store(MessageResponse.from_result(result))
