"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Only one credential is accepted: an access token in the
Authorization: Bearer <token> header. Refresh tokens and challenge envelopes
are signed with different keys and carry a different `typ`, so they are
rejected here even though they are also JWTs.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: auth/dependencies.py may import from fastapi (for
HTTPException/Request) because this module is part of the FastAPI dependency
injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import AuthError, ErrorKind
from auth.models import User
from auth.service import AuthService


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request via its bearer access token.

    Returns the User on success, None on any authentication failure. Storage
    failures still raise (as AuthError INTERNAL) -- they are not "anonymous".
    """
    token = _bearer_token(request)
    if not token:
        return None
    service: AuthService = request.app.state.auth_service
    try:
        return service.current_user(token)
    except AuthError as exc:
        if exc.kind is ErrorKind.UNAUTHORIZED:
            return None
        raise


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
