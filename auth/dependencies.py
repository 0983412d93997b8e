"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Requests authenticate with an authentication-scope token:
    Authorization: Bearer <26-char token>

try_get_current_user() is the soft variant: no header means anonymous (None),
but a header that is present and wrong is always a 401. A client that sends
a bad token has to hear about it.
get_current_user() wraps it and raises HTTP 401 if anonymous.
get_activated_user() additionally raises HTTP 403 (inactive_account) until the
account has been activated.

Layer rule: no imports from api/ or mailer/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import InvalidOrExpiredToken
from auth.models import Scope, User
from auth.tokens import TOKEN_LENGTH, validate_token


def _invalid_token() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "invalid_token", "message": "Invalid or missing authentication token."},
        headers={"WWW-Authenticate": "Bearer"},
    )


def bearer_token(request: Request) -> str | None:
    """Return the raw Bearer token from the Authorization header, or None if absent.

    Raises HTTP 401 if the header is present but not a well-formed Bearer token.
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header:
        return None
    scheme, _, token = auth_header.partition(" ")
    if scheme != "Bearer" or len(token) != TOKEN_LENGTH:
        raise _invalid_token()
    return token


def try_get_current_user(request: Request) -> User | None:
    """Resolve the Bearer token to a user. None when no token was sent."""
    token = bearer_token(request)
    if token is None:
        return None
    try:
        return validate_token(request.app.state.stores.tokens, token, Scope.AUTHENTICATION)
    except InvalidOrExpiredToken as exc:
        raise _invalid_token() from exc


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
            detail={"code": "unauthorized", "message": "You must be authenticated to access this resource."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_activated_user(request: Request) -> User:
    """Require an authenticated user whose account has been activated.

    401 if not authenticated (from get_current_user), 403 if not activated.
    """
    user = get_current_user(request)
    if not user.activated:
        raise HTTPException(
            status_code=403,
            detail={
                "code": "inactive_account",
                "message": "Your user account must be activated to access this resource.",
            },
        )
    return user
