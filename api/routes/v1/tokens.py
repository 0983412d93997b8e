"""
api/routes/v1/tokens.py -- Token issuance endpoints.

Routes:
  POST   /api/v1/tokens/authentication   -- password login; returns a session token (201)
  DELETE /api/v1/tokens/authentication   -- log out everywhere; deletes all session tokens (requires auth)
  POST   /api/v1/tokens/activation       -- e-mail a fresh activation token (202)
  POST   /api/v1/tokens/password-reset   -- e-mail a password reset token (202)

Security:
  POST /tokens/authentication is rate-limited to 10 requests/minute per IP on
  top of the global default limits.
  authenticate_user() provides timing equalization -- use it, never inline.
  Login returns the same 401 for an unknown e-mail and a wrong password.
  Cache-Control: no-store on responses that carry a token.
  The plaintext of e-mailed tokens appears only in the background closure,
  never in the response or the logs.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.helpers import failed_validation, send_in_background
from api.limiter import limiter
from api.models import AuthenticationTokenResponse, EmailRequest, LoginRequest, MessageResponse, TokenResponse
from auth.dependencies import get_current_user
from auth.models import Scope, User
from auth.passwords import authenticate_user
from auth.store import AuthStores
from auth.tokens import issue_token, token_ttl

router = APIRouter()


@limiter.limit("10/minute")  # brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/tokens/authentication", response_model=AuthenticationTokenResponse, status_code=201)
def create_authentication_token(request: Request, body: LoginRequest) -> JSONResponse:
    """Exchange e-mail and password for a 24-hour authentication token."""
    stores: AuthStores = request.app.state.stores
    user = authenticate_user(stores.users, body.email, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "invalid_credentials", "message": "Invalid authentication credentials."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    token = issue_token(stores.tokens, user.id, Scope.AUTHENTICATION)
    resp = JSONResponse(
        status_code=201,
        content=AuthenticationTokenResponse(authentication_token=TokenResponse.from_token(token)).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.delete("/tokens/authentication", response_model=MessageResponse)
def delete_authentication_tokens(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    """Invalidate every authentication token the current user holds."""
    stores: AuthStores = request.app.state.stores
    stores.tokens.delete_all_for_scope(Scope.AUTHENTICATION, current_user.id)
    return MessageResponse(message="you have been logged out of all sessions")


@router.post("/tokens/activation", response_model=MessageResponse, status_code=202)
def create_activation_token(request: Request, body: EmailRequest) -> MessageResponse:
    """E-mail a new activation token to a registered, not yet activated user."""
    stores: AuthStores = request.app.state.stores
    user = stores.users.get_by_email(body.email)
    if user is None:
        raise failed_validation({"email": "no matching email address found"})
    if user.activated:
        raise failed_validation({"email": "user has already been activated"})

    token = issue_token(stores.tokens, user.id, Scope.ACTIVATION)
    send_in_background(
        request,
        user.email,
        "token_activation.html",
        {"activation_token": token.plaintext, "ttl": token_ttl(Scope.ACTIVATION)},
    )
    return MessageResponse(message="an email will be sent to you containing activation instructions")


@router.post("/tokens/password-reset", response_model=MessageResponse, status_code=202)
def create_password_reset_token(request: Request, body: EmailRequest) -> MessageResponse:
    """E-mail a 45-minute password reset token to an activated user."""
    stores: AuthStores = request.app.state.stores
    user = stores.users.get_by_email(body.email)
    if user is None:
        raise failed_validation({"email": "no matching email address found"})
    if not user.activated:
        raise failed_validation({"email": "user account must be activated"})

    token = issue_token(stores.tokens, user.id, Scope.PASSWORD_RESET)
    send_in_background(
        request,
        user.email,
        "token_password_reset.html",
        {"password_reset_token": token.plaintext, "ttl": token_ttl(Scope.PASSWORD_RESET)},
    )
    return MessageResponse(message="an email will be sent to you containing password reset instructions")
