"""
api/routes/v1/users.py -- Account lifecycle endpoints.

Routes:
  POST /api/v1/users            -- register; e-mails an activation token (202)
  PUT  /api/v1/users/activated  -- redeem an activation token
  PUT  /api/v1/users/password   -- redeem a password reset token with a new password
  GET  /api/v1/users/me         -- current user (requires auth and an activated account)

Single-use tokens:
  Activation and reset tokens are validated, the user row is updated with a
  version check, and only then are all tokens of that scope for the user
  deleted. An EditConflictError from the update leaves the tokens in place so
  the client can retry; api/main.py maps it to 409.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.helpers import failed_validation, send_in_background
from api.models import (
    ActivateRequest,
    MessageResponse,
    PasswordResetRequest,
    RegisterRequest,
    UserEnvelope,
    UserResponse,
)
from auth.dependencies import get_activated_user
from auth.errors import DuplicateEmailError, InvalidOrExpiredToken
from auth.models import Scope, User
from auth.passwords import hash_password
from auth.store import AuthStores
from auth.tokens import issue_token, token_ttl, validate_token

router = APIRouter()


@router.post("/users", response_model=UserEnvelope, status_code=202)
def register_user(request: Request, body: RegisterRequest) -> UserEnvelope:
    """Create an inactive account and e-mail the activation token.

    202 rather than 201: the welcome e-mail is still in flight when the
    response is written.
    """
    stores: AuthStores = request.app.state.stores
    user = User(name=body.name, email=body.email, hashed_password=hash_password(body.password))
    try:
        stores.users.insert(user)
    except DuplicateEmailError as exc:
        raise failed_validation({"email": "a user with this email address already exists"}) from exc

    token = issue_token(stores.tokens, user.id, Scope.ACTIVATION)
    send_in_background(
        request,
        user.email,
        "user_welcome.html",
        {"activation_token": token.plaintext, "user_id": user.id, "ttl": token_ttl(Scope.ACTIVATION)},
    )
    return UserEnvelope(user=UserResponse.from_user(user))


@router.put("/users/activated", response_model=UserEnvelope)
def activate_user(request: Request, body: ActivateRequest) -> UserEnvelope:
    stores: AuthStores = request.app.state.stores
    try:
        user = validate_token(stores.tokens, body.token, Scope.ACTIVATION)
    except InvalidOrExpiredToken as exc:
        raise failed_validation({"token": "invalid or expired activation token"}) from exc

    user.activated = True
    stores.users.update(user)
    stores.tokens.delete_all_for_scope(Scope.ACTIVATION, user.id)
    return UserEnvelope(user=UserResponse.from_user(user))


@router.put("/users/password", response_model=MessageResponse)
def reset_password(request: Request, body: PasswordResetRequest) -> MessageResponse:
    stores: AuthStores = request.app.state.stores
    try:
        user = validate_token(stores.tokens, body.token, Scope.PASSWORD_RESET)
    except InvalidOrExpiredToken as exc:
        raise failed_validation({"token": "invalid or expired password reset token"}) from exc

    user.hashed_password = hash_password(body.password)
    stores.users.update(user)
    stores.tokens.delete_all_for_scope(Scope.PASSWORD_RESET, user.id)
    return MessageResponse(message="your password was successfully reset")


@router.get("/users/me", response_model=UserEnvelope)
def me(current_user: User = Depends(get_activated_user)) -> UserEnvelope:
    """Return the activated account that owns the presented authentication token."""
    return UserEnvelope(user=UserResponse.from_user(current_user))
