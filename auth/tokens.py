"""
auth/tokens.py -- Scoped bearer token minting, hashing, and validation.

Security design decisions:
  Entropy: secrets.token_bytes(16) gives 128 bits. The bytes are base32
       encoded without padding (A-Z, 2-7), giving a 26-character token that is
       URL-safe and has no easily confused characters.

  Storage: only SHA-256(plaintext) is persisted. The digest is deterministic,
       so lookup is a single indexed equality match. bcrypt's slowness is not
       needed here because the input is high-entropy random data.

  TTL policy: the lifetime comes from the scope via Settings.ttl_table(); call
       sites cannot choose one. See core/config.py for the per-scope ceilings.

  Validation: hash, scope, and expiry are checked together by the store.
       Every failure raises the same InvalidOrExpiredToken, and is logged at
       DEBUG without the plaintext.

Layer rule: no imports from api/ or mailer/. Import from core/ is allowed.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from auth.errors import EntropyFailure, InvalidOrExpiredToken
from auth.models import Scope, Token
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import TokenStore

logger = logging.getLogger("tokenward.auth")

TOKEN_BYTES = 16
# len(base32(16 bytes)) with padding stripped.
TOKEN_LENGTH = 26


def token_ttl(scope: Scope) -> timedelta:
    """Return the configured lifetime for tokens of the given scope."""
    return get_settings().ttl_table()[Scope(scope).value]


def hash_token(plaintext: str) -> str:
    """Return the hex SHA-256 digest used as the token's storage key."""
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


def generate_token(user_id: int, scope: Scope, now: datetime | None = None) -> Token:
    """Mint a new token for user_id. Nothing is persisted here.

    Raises EntropyFailure if the OS random source is unavailable.
    """
    scope = Scope(scope)
    try:
        random_bytes = secrets.token_bytes(TOKEN_BYTES)
    except (OSError, NotImplementedError) as exc:
        logger.error("Secure random source unavailable while minting %s token", scope.value)
        raise EntropyFailure("secure random source unavailable") from exc

    plaintext = base64.b32encode(random_bytes).decode("ascii").rstrip("=")
    issued_at = now or datetime.now(timezone.utc)
    return Token(
        plaintext=plaintext,
        hash=hash_token(plaintext),
        user_id=user_id,
        expiry=issued_at + token_ttl(scope),
        scope=scope,
    )


def issue_token(store: TokenStore, user_id: int, scope: Scope, now: datetime | None = None) -> Token:
    """Mint a token, persist its hash, and return it with the plaintext attached.

    The returned plaintext is the only copy. Hand it to the client (or an
    e-mail) and drop it.
    """
    token = generate_token(user_id, scope, now=now)
    store.insert(token)
    logger.info("Issued %s token for user %s (expires %s)", token.scope.value, user_id, token.expiry.isoformat())
    return token


def validate_token(store: TokenStore, plaintext: str, scope: Scope, now: datetime | None = None) -> User:
    """Return the user owning a live token of this scope.

    Raises InvalidOrExpiredToken when no such token exists. That covers an
    unknown plaintext, a token minted for another scope, and an expired one.
    """
    scope = Scope(scope)
    user = store.get_user_for_token(scope, hash_token(plaintext), now or datetime.now(timezone.utc))
    if user is None:
        logger.debug("Rejected %s token", scope.value)
        raise InvalidOrExpiredToken()
    return user

