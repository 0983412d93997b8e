"""
auth/passwords.py -- Password hashing and constant-effort login checks.

Security design decisions:
  bcrypt directly (no passlib wrapper). The cost factor comes from
  Settings.bcrypt_cost so tests can run at the minimum (4) while production
  stays at 12. The CPU cost is the point: do not cache or short-circuit.

  bcrypt only looks at the first 72 bytes of input. Newer bcrypt releases
  raise on longer input, older ones truncate silently. hash_password() checks
  the length itself so the behaviour is the same on every release: longer
  input is a HashingFailure, never a silent truncation.

  check_password() returns False for a wrong password and raises
  HashingFailure only when the stored hash is malformed. Mismatches are an
  expected outcome and are not logged.

  authenticate_user() always performs exactly one bcrypt comparison. For an
  unknown e-mail it compares against _dummy_hash() so response time does not
  reveal whether an account exists.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import TYPE_CHECKING

import bcrypt

from auth.errors import HashingFailure
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("tokenward.auth")

MAX_PASSWORD_BYTES = 72


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the given plaintext password."""
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise HashingFailure(f"password exceeds {MAX_PASSWORD_BYTES} bytes")
    try:
        salt = bcrypt.gensalt(rounds=get_settings().bcrypt_cost)
        return bcrypt.hashpw(encoded, salt).decode("utf-8")
    except (ValueError, OSError, NotImplementedError) as exc:
        logger.error("bcrypt hashing failed: %s", type(exc).__name__)
        raise HashingFailure("password hashing failed") from exc


def check_password(hashed: str, plain: str) -> bool:
    """Return True if plain matches the stored bcrypt hash.

    Raises HashingFailure if hashed is not a valid bcrypt hash.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        # Could never have been stored by hash_password().
        return False
    try:
        return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
    except ValueError as exc:
        raise HashingFailure("stored password hash is malformed") from exc


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    # Built on first use at the configured cost, so the dummy comparison
    # costs the same as a real one.
    return hash_password("tokenward_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Return the user for a correct e-mail/password pair, otherwise None.

    Runs bcrypt whether or not the user exists:
    - Unknown e-mail: bcrypt runs against the dummy hash (same cost)
    - Wrong password: bcrypt runs against the real hash (same cost)
    """
    user = store.get_by_email(email)
    if user is None:
        check_password(_dummy_hash(), password)
        return None
    if not check_password(user.hashed_password, password):
        return None
    return user
