"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work; these only own the domain shape.

Layer rule: no imports from api/, core/, or mailer/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Scope(str, Enum):
    """What a token may be used for. A token only validates for its own scope."""

    AUTHENTICATION = "authentication"
    ACTIVATION = "activation"
    PASSWORD_RESET = "password-reset"


@dataclass
class User:
    """A registered account.

    version is the optimistic-concurrency counter. UserStore.update() only
    writes when the stored version still matches, then bumps it.

    id is None before the record is written to the database.
    """

    name: str
    email: str
    hashed_password: str
    activated: bool = False
    id: int | None = None
    version: int = 1
    created_at: str = ""  # ISO 8601, set by store on insert


@dataclass
class Token:
    """A scoped bearer token.

    plaintext exists only on the instance returned at issuance. The store
    persists hash (SHA-256 hex of plaintext) and never sees the plaintext.
    """

    plaintext: str
    hash: str
    user_id: int
    expiry: datetime  # timezone-aware UTC
    scope: Scope

    def __repr__(self) -> str:
        return f"Token(user_id={self.user_id!r}, scope={self.scope.value!r}, expiry={self.expiry.isoformat()!r})"
