"""
auth/errors.py -- Exception taxonomy for credential, token, and store failures.

HashingFailure / EntropyFailure are server faults: fatal to the request,
never retried, surfaced to clients as a generic 500.

InvalidOrExpiredToken deliberately carries no cause. Unknown hash, wrong
scope, and expiry are the same failure from the outside so a client cannot
discover which tokens exist.

EditConflictError / DuplicateEmailError come from the store and are
recoverable by the client (retry, or pick another e-mail).

Layer rule: stdlib only.
"""


class AuthError(Exception):
    """Base class for every error raised by the auth package."""


class HashingFailure(AuthError):
    """The password hashing primitive failed (oversized input, bad stored hash)."""


class EntropyFailure(AuthError):
    """The OS random source was unavailable while minting a token."""


class InvalidOrExpiredToken(AuthError):
    """No live token matches the presented plaintext and scope."""

    def __init__(self) -> None:
        super().__init__("invalid or expired token")


class EditConflictError(AuthError):
    """A version-checked update lost a race with a concurrent writer."""


class DuplicateEmailError(AuthError):
    """A user with this e-mail address already exists."""
