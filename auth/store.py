"""
auth/store.py -- SQLAlchemy Core persistence layer for users and tokens.

Pattern: Repository + Data Mapper.
UserStore and TokenStore are the repositories; _row_to_user is the mapper.
Route and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Tokens are stored by hash only. get_user_for_token() checks hash, scope,
  and expiry in one WHERE clause, so the three ways a token can fail are
  indistinguishable to the caller.

  E-mail uniqueness is case-insensitive via a unique email_key column holding
  email.casefold(). The folding happens in Python, not in SQL, because
  SQLite's lower() only folds ASCII letters.

Concurrency:
  UserStore.update() is optimistic. It writes only when the stored version
  still matches the in-memory one and bumps it; a lost race raises
  EditConflictError for the client to retry.

DB path: auth/tokenward.db by default (Settings.db_url).

Layer rule: no imports from api/ or mailer/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateEmailError, EditConflictError
from auth.models import Scope, Token, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(500), nullable=False),
    Column("email", String(500), nullable=False),
    Column("email_key", String(500), nullable=False, unique=True),  # _email_key(email)
    Column("hashed_password", Text, nullable=False),
    Column("activated", Boolean, nullable=False, default=False),
    Column("version", Integer, nullable=False, default=1),
    Column("created_at", String(32), nullable=False),
)

_tokens = Table(
    "tokens",
    _metadata,
    Column("hash", String(64), primary_key=True),  # SHA-256 hex of the plaintext
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("expiry", DateTime, nullable=False),  # naive UTC
    Column("scope", String(32), nullable=False),
)

Index("ix_tokens_user_scope", _tokens.c.user_id, _tokens.c.scope)


# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys on every new SQLite connection.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _email_key(email: str) -> str:
    """Case-insensitive lookup key for an address, Unicode letters included."""
    return email.casefold()


def _to_db_time(dt: datetime) -> datetime:
    """Normalize to naive UTC, the form stored in the expiry column."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def create_db_engine(db_url: str) -> Engine:
    """Create an engine and make sure the schema exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def insert(self, user: User) -> int:
        """Insert a new user, fill in id/version/created_at, and return the id.

        Raises DuplicateEmailError if the e-mail (case-insensitively) or the
        explicit id already exists.
        """
        created_at = _now_iso()
        # An explicit id is honoured (imports, fixtures); otherwise autoincrement.
        values: dict = {} if user.id is None else {"id": user.id}
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _users.insert().values(
                        **values,
                        name=user.name,
                        email=user.email,
                        email_key=_email_key(user.email),
                        hashed_password=user.hashed_password,
                        activated=user.activated,
                        version=1,
                        created_at=created_at,
                    )
                )
        except IntegrityError as exc:
            raise DuplicateEmailError(user.email) from exc
        user.id = result.inserted_primary_key[0]
        user.version = 1
        user.created_at = created_at
        return user.id

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by e-mail, ignoring case. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email_key == _email_key(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update(self, user: User) -> None:
        """Write name, email, password hash, and activation state back.

        The WHERE clause pins both id and version. Zero affected rows means
        another writer got there first (or the row is gone): EditConflictError.
        On success user.version is advanced to match the stored row.
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _users.update()
                    .where((_users.c.id == user.id) & (_users.c.version == user.version))
                    .values(
                        name=user.name,
                        email=user.email,
                        email_key=_email_key(user.email),
                        hashed_password=user.hashed_password,
                        activated=user.activated,
                        version=_users.c.version + 1,
                    )
                )
        except IntegrityError as exc:
            raise DuplicateEmailError(user.email) from exc
        if result.rowcount == 0:
            raise EditConflictError(f"user {user.id} was modified concurrently")
        user.version += 1


class TokenStore:
    """Repository for Token records. Only hashes are persisted."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def insert(self, token: Token) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _tokens.insert().values(
                    hash=token.hash,
                    user_id=token.user_id,
                    expiry=_to_db_time(token.expiry),
                    scope=token.scope.value,
                )
            )

    def get_user_for_token(self, scope: Scope, token_hash: str, now: datetime) -> User | None:
        """Return the owner of a live token matching hash and scope, or None.

        Hash, scope, and expiry are checked together in a single indexed query.
        """
        query = (
            _users.select()
            .select_from(_users.join(_tokens, _tokens.c.user_id == _users.c.id))
            .where(
                (_tokens.c.hash == token_hash)
                & (_tokens.c.scope == scope.value)
                & (_tokens.c.expiry > _to_db_time(now))
            )
        )
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_user(row) if row is not None else None

    def delete_all_for_scope(self, scope: Scope, user_id: int) -> int:
        """Delete every token of one scope for one user. Returns rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _tokens.delete().where((_tokens.c.scope == scope.value) & (_tokens.c.user_id == user_id))
            )
        return result.rowcount

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete all tokens whose expiry has passed. Returns rows removed."""
        cutoff = _to_db_time(now or datetime.now(timezone.utc))
        with self.engine.begin() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.expiry <= cutoff))
        return result.rowcount


@dataclass
class AuthStores:
    """The user and token repositories sharing one engine."""

    engine: Engine
    users: UserStore
    tokens: TokenStore

    def close(self) -> None:
        self.engine.dispose()


def open_stores(db_url: str) -> AuthStores:
    """Open (and if needed create) the auth database at db_url.

    Usage:
        stores = open_stores("sqlite:///auth.db")
        stores.users.insert(User(name="Ada", email="ada@example.com", hashed_password=hash_password("pa55word")))
        stores.close()
    """
    engine = create_db_engine(db_url)
    return AuthStores(engine=engine, users=UserStore(engine), tokens=TokenStore(engine))


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        hashed_password=row.hashed_password,
        activated=bool(row.activated),
        version=row.version,
        created_at=row.created_at,
    )
