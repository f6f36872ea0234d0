"""
auth/store.py -- SQLAlchemy Core persistence layer for local accounts.

Pattern: Repository + Data Mapper (same as credentials/store.py).
LocalUserStore is the repository; _row_to_user / _row_to_api_key are the
mappers. Route and dependency code never touches SQL directly.

The tables live in the same database as the credential store. They are
named local_users / api_keys so they do not collide with the credential
store's users table, which tracks VPN users whatever backend authenticated
them.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or credentials/.
"""

from __future__ import annotations

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

from auth.models import ApiKey, User
from core.config import now_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "local_users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("name", String(100), nullable=False),
    Column("key_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("key_prefix", String(12), nullable=False),  # first 12 chars, display only
    Column("created_at", String(32), nullable=False),
    Column("last_used", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode per connection (PRAGMAs are not pooled)."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class LocalUserStore:
    """Repository for User and ApiKey entities.

    Usage:
        store = LocalUserStore("sqlite:///vpnwarden.db")
        store.create_user(User(username="admin", role="admin", hashed_password=hash_password("secret")))
        user = store.get_by_username("admin")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    created_at=now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def delete_user(self, username: str) -> bool:
        """Delete a local account and deactivate its API keys.

        Returns False if the username has no local account, which is normal
        for users authenticated by another backend.
        """
        user = self.get_by_username(username)
        if user is None:
            return False
        with self.engine.connect() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.user_id == user.id).values(is_active=0))
            conn.execute(_users.delete().where(_users.c.id == user.id))
            conn.commit()
        return True

    # ------------------------------------------------------------------
    # API key queries
    # ------------------------------------------------------------------

    def get_api_keys(self, user_id: int) -> list[ApiKey]:
        """Return all active API keys for a user (newest first)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _api_keys.select()
                .where((_api_keys.c.user_id == user_id) & (_api_keys.c.is_active == 1))
                .order_by(_api_keys.c.created_at.desc())
            ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def create_api_key(self, api_key: ApiKey) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.insert().values(
                    user_id=api_key.user_id,
                    name=api_key.name,
                    key_hash=api_key.key_hash,
                    key_prefix=api_key.key_prefix,
                    created_at=now_iso(),
                    is_active=1,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_api_key_by_hash(self, key_hash: str) -> ApiKey | None:
        """Look up an active API key by its HMAC hash. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _api_keys.select().where((_api_keys.c.key_hash == key_hash) & (_api_keys.c.is_active == 1))
            ).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def update_api_key_last_used(self, key_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(last_used=now_iso()))
            conn.commit()

    def revoke_api_key(self, key_id: int, user_id: int) -> bool:
        """Deactivate a key. Both key_id and owner must match (IDOR check)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.update()
                .where((_api_keys.c.id == key_id) & (_api_keys.c.user_id == user_id))
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password,
        role=row.role,
        created_at=row.created_at,
        is_active=bool(row.is_active),
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        created_at=row.created_at,
        last_used=row.last_used,
        is_active=bool(row.is_active),
    )
