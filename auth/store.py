"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_api_key are the mappers.
Route, dependency and tracker code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Jira tokens arrive here already encrypted (auth/codec.py). The store never
  sees plaintext tokens and never decrypts.

  email is UNIQUE at the storage level. A concurrent duplicate signup fails
  with IntegrityError, which create_user() maps to EmailTaken -- there is no
  check-then-insert window.

Each user owns at most one Jira connection, so the connection lives in
nullable jira_* columns on the users row. "Disconnected" means
jira_cloud_id IS NULL.

Layer rule: no imports from api/ or tracker/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import ApiKey, TrackerConnection, User
from core.config import get_settings
from core.errors import EmailTaken

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("email", String(320), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    # Jira connection -- all NULL while disconnected
    Column("jira_cloud_id", String(64)),
    Column("jira_site_url", Text),
    Column("jira_access_token", Text),  # Fernet ciphertext
    Column("jira_refresh_token", Text),  # Fernet ciphertext
    Column("jira_expires_at", BigInteger),  # epoch milliseconds
    Column("jira_connected_at", String(32)),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("key_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("key_prefix", String(12), nullable=False),  # display only
    Column("created_at", String(32), nullable=False),
    Column("last_used_at", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_TRACKER_NULLS = {
    "jira_cloud_id": None,
    "jira_site_url": None,
    "jira_access_token": None,
    "jira_refresh_token": None,
    "jira_expires_at": None,
    "jira_connected_at": None,
}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an Engine with the SQLite settings every store in this package shares."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, TrackerConnection and ApiKey entities.

    Usage:
        store = UserStore()
        uid = store.create_user(User(name="Ada", email="ada@example.com", hashed_password=hash_password("s3cret")))
        user = store.get_by_email("ada@example.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises EmailTaken if the (lowercased) email already exists. The UNIQUE
        constraint decides, so two concurrent signups cannot both succeed.
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.insert().values(
                        name=user.name,
                        email=user.email.strip().lower(),
                        hashed_password=user.hashed_password,
                        created_at=_now_iso(),
                    )
                )
                conn.commit()
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise EmailTaken() from exc

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Tracker connection
    # ------------------------------------------------------------------

    def get_tracker_connection(self, user_id: int) -> TrackerConnection | None:
        """Return the user's Jira connection, or None if disconnected (or no such user)."""
        user = self.get_by_id(user_id)
        return user.tracker if user is not None else None

    def set_tracker_connection(self, user_id: int, connection: TrackerConnection) -> bool:
        """Replace the user's Jira connection wholesale. Returns False if the user is gone."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    jira_cloud_id=connection.cloud_id,
                    jira_site_url=connection.site_url,
                    jira_access_token=connection.encrypted_access_token,
                    jira_refresh_token=connection.encrypted_refresh_token,
                    jira_expires_at=connection.expires_at,
                    jira_connected_at=connection.connected_at,
                )
            )
            conn.commit()
        return result.rowcount > 0

    def update_tracker_tokens(
        self,
        user_id: int,
        encrypted_access_token: str,
        encrypted_refresh_token: str,
        expires_at: int,
    ) -> bool:
        """Persist refreshed tokens only.

        cloud_id, site_url and connected_at are deliberately not in the SET
        clause. The WHERE clause requires a live connection so a refresh that
        races a disconnect cannot resurrect it.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.jira_cloud_id.is_not(None)))
                .values(
                    jira_access_token=encrypted_access_token,
                    jira_refresh_token=encrypted_refresh_token,
                    jira_expires_at=expires_at,
                )
            )
            conn.commit()
        return result.rowcount > 0

    def clear_tracker_connection(self, user_id: int) -> None:
        """Remove the user's Jira connection. Safe to call when already disconnected."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(**_TRACKER_NULLS))
            conn.commit()

    # ------------------------------------------------------------------
    # API key queries
    # ------------------------------------------------------------------

    def list_api_keys(self, user_id: int) -> list[ApiKey]:
        """Return all API keys for a user (newest first)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _api_keys.select()
                .where(_api_keys.c.user_id == user_id)
                .order_by(_api_keys.c.created_at.desc(), _api_keys.c.id.desc())
            ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def count_active_api_keys(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_api_keys)
                .where((_api_keys.c.user_id == user_id) & (_api_keys.c.is_active == 1))
            ).scalar()
        return result or 0

    def create_api_key(self, api_key: ApiKey) -> ApiKey:
        """Insert a new API key record and return it with id and created_at set."""
        created_at = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.insert().values(
                    user_id=api_key.user_id,
                    name=api_key.name,
                    key_hash=api_key.key_hash,
                    key_prefix=api_key.key_prefix,
                    created_at=created_at,
                    is_active=1,
                )
            )
            conn.commit()
        api_key.id = result.inserted_primary_key[0]
        api_key.created_at = created_at
        api_key.is_active = True
        return api_key

    def get_api_key_by_hash(self, key_hash: str) -> ApiKey | None:
        """Look up an active API key by its HMAC hash. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _api_keys.select().where((_api_keys.c.key_hash == key_hash) & (_api_keys.c.is_active == 1))
            ).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def update_api_key_last_used(self, key_id: int) -> None:
        """Stamp last_used_at on a key after a successful API authentication."""
        with self.engine.connect() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(last_used_at=_now_iso()))
            conn.commit()

    def delete_api_key(self, key_id: int, user_id: int) -> bool:
        """Delete a key. user_id is checked in the WHERE clause to prevent IDOR.

        Returns True if a key was deleted, False if not found or wrong owner --
        the two cases are indistinguishable to the caller.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.delete().where((_api_keys.c.id == key_id) & (_api_keys.c.user_id == user_id))
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    tracker = None
    if row.jira_cloud_id is not None:
        tracker = TrackerConnection(
            cloud_id=row.jira_cloud_id,
            site_url=row.jira_site_url,
            encrypted_access_token=row.jira_access_token,
            encrypted_refresh_token=row.jira_refresh_token,
            expires_at=int(row.jira_expires_at or 0),
            connected_at=row.jira_connected_at,
        )
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        hashed_password=row.hashed_password,
        created_at=row.created_at,
        tracker=tracker,
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        created_at=row.created_at,
        last_used_at=row.last_used_at,
        is_active=bool(row.is_active),
    )
