"""
auth/store.py -- SQLAlchemy Core persistence layer for every DashGate row.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; _row_to_user / _row_to_api_key /
_row_to_override are the mappers. Route and strategy code never touches SQL
directly.

Concurrency:
  One connection (StaticPool) guarded by a re-entrant lock. Every public
  method runs inside _tx(), which holds the lock for one transaction and
  returns fully materialised rows (fetchall) so no caller ever iterates a
  result set while issuing a write. Callers that need "read, then write"
  (API-key last_used_at) make two separate calls.

Security:
  All queries use bound parameters. No f-strings in SQL.

Timestamps are ISO 8601 UTC strings with a fixed precision, so SQL string
comparison orders them correctly (sessions.expires_at > :now).

Layer rule: no imports from api/, discovery/ or health/.

Schema migration notes:
  discovered_app_overrides.url_override and user_preferences.user_id were
  added after the first release; _ensure_column() adds them via ALTER TABLE
  on databases that predate them.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from auth.models import ApiKey, AuditEntry, User
from core.models import DiscoveredAppOverride

logger = logging.getLogger("dashgate.store")

OIDC_STATE_MAX_AGE = timedelta(minutes=10)
_AUDIT_DETAIL_MAX = 1000

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), unique=True),  # NULL allowed many times
    Column("password_hash", Text, nullable=False),  # bcrypt hash or LDAP_USER / OIDC_USER
    Column("display_name", Text, server_default=""),
    Column("groups", Text, nullable=False, server_default="[]"),  # JSON array
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token", String(64), nullable=False, unique=True),
    Column("expires_at", String(40), nullable=False),
    Column("created_at", String(40), nullable=False),
    Index("idx_sessions_expires_at", "expires_at"),
    Index("idx_sessions_user_id", "user_id"),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("key_hash", Text, nullable=False),  # bcrypt of the full key
    Column("key_prefix", String(8), nullable=False),  # first 8 chars, verbatim
    Column("user_id", Integer, ForeignKey("users.id", ondelete="SET NULL")),
    Column("username", String(255), nullable=False, server_default=""),
    Column("groups", Text, nullable=False, server_default="[]"),
    Column("permissions", Text, nullable=False, server_default='["read"]'),
    Column("expires_at", String(40)),
    Column("last_used_at", String(40)),
    Column("created_at", String(40), nullable=False),
    Index("idx_api_keys_prefix", "key_prefix"),
)

_oidc_states = Table(
    "oidc_states",
    _metadata,
    Column("state", String(64), primary_key=True),
    Column("redirect_url", Text, nullable=False, server_default="/"),
    Column("created_at", String(40), nullable=False),
    Index("idx_oidc_states_created", "created_at"),
)

_system_config = Table(
    "system_config",
    _metadata,
    Column("key", String(100), primary_key=True),
    Column("value", Text, nullable=False),
    Column("updated_at", String(40), nullable=False),
)

_encryption_keys = Table(
    "encryption_keys",
    _metadata,
    Column("key_name", String(100), primary_key=True),
    Column("key_value", Text, nullable=False),  # hex
    Column("created_at", String(40), nullable=False),
)

_audit_log = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("timestamp", String(40), nullable=False),
    Column("username", String(255), server_default=""),
    Column("action", String(100), server_default=""),
    Column("detail", Text, server_default=""),
    Column("ip", String(64), server_default=""),
    Index("idx_audit_log_timestamp", "timestamp"),
    Index("idx_audit_log_username", "username"),
)

_user_preferences = Table(
    "user_preferences",
    _metadata,
    Column("username", String(255), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE")),  # NULL for proxy/api-key users
    Column("preferences", Text, nullable=False, server_default="{}"),
    Column("updated_at", String(40), nullable=False),
)

_overrides = Table(
    "discovered_app_overrides",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("url", Text, nullable=False, unique=True),
    Column("source", String(20), nullable=False, server_default=""),
    Column("name_override", Text, server_default=""),
    Column("url_override", Text, server_default=""),
    Column("icon_override", Text, server_default=""),
    Column("description_override", Text, server_default=""),
    Column("category", Text, server_default=""),
    Column("groups", Text, nullable=False, server_default="[]"),
    Column("hidden", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)


# ---------------------------------------------------------------------------
# Connection pragmas
# ---------------------------------------------------------------------------


def _set_pragmas(dbapi_conn, connection_record) -> None:
    """Configure each new SQLite connection.

    PRAGMAs are per-connection in SQLite, so they are applied on connect.
    foreign_keys must be ON for the session/preference cascades to fire.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA cache_size=-20000")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def iso(dt: datetime) -> str:
    """Canonical timestamp form used in every column."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return iso(datetime.now(timezone.utc))


def _loads_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        logger.warning("Ignoring malformed JSON list column")
        return []
    return [str(v) for v in value] if isinstance(value, list) else []


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, sessions, API keys, OIDC states, settings rows,
    the encryption key row, the audit log, preferences and discovered-app overrides.

    Usage:
        store = CredentialStore("sqlite:////config/dashgate.db")
        uid = store.create_user(User(username="alice", password_hash=hash_password("pw")))
        user = store.get_user_by_username("alice")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = create_engine(
            db_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        event.listen(self.engine, "connect", _set_pragmas)
        self._lock = threading.RLock()
        _metadata.create_all(self.engine)
        self._ensure_column("discovered_app_overrides", "url_override", "TEXT DEFAULT ''")
        self._ensure_column("user_preferences", "user_id", "INTEGER REFERENCES users(id) ON DELETE CASCADE")

    @contextmanager
    def _tx(self) -> Iterator[Connection]:
        """Serialize one transaction on the single connection."""
        with self._lock, self.engine.begin() as conn:
            yield conn

    def _ensure_column(self, table: str, column: str, ddl: str) -> None:
        """Add a column to an existing table if a prior release created it without one.

        SQLite has no ADD COLUMN IF NOT EXISTS, so PRAGMA table_info is checked first.
        Table and column names come from literals in this module, never from input.
        """
        with self._tx() as conn:
            rows = conn.execute(text(f"PRAGMA table_info({table})")).fetchall()
            if column not in {row[1] for row in rows}:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
                logger.info("Migrated %s: added column %s", table, column)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def count_users(self) -> int:
        with self._tx() as conn:
            return conn.execute(select(func.count()).select_from(_users)).scalar() or 0

    def has_users(self) -> bool:
        return self.count_users() > 0

    def create_user(self, user: User) -> int:
        """Insert a user and return its id.

        Raises sqlalchemy.exc.IntegrityError on a duplicate username or email.
        """
        now = _now_iso()
        with self._tx() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email or None,
                    password_hash=user.password_hash,
                    display_name=user.display_name,
                    groups=json.dumps(user.groups),
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_user_by_username(self, username: str) -> User | None:
        with self._tx() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_id(self, user_id: int) -> User | None:
        with self._tx() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        with self._tx() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user_profile(self, user_id: int, email: str | None, display_name: str, groups: list[str]) -> bool:
        """Update email, display name and groups. Returns False if the user does not exist."""
        with self._tx() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    email=email or None,
                    display_name=display_name,
                    groups=json.dumps(groups),
                    updated_at=_now_iso(),
                )
            )
        return result.rowcount > 0

    def set_password_hash(self, user_id: int, password_hash: str) -> bool:
        with self._tx() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(password_hash=password_hash, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Delete a user. Sessions and preferences cascade; API keys keep their row with user_id NULL."""
        with self._tx() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def upsert_external_user(
        self, username: str, marker: str, email: str | None, display_name: str, groups: list[str]
    ) -> User:
        """Record a directory or OIDC user after a successful external login.

        The row is keyed by username. An existing row keeps its id; email,
        display name and groups are refreshed on every login.
        """
        now = _now_iso()
        stmt = sqlite_insert(_users).values(
            username=username,
            email=email or None,
            password_hash=marker,
            display_name=display_name,
            groups=json.dumps(groups),
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[_users.c.username],
            set_={
                "email": stmt.excluded.email,
                "display_name": stmt.excluded.display_name,
                "groups": stmt.excluded.groups,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        with self._tx() as conn:
            conn.execute(stmt)
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, user_id: int, token: str, expires_at: datetime) -> None:
        with self._tx() as conn:
            conn.execute(
                _sessions.insert().values(
                    user_id=user_id, token=token, expires_at=iso(expires_at), created_at=_now_iso()
                )
            )

    def get_session_user(self, token: str, now: datetime | None = None) -> User | None:
        """Return the user owning a live session token, or None.

        A session is live iff the row exists and expires_at > now.
        """
        now_iso = iso(now) if now is not None else _now_iso()
        query = (
            select(_users)
            .select_from(_sessions.join(_users, _sessions.c.user_id == _users.c.id))
            .where((_sessions.c.token == token) & (_sessions.c.expires_at > now_iso))
        )
        with self._tx() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_user(row) if row is not None else None

    def delete_session(self, token: str) -> None:
        with self._tx() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.token == token))

    def invalidate_user_sessions(self, user_id: int) -> int:
        with self._tx() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
        return result.rowcount

    def delete_expired_sessions(self, now: datetime | None = None) -> int:
        now_iso = iso(now) if now is not None else _now_iso()
        with self._tx() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= now_iso))
        return result.rowcount

    # ------------------------------------------------------------------
    # OIDC states
    # ------------------------------------------------------------------

    def save_oidc_state(self, state: str, redirect_url: str) -> None:
        with self._tx() as conn:
            conn.execute(_oidc_states.insert().values(state=state, redirect_url=redirect_url, created_at=_now_iso()))

    def consume_oidc_state(self, state: str, now: datetime | None = None) -> str | None:
        """Delete a state row and return its redirect target.

        Returns None if the state is unknown, already consumed, or older than
        OIDC_STATE_MAX_AGE. The row is removed in the same transaction as the read.
        """
        now = now or datetime.now(timezone.utc)
        with self._tx() as conn:
            row = conn.execute(_oidc_states.select().where(_oidc_states.c.state == state)).fetchone()
            if row is None:
                return None
            conn.execute(_oidc_states.delete().where(_oidc_states.c.state == state))
        if row.created_at <= iso(now - OIDC_STATE_MAX_AGE):
            return None
        return row.redirect_url

    def delete_stale_oidc_states(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        cutoff = iso(now - OIDC_STATE_MAX_AGE)
        with self._tx() as conn:
            result = conn.execute(_oidc_states.delete().where(_oidc_states.c.created_at <= cutoff))
        return result.rowcount

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def create_api_key(self, key: ApiKey) -> int:
        with self._tx() as conn:
            result = conn.execute(
                _api_keys.insert().values(
                    name=key.name,
                    key_hash=key.key_hash,
                    key_prefix=key.key_prefix,
                    user_id=key.user_id,
                    username=key.username,
                    groups=json.dumps(key.groups),
                    permissions=json.dumps(key.permissions),
                    expires_at=key.expires_at,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def list_api_keys(self) -> list[ApiKey]:
        """All keys, newest first. key_hash is populated; routes must not expose it."""
        with self._tx() as conn:
            rows = conn.execute(_api_keys.select().order_by(_api_keys.c.created_at.desc())).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def list_api_keys_by_prefix(self, prefix: str) -> list[ApiKey]:
        """Candidate rows for one 8-character prefix, oldest first, fully collected."""
        with self._tx() as conn:
            rows = conn.execute(
                _api_keys.select().where(_api_keys.c.key_prefix == prefix).order_by(_api_keys.c.id)
            ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def touch_api_key(self, key_id: int) -> None:
        """Stamp last_used_at. Fire-and-forget: failures are logged only."""
        try:
            with self._tx() as conn:
                conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(last_used_at=_now_iso()))
        except SQLAlchemyError:
            logger.warning("Failed to update last_used_at for API key %d", key_id, exc_info=True)

    def delete_api_key(self, key_id: int) -> bool:
        with self._tx() as conn:
            result = conn.execute(_api_keys.delete().where(_api_keys.c.id == key_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # System config rows
    # ------------------------------------------------------------------

    def load_system_config(self) -> dict[str, str]:
        with self._tx() as conn:
            rows = conn.execute(select(_system_config.c.key, _system_config.c.value)).fetchall()
        return {r.key: r.value for r in rows}

    def save_system_config(self, values: dict[str, str]) -> None:
        """Upsert every key in one transaction. Keys absent from values are left alone."""
        if not values:
            return
        now = _now_iso()
        with self._tx() as conn:
            for key, value in values.items():
                stmt = sqlite_insert(_system_config).values(key=key, value=value, updated_at=now)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[_system_config.c.key],
                    set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
                )
                conn.execute(stmt)

    # ------------------------------------------------------------------
    # Encryption key row
    # ------------------------------------------------------------------

    def get_encryption_key(self, name: str) -> str | None:
        with self._tx() as conn:
            row = conn.execute(
                select(_encryption_keys.c.key_value).where(_encryption_keys.c.key_name == name)
            ).fetchone()
        return row.key_value if row is not None else None

    def put_encryption_key(self, name: str, hex_value: str) -> None:
        stmt = sqlite_insert(_encryption_keys).values(key_name=name, key_value=hex_value, created_at=_now_iso())
        stmt = stmt.on_conflict_do_update(
            index_elements=[_encryption_keys.c.key_name],
            set_={"key_value": stmt.excluded.key_value},
        )
        with self._tx() as conn:
            conn.execute(stmt)

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def log_audit(self, username: str, action: str, detail: str = "", ip: str = "") -> None:
        """Record an admin action. Never raises: a failed audit write must not block the action."""
        try:
            with self._tx() as conn:
                conn.execute(
                    _audit_log.insert().values(
                        timestamp=_now_iso(),
                        username=username,
                        action=action,
                        detail=(detail or "")[:_AUDIT_DETAIL_MAX],
                        ip=ip,
                    )
                )
        except SQLAlchemyError:
            logger.error("Failed to write audit log entry (%s by %s)", action, username, exc_info=True)

    def get_audit_logs(self, limit: int = 100) -> list[AuditEntry]:
        """Most recent entries first."""
        if limit <= 0:
            limit = 100
        with self._tx() as conn:
            rows = conn.execute(_audit_log.select().order_by(_audit_log.c.id.desc()).limit(limit)).fetchall()
        return [
            AuditEntry(
                id=r.id,
                timestamp=r.timestamp,
                username=r.username or "",
                action=r.action or "",
                detail=r.detail or "",
                ip=r.ip or "",
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # User preferences
    # ------------------------------------------------------------------

    def get_preferences(self, username: str) -> dict:
        with self._tx() as conn:
            row = conn.execute(
                select(_user_preferences.c.preferences).where(_user_preferences.c.username == username)
            ).fetchone()
        if row is None:
            return {}
        try:
            value = json.loads(row.preferences)
        except ValueError:
            return {}
        return value if isinstance(value, dict) else {}

    def save_preferences(self, username: str, preferences: dict, user_id: int | None = None) -> None:
        stmt = sqlite_insert(_user_preferences).values(
            username=username,
            user_id=user_id,
            preferences=json.dumps(preferences),
            updated_at=_now_iso(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[_user_preferences.c.username],
            set_={
                "user_id": stmt.excluded.user_id,
                "preferences": stmt.excluded.preferences,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        with self._tx() as conn:
            conn.execute(stmt)

    # ------------------------------------------------------------------
    # Discovered-app overrides
    # ------------------------------------------------------------------

    def list_discovered_overrides(self) -> list[DiscoveredAppOverride]:
        with self._tx() as conn:
            rows = conn.execute(_overrides.select().order_by(_overrides.c.id)).fetchall()
        return [_row_to_override(r) for r in rows]

    def save_discovered_override(self, override: DiscoveredAppOverride) -> DiscoveredAppOverride:
        """Insert or update the override for override.url and return the stored row."""
        now = _now_iso()
        stmt = sqlite_insert(_overrides).values(
            url=override.url,
            source=override.source,
            name_override=override.name_override,
            url_override=override.url_override,
            icon_override=override.icon_override,
            description_override=override.description_override,
            category=override.category,
            groups=json.dumps(override.groups),
            hidden=1 if override.hidden else 0,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[_overrides.c.url],
            set_={
                col: getattr(stmt.excluded, col)
                for col in (
                    "source",
                    "name_override",
                    "url_override",
                    "icon_override",
                    "description_override",
                    "category",
                    "groups",
                    "hidden",
                    "updated_at",
                )
            },
        )
        with self._tx() as conn:
            conn.execute(stmt)
            row = conn.execute(_overrides.select().where(_overrides.c.url == override.url)).fetchone()
        return _row_to_override(row)

    def delete_discovered_override(self, url: str) -> bool:
        with self._tx() as conn:
            result = conn.execute(_overrides.delete().where(_overrides.c.url == url))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep_expired(self, now: datetime | None = None) -> tuple[int, int]:
        """Delete expired sessions and stale OIDC states. Returns (sessions, states) removed."""
        sessions = self.delete_expired_sessions(now)
        states = self.delete_stale_oidc_states(now)
        if sessions:
            logger.info("Cleaned up %d expired sessions", sessions)
        return sessions, states

    def close(self) -> None:
        self.engine.dispose()


def open_store(db_path: str) -> CredentialStore:
    """Open the on-disk store: directory 0700, database file 0600.

    Errors propagate; failing to open the database is fatal at startup.
    """
    path = Path(db_path)
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    store = CredentialStore(f"sqlite:///{path}")
    try:
        os.chmod(path, 0o600)
    except OSError:
        logger.warning("Could not set database file permissions on %s", path)
    logger.info("Database initialized at %s", path)
    return store


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        display_name=row.display_name or "",
        groups=_loads_list(row.groups),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        name=row.name,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        user_id=row.user_id,
        username=row.username or "",
        groups=_loads_list(row.groups),
        permissions=_loads_list(row.permissions),
        expires_at=row.expires_at,
        last_used_at=row.last_used_at,
        created_at=row.created_at,
    )


def _row_to_override(row) -> DiscoveredAppOverride:
    return DiscoveredAppOverride(
        id=row.id,
        url=row.url,
        source=row.source or "",
        name_override=row.name_override or "",
        url_override=row.url_override or "",
        icon_override=row.icon_override or "",
        description_override=row.description_override or "",
        category=row.category or "",
        groups=_loads_list(row.groups),
        hidden=bool(row.hidden),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
