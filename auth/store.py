"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository; the
_row_to_* functions are the mappers. Services never touch SQL directly.

Concurrency: the store is shared by every request thread and does no
in-process locking. Correctness relies on single-statement atomicity:
  - rotate_session_tokens() is a compare-and-swap on (is_active, old refresh
    hash), so two refreshes racing on one refresh token cannot both win and a
    logout that lands first makes the rotation a no-op.
  - consume_reset_token() flips used_at/is_active only while the token is
    still unused, active and unexpired; exactly one concurrent caller sees
    rowcount == 1.
  - deactivate_user_sessions() is one UPDATE over all of a user's sessions.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Raw tokens are never stored -- only SHA-256 hashes.

Failure mapping: every SQLAlchemyError is logged with the operation name and
re-raised as core.errors.InternalError. A duplicate (tenant_id, email) on
create_user becomes ConflictError.

Email uniqueness is a partial unique index over non-deleted rows, so a
soft-deleted account does not block re-registration with the same email.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import functools
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
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
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import ActivityLog, PasswordResetToken, Session, User, utcnow
from core.errors import ConflictError, InternalError

logger = logging.getLogger("tenantgate.auth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'tenantgate_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(36), nullable=False, index=True),
    Column("email", String(255), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("display_name", String(255), nullable=False),
    Column("phone", String(20), nullable=False, server_default=""),
    Column("role", String(20), nullable=False, server_default="viewer"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    Column("deleted_at", String(40)),
)

Index(
    "uq_users_tenant_email_live",
    _users.c.tenant_id,
    _users.c.email,
    unique=True,
    sqlite_where=_users.c.deleted_at.is_(None),
    postgresql_where=_users.c.deleted_at.is_(None),
)
Index("ix_users_email", _users.c.email)

_sessions = Table(
    "user_sessions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("tenant_id", String(36), nullable=False, index=True),
    Column("session_id", String(64), nullable=False, unique=True),
    Column("token_hash", String(64), nullable=False, index=True),
    Column("refresh_token_hash", String(64), nullable=False, index=True),
    Column("device_info", Text, nullable=False, server_default=""),
    Column("ip_address", String(45), nullable=False, server_default=""),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("expires_at", String(40), nullable=False, index=True),
    Column("last_activity", String(40), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("tenant_id", String(36), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("email", String(255), nullable=False),
    Column("expires_at", String(40), nullable=False, index=True),
    Column("used_at", String(40)),
    Column("ip_address", String(45), nullable=False, server_default=""),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(40), nullable=False, index=True),
)

_activity = Table(
    "activity_logs",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), index=True),
    Column("tenant_id", String(36), nullable=False, index=True),
    Column("action", String(100), nullable=False, index=True),
    Column("resource_type", String(100), nullable=False),
    Column("resource_id", String(36)),
    Column("old_values", Text),
    Column("new_values", Text),
    Column("ip_address", String(45), nullable=False, server_default=""),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("session_id", String(64), nullable=False, server_default=""),
    Column("success", Integer, nullable=False, server_default="1"),
    Column("error_message", Text, nullable=False, server_default=""),
    Column("created_at", String(40), nullable=False, index=True),
)

_USER_MUTABLE_FIELDS = {"display_name", "phone", "password_hash", "role", "is_active"}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases ignore the pragma.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    # Fixed-width microsecond form keeps lexicographic order == time order,
    # which the expiry comparisons in SQL rely on.
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _new_id() -> str:
    return str(uuid.uuid4())


def _store_op(fn):
    """Map SQLAlchemy failures to InternalError with a logged context line."""

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except SQLAlchemyError as exc:
            logger.error("credential store %s failed: %s", fn.__name__, exc)
            raise InternalError("Credential store unavailable.") from exc

    return wrapper


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User, Session, PasswordResetToken and ActivityLog records.

    Usage:
        store = CredentialStore()
        user_id = store.create_user(User(tenant_id=t, email="a@b.io", password_hash=h, display_name="A"))
        user = store.get_user(user_id)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @_store_op
    def create_user(self, user: User) -> str:
        """Insert a new user and return its id.

        Raises ConflictError if a non-deleted user with the same email already
        exists in the tenant -- the partial unique index is the final arbiter
        when two registrations race past the service-level existence check.
        """
        now = _iso(utcnow())
        user_id = user.id or _new_id()
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _users.insert().values(
                        id=user_id,
                        tenant_id=user.tenant_id,
                        email=user.email,
                        password_hash=user.password_hash,
                        display_name=user.display_name,
                        phone=user.phone or "",
                        role=user.role,
                        is_active=1 if user.is_active else 0,
                        created_at=now,
                        updated_at=now,
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise ConflictError(f"user with email {user.email} already exists", title="User already exists") from exc
        return user_id

    @_store_op
    def get_user(self, user_id: str, include_deleted: bool = False) -> User | None:
        query = _users.select().where(_users.c.id == user_id)
        if not include_deleted:
            query = query.where(_users.c.deleted_at.is_(None))
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_user(row) if row is not None else None

    @_store_op
    def get_user_by_email(self, email: str, tenant_id: str) -> User | None:
        """Look up a non-deleted user by email within one tenant."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    (_users.c.email == email) & (_users.c.tenant_id == tenant_id) & _users.c.deleted_at.is_(None)
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    @_store_op
    def find_user_by_email_across_tenants(self, email: str) -> User | None:
        """Look up a non-deleted user by email in any tenant.

        Login and reset requests arrive without tenant context. When the same
        email exists in several tenants the oldest account wins.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select()
                .where((_users.c.email == email) & _users.c.deleted_at.is_(None))
                .order_by(_users.c.created_at.asc())
                .limit(1)
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    @_store_op
    def exists_by_email(self, email: str, tenant_id: str) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(_users)
                .where((_users.c.email == email) & (_users.c.tenant_id == tenant_id) & _users.c.deleted_at.is_(None))
            ).scalar()
        return (count or 0) > 0

    @_store_op
    def list_users(self, tenant_id: str, limit: int = 100, offset: int = 0) -> list[User]:
        """Return a tenant's non-deleted users ordered by email."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select()
                .where((_users.c.tenant_id == tenant_id) & _users.c.deleted_at.is_(None))
                .order_by(_users.c.email)
                .limit(limit)
                .offset(offset)
            ).fetchall()
        return [_row_to_user(r) for r in rows]

    @_store_op
    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable fields on a non-deleted user.

        Accepted fields: display_name, phone, password_hash, role, is_active.
        Unknown keys raise ValueError rather than being silently ignored.
        Returns True if a row was updated.
        """
        unknown = set(fields) - _USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        fields["updated_at"] = _iso(utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where((_users.c.id == user_id) & _users.c.deleted_at.is_(None)).values(**fields)
            )
            conn.commit()
        return result.rowcount > 0

    @_store_op
    def update_last_login(self, user_id: str) -> None:
        now = _iso(utcnow())
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=now, updated_at=now))
            conn.commit()

    @_store_op
    def soft_delete_user(self, user_id: str) -> bool:
        """Mark a user deleted. Rows are never removed. Returns False if already deleted or missing."""
        now = _iso(utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & _users.c.deleted_at.is_(None))
                .values(deleted_at=now, is_active=0, updated_at=now)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @_store_op
    def create_session(self, session: Session) -> str:
        now = _iso(utcnow())
        row_id = session.id or _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=row_id,
                    user_id=session.user_id,
                    tenant_id=session.tenant_id,
                    session_id=session.session_id,
                    token_hash=session.token_hash,
                    refresh_token_hash=session.refresh_token_hash,
                    device_info=session.device_info or "",
                    ip_address=session.ip_address or "",
                    user_agent=session.user_agent or "",
                    expires_at=_iso(session.expires_at),
                    last_activity=_iso(session.last_activity),
                    is_active=1 if session.is_active else 0,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return row_id

    @_store_op
    def get_session(self, session_id: str) -> Session | None:
        return self._one_session(_sessions.c.session_id == session_id)

    @_store_op
    def get_session_by_token_hash(self, token_hash: str) -> Session | None:
        return self._one_session(_sessions.c.token_hash == token_hash)

    @_store_op
    def get_session_by_refresh_hash(self, refresh_hash: str) -> Session | None:
        return self._one_session(_sessions.c.refresh_token_hash == refresh_hash)

    def _one_session(self, where) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(where)).fetchone()
        return _row_to_session(row) if row is not None else None

    @_store_op
    def list_sessions(self, user_id: str, active_only: bool = True) -> list[Session]:
        """Return a user's sessions, newest first."""
        query = _sessions.select().where(_sessions.c.user_id == user_id)
        if active_only:
            query = query.where(_sessions.c.is_active == 1)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_sessions.c.created_at.desc())).fetchall()
        return [_row_to_session(r) for r in rows]

    @_store_op
    def rotate_session_tokens(
        self,
        session_id: str,
        expected_refresh_hash: str,
        token_hash: str,
        refresh_token_hash: str,
        expires_at: datetime,
    ) -> bool:
        """Swap in a new token pair if the session is still active and unchanged.

        Returns False when the session was deactivated or already rotated by a
        concurrent refresh.
        """
        now = _iso(utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.session_id == session_id)
                    & (_sessions.c.is_active == 1)
                    & (_sessions.c.refresh_token_hash == expected_refresh_hash)
                )
                .values(
                    token_hash=token_hash,
                    refresh_token_hash=refresh_token_hash,
                    expires_at=_iso(expires_at),
                    last_activity=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return result.rowcount > 0

    @_store_op
    def touch_session(self, session_id: str) -> None:
        now = _iso(utcnow())
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.update()
                .where((_sessions.c.session_id == session_id) & (_sessions.c.is_active == 1))
                .values(last_activity=now, updated_at=now)
            )
            conn.commit()

    @_store_op
    def deactivate_session(self, session_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.session_id == session_id) & (_sessions.c.is_active == 1))
                .values(is_active=0, updated_at=_iso(utcnow()))
            )
            conn.commit()
        return result.rowcount > 0

    @_store_op
    def deactivate_user_sessions(self, user_id: str) -> int:
        """Deactivate every active session owned by user_id in one statement."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.is_active == 1))
                .values(is_active=0, updated_at=_iso(utcnow()))
            )
            conn.commit()
        return result.rowcount

    @_store_op
    def cleanup_expired_sessions(self) -> int:
        now = _iso(utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.is_active == 1) & (_sessions.c.expires_at <= now))
                .values(is_active=0, updated_at=now)
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    @_store_op
    def create_reset_token(self, token: PasswordResetToken) -> str:
        row_id = token.id or _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _reset_tokens.insert().values(
                    id=row_id,
                    user_id=token.user_id,
                    tenant_id=token.tenant_id,
                    token_hash=token.token_hash,
                    email=token.email,
                    expires_at=_iso(token.expires_at),
                    ip_address=token.ip_address or "",
                    user_agent=token.user_agent or "",
                    is_active=1 if token.is_active else 0,
                    created_at=_iso(token.created_at or utcnow()),
                )
            )
            conn.commit()
        return row_id

    @_store_op
    def get_reset_token_by_hash(self, token_hash: str) -> PasswordResetToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_reset_tokens.select().where(_reset_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    @_store_op
    def count_reset_tokens_since(self, user_id: str, since: datetime) -> int:
        """Count tokens issued to user_id at or after since, whatever their state."""
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(_reset_tokens)
                .where((_reset_tokens.c.user_id == user_id) & (_reset_tokens.c.created_at >= _iso(since)))
            ).scalar()
        return count or 0

    @_store_op
    def deactivate_reset_tokens(self, user_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _reset_tokens.update()
                .where((_reset_tokens.c.user_id == user_id) & (_reset_tokens.c.is_active == 1))
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount

    @_store_op
    def consume_reset_token(self, token_id: str) -> bool:
        """Mark a token used iff it is still active, unused and unexpired.

        Returns True only for the single caller whose UPDATE matched.
        """
        now = _iso(utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(
                _reset_tokens.update()
                .where(
                    (_reset_tokens.c.id == token_id)
                    & (_reset_tokens.c.is_active == 1)
                    & _reset_tokens.c.used_at.is_(None)
                    & (_reset_tokens.c.expires_at > now)
                )
                .values(used_at=now, is_active=0)
            )
            conn.commit()
        return result.rowcount == 1

    @_store_op
    def deactivate_expired_reset_tokens(self) -> int:
        now = _iso(utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(
                _reset_tokens.update()
                .where((_reset_tokens.c.is_active == 1) & (_reset_tokens.c.expires_at <= now))
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    @_store_op
    def create_activity(self, entry: ActivityLog) -> str:
        row_id = entry.id or _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _activity.insert().values(
                    id=row_id,
                    user_id=entry.user_id,
                    tenant_id=entry.tenant_id,
                    action=entry.action,
                    resource_type=entry.resource_type,
                    resource_id=entry.resource_id,
                    old_values=json.dumps(entry.old_values) if entry.old_values is not None else None,
                    new_values=json.dumps(entry.new_values) if entry.new_values is not None else None,
                    ip_address=entry.ip_address or "",
                    user_agent=entry.user_agent or "",
                    session_id=entry.session_id or "",
                    success=1 if entry.success else 0,
                    error_message=entry.error_message or "",
                    created_at=_iso(entry.created_at or utcnow()),
                )
            )
            conn.commit()
        return row_id

    @_store_op
    def list_activity(
        self, *, user_id: str | None = None, tenant_id: str | None = None, limit: int = 50
    ) -> list[ActivityLog]:
        """Return activity newest first, filtered by user and/or tenant."""
        query = _activity.select()
        if user_id is not None:
            query = query.where(_activity.c.user_id == user_id)
        if tenant_id is not None:
            query = query.where(_activity.c.tenant_id == tenant_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_activity.c.created_at.desc()).limit(limit)).fetchall()
        return [_row_to_activity(r) for r in rows]

    @_store_op
    def delete_activity_before(self, cutoff: datetime) -> int:
        """Retention policy: remove activity older than cutoff."""
        with self.engine.connect() as conn:
            result = conn.execute(_activity.delete().where(_activity.c.created_at < _iso(cutoff)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        tenant_id=row.tenant_id,
        email=row.email,
        password_hash=row.password_hash,
        display_name=row.display_name,
        phone=row.phone or "",
        role=row.role,
        is_active=bool(row.is_active),
        last_login=_dt(row.last_login),
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
        deleted_at=_dt(row.deleted_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        tenant_id=row.tenant_id,
        session_id=row.session_id,
        token_hash=row.token_hash,
        refresh_token_hash=row.refresh_token_hash,
        device_info=row.device_info or "",
        ip_address=row.ip_address or "",
        user_agent=row.user_agent or "",
        expires_at=_dt(row.expires_at),
        last_activity=_dt(row.last_activity),
        is_active=bool(row.is_active),
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        tenant_id=row.tenant_id,
        token_hash=row.token_hash,
        email=row.email,
        expires_at=_dt(row.expires_at),
        used_at=_dt(row.used_at),
        ip_address=row.ip_address or "",
        user_agent=row.user_agent or "",
        is_active=bool(row.is_active),
        created_at=_dt(row.created_at),
    )


def _row_to_activity(row) -> ActivityLog:
    return ActivityLog(
        id=row.id,
        user_id=row.user_id,
        tenant_id=row.tenant_id,
        action=row.action,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        old_values=json.loads(row.old_values) if row.old_values else None,
        new_values=json.loads(row.new_values) if row.new_values else None,
        ip_address=row.ip_address or "",
        user_agent=row.user_agent or "",
        session_id=row.session_id or "",
        success=bool(row.success),
        error_message=row.error_message or "",
        created_at=_dt(row.created_at),
    )
