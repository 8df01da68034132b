"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_user / _row_to_credential / _row_to_session are the mappers.
Providers never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Only hashes of refresh, verification and reset tokens are stored. The
  access token is stored hashed as well so a Session row can be matched
  against the bearer token that minted it.

Concurrency:
  Every state transition that must not race is a single statement or a
  single transaction, written write-first so SQLite takes its write lock up
  front and Postgres takes a row lock:
    create_user_with_credential -- one transaction; a failure after the
        user insert rolls back the user as well.
    record_failed_attempt -- one UPDATE ... RETURNING that increments the
        counter and computes the lockout from the pre-update value.
    rotate_session -- conditional deactivate (WHERE is_active) then insert,
        in one transaction; a concurrent replay sees rowcount 0 and inserts
        nothing.
    consume_reset_token / consume_verification_token -- one UPDATE ...
        RETURNING keyed on (token hash, unexpired), so a token is consumed
        at most once.

Timestamps are stored as fixed-width UTC ISO-8601 strings (microsecond
precision). Fixed width keeps lexicographic order equal to chronological
order, so expiry comparisons can happen in SQL on every backend.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    case,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import AuthEvent, AuthEventType, OAuthIdentity, PasswordCredential, Session, User

_DEFAULT_DB_URL = "sqlite:///authcore.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # always lowercased
    Column("display_name", String(255)),
    Column("avatar_url", Text),
    Column("is_banned", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
)

_credentials = Table(
    "password_credentials",
    _metadata,
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("password_hash", Text, nullable=False),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("lockout_until", String(32)),
    Column("verification_token_hash", String(64), index=True),
    Column("verification_expires_at", String(32)),
    Column("reset_token_hash", String(64), index=True),
    Column("reset_expires_at", String(32)),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("access_token_hash", String(64), nullable=False, index=True),
    Column("refresh_token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
)

_oauth_identities = Table(
    "oauth_identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("provider", String(30), nullable=False),
    Column("provider_user_id", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
    UniqueConstraint("provider", "provider_user_id", name="uq_oauth_provider_subject"),
    UniqueConstraint("user_id", "provider", name="uq_oauth_user_provider"),
)

_auth_events = Table(
    "auth_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_type", String(50), nullable=False),
    Column("user_id", String(36)),  # no FK: audit rows outlive deleted users
    Column("email", String(255)),
    Column("provider", String(30), nullable=False),
    Column("metadata", Text),  # JSON blob
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys per connection.

    SQLite PRAGMAs are not inherited by new connections from the pool, and
    ON DELETE CASCADE is ignored unless foreign_keys is switched on.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, password credentials, sessions, OAuth identities and audit events.

    Every method that compares against "now" takes it as an argument; the
    store never reads the clock for security decisions.

    Usage:
        store = CredentialStore("sqlite:///auth.db")
        user = store.create_user_with_credential(email, display_name, password_hash, ...)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user_with_credential(
        self,
        *,
        email: str,
        display_name: str | None,
        password_hash: str,
        verification_token_hash: str,
        verification_expires_at: datetime,
        now: datetime,
    ) -> User:
        """Insert a User and its PasswordCredential atomically.

        Raises sqlalchemy.exc.IntegrityError if the email already exists; the
        user row is rolled back along with the credential.
        """
        user_id = str(uuid.uuid4())
        stamp = _iso(now)
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=normalize_email(email),
                    display_name=display_name,
                    created_at=stamp,
                    updated_at=stamp,
                )
            )
            conn.execute(
                _credentials.insert().values(
                    user_id=user_id,
                    password_hash=password_hash,
                    email_verified=0,
                    failed_attempts=0,
                    verification_token_hash=verification_token_hash,
                    verification_expires_at=_iso(verification_expires_at),
                    created_at=stamp,
                    updated_at=stamp,
                )
            )
        return User(
            id=user_id,
            email=normalize_email(email),
            display_name=display_name,
            created_at=stamp,
            updated_at=stamp,
        )

    def get_user(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup (emails are stored lowercased)."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user_profile(
        self,
        user_id: str,
        *,
        now: datetime,
        display_name: str | None = None,
        avatar_url: str | None = None,
    ) -> bool:
        """Update display_name / avatar_url. None means "leave unchanged".

        Returns True if a row was updated, False if user_id was not found.
        """
        values: dict[str, Any] = {"updated_at": _iso(now)}
        if display_name is not None:
            values["display_name"] = display_name
        if avatar_url is not None:
            values["avatar_url"] = avatar_url
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
        return result.rowcount > 0

    def set_banned(self, user_id: str, banned: bool, *, now: datetime) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(is_banned=1 if banned else 0, updated_at=_iso(now))
            )
        return result.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        """Delete a user together with credential, sessions and OAuth links.

        Child rows are deleted explicitly in the same transaction so the
        result does not depend on the backend honouring ON DELETE CASCADE.
        """
        with self.engine.begin() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            conn.execute(_credentials.delete().where(_credentials.c.user_id == user_id))
            conn.execute(_oauth_identities.delete().where(_oauth_identities.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def upsert_shadow_user(
        self,
        *,
        email: str,
        display_name: str | None,
        avatar_url: str | None,
        now: datetime,
    ) -> User:
        """Insert-or-update the local mirror of an externally verified identity.

        Keyed by lowercased email; never creates a second row for the same
        email. Non-empty display_name / avatar_url overwrite stored values.
        A concurrent insert of the same email surfaces as IntegrityError and
        is resolved by falling through to the update path.
        """
        normalized = normalize_email(email)
        stamp = _iso(now)
        existing = self.get_user_by_email(normalized)
        if existing is None:
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        _users.insert().values(
                            id=str(uuid.uuid4()),
                            email=normalized,
                            display_name=display_name or normalized.split("@")[0],
                            avatar_url=avatar_url,
                            created_at=stamp,
                            updated_at=stamp,
                        )
                    )
            except IntegrityError:
                pass
            else:
                return self.get_user_by_email(normalized)  # type: ignore[return-value]

        values: dict[str, Any] = {}
        if display_name:
            values["display_name"] = display_name
        if avatar_url:
            values["avatar_url"] = avatar_url
        if values:
            values["updated_at"] = stamp
            with self.engine.begin() as conn:
                conn.execute(_users.update().where(_users.c.email == normalized).values(**values))
        return self.get_user_by_email(normalized)  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Password credentials
    # ------------------------------------------------------------------

    def get_credential(self, user_id: str) -> PasswordCredential | None:
        with self.engine.connect() as conn:
            row = conn.execute(_credentials.select().where(_credentials.c.user_id == user_id)).fetchone()
        return _row_to_credential(row) if row is not None else None

    def record_failed_attempt(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_until: datetime,
        now: datetime,
    ) -> tuple[int, datetime | None]:
        """Atomically increment failed_attempts and lock the row at the threshold.

        One UPDATE ... RETURNING: the SET expressions read the pre-update
        counter, so two concurrent failures always produce two increments
        and whichever crosses max_attempts sets lockout_until.

        Returns (failed_attempts, lockout_until) after the update.
        """
        crossed = _credentials.c.failed_attempts + 1 >= max_attempts
        stmt = (
            _credentials.update()
            .where(_credentials.c.user_id == user_id)
            .values(
                failed_attempts=_credentials.c.failed_attempts + 1,
                lockout_until=case((crossed, _iso(lockout_until)), else_=_credentials.c.lockout_until),
                updated_at=_iso(now),
            )
            .returning(_credentials.c.failed_attempts, _credentials.c.lockout_until)
        )
        with self.engine.begin() as conn:
            row = conn.execute(stmt).fetchone()
        if row is None:
            return 0, None
        return int(row.failed_attempts), _parse(row.lockout_until)

    def record_successful_sign_in(self, user_id: str, *, now: datetime) -> None:
        """Reset the failure counter and lockout; stamp last_login_at."""
        with self.engine.begin() as conn:
            conn.execute(
                _credentials.update()
                .where(_credentials.c.user_id == user_id)
                .values(failed_attempts=0, lockout_until=None, last_login_at=_iso(now), updated_at=_iso(now))
            )

    def update_password_hash(self, user_id: str, password_hash: str, *, now: datetime) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _credentials.update()
                .where(_credentials.c.user_id == user_id)
                .values(password_hash=password_hash, updated_at=_iso(now))
            )
        return result.rowcount > 0

    def set_reset_token(self, user_id: str, token_hash: str, expires_at: datetime, *, now: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _credentials.update()
                .where(_credentials.c.user_id == user_id)
                .values(reset_token_hash=token_hash, reset_expires_at=_iso(expires_at), updated_at=_iso(now))
            )

    def consume_reset_token(self, token_hash: str, new_password_hash: str, *, now: datetime) -> str | None:
        """Redeem a password-reset token and revoke every session of its owner.

        In one transaction: swap the password hash, clear the token, clear
        lockout state, and deactivate all active sessions. Returns the user id,
        or None if no unexpired credential carries this token hash.
        """
        stamp = _iso(now)
        stmt = (
            _credentials.update()
            .where(and_(_credentials.c.reset_token_hash == token_hash, _credentials.c.reset_expires_at > stamp))
            .values(
                password_hash=new_password_hash,
                reset_token_hash=None,
                reset_expires_at=None,
                failed_attempts=0,
                lockout_until=None,
                updated_at=stamp,
            )
            .returning(_credentials.c.user_id)
        )
        with self.engine.begin() as conn:
            row = conn.execute(stmt).fetchone()
            if row is None:
                return None
            conn.execute(
                _sessions.update()
                .where(and_(_sessions.c.user_id == row.user_id, _sessions.c.is_active == 1))
                .values(is_active=0, updated_at=stamp)
            )
        return row.user_id

    def set_verification_token(self, user_id: str, token_hash: str, expires_at: datetime, *, now: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _credentials.update()
                .where(_credentials.c.user_id == user_id)
                .values(
                    verification_token_hash=token_hash,
                    verification_expires_at=_iso(expires_at),
                    updated_at=_iso(now),
                )
            )

    def consume_verification_token(self, token_hash: str, *, now: datetime) -> str | None:
        """Mark the owning credential verified and clear the token. Returns the user id or None."""
        stamp = _iso(now)
        stmt = (
            _credentials.update()
            .where(
                and_(
                    _credentials.c.verification_token_hash == token_hash,
                    _credentials.c.verification_expires_at > stamp,
                )
            )
            .values(
                email_verified=1,
                verification_token_hash=None,
                verification_expires_at=None,
                updated_at=stamp,
            )
            .returning(_credentials.c.user_id)
        )
        with self.engine.begin() as conn:
            row = conn.execute(stmt).fetchone()
        return row.user_id if row is not None else None

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session, *, now: datetime) -> Session:
        session.id = session.id or str(uuid.uuid4())
        session.created_at = _iso(now)
        with self.engine.begin() as conn:
            conn.execute(_sessions.insert().values(**_session_values(session)))
        return session

    def get_active_session_by_refresh_hash(self, refresh_token_hash: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(
                    and_(_sessions.c.refresh_token_hash == refresh_token_hash, _sessions.c.is_active == 1)
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def is_access_token_active(self, access_token_hash: str, *, now: datetime) -> bool:
        """True if an active, unexpired Session was minted with this access token."""
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(_sessions)
                .where(
                    and_(
                        _sessions.c.access_token_hash == access_token_hash,
                        _sessions.c.is_active == 1,
                        _sessions.c.expires_at > _iso(now),
                    )
                )
            ).scalar()
        return (count or 0) > 0

    def deactivate_session(self, session_id: str, *, now: datetime) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where(and_(_sessions.c.id == session_id, _sessions.c.is_active == 1))
                .values(is_active=0, updated_at=_iso(now))
            )
        return result.rowcount > 0

    def deactivate_user_sessions(self, user_id: str, *, now: datetime) -> int:
        """Deactivate every active session of a user. Returns the number deactivated."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where(and_(_sessions.c.user_id == user_id, _sessions.c.is_active == 1))
                .values(is_active=0, updated_at=_iso(now))
            )
        return result.rowcount

    def rotate_session(self, old_session_id: str, new_session: Session, *, now: datetime) -> bool:
        """Deactivate old_session_id and insert new_session as one unit.

        Returns False (and inserts nothing) if the old session was no longer
        active -- i.e. a concurrent request already redeemed it.
        """
        new_session.id = new_session.id or str(uuid.uuid4())
        new_session.created_at = _iso(now)
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where(and_(_sessions.c.id == old_session_id, _sessions.c.is_active == 1))
                .values(is_active=0, updated_at=_iso(now))
            )
            if result.rowcount != 1:
                return False
            conn.execute(_sessions.insert().values(**_session_values(new_session)))
        return True

    def list_sessions(self, user_id: str) -> list[Session]:
        """Return all sessions (active and inactive) for a user, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select().where(_sessions.c.user_id == user_id).order_by(_sessions.c.created_at)
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    # ------------------------------------------------------------------
    # OAuth identities
    # ------------------------------------------------------------------

    def link_oauth_identity(
        self,
        *,
        email: str,
        provider: str,
        provider_user_id: str,
        display_name: str | None,
        avatar_url: str | None,
        now: datetime,
    ) -> tuple[User, bool]:
        """Find-or-create the user for a verified OAuth identity and link it.

        Resolution order: an existing (provider, provider_user_id) link wins;
        otherwise the user is matched by email (created if missing) and the
        link is inserted. An avatar is only filled in when the user has none.

        Returns (user, connected) where connected is True when a new link row
        was written.
        """
        stamp = _iso(now)
        normalized = normalize_email(email)
        with self.engine.begin() as conn:
            linked = conn.execute(
                select(_oauth_identities.c.user_id).where(
                    and_(
                        _oauth_identities.c.provider == provider,
                        _oauth_identities.c.provider_user_id == provider_user_id,
                    )
                )
            ).fetchone()
            connected = linked is None
            if linked is not None:
                user_id = linked.user_id
            else:
                row = conn.execute(_users.select().where(_users.c.email == normalized)).fetchone()
                if row is None:
                    user_id = str(uuid.uuid4())
                    conn.execute(
                        _users.insert().values(
                            id=user_id,
                            email=normalized,
                            display_name=display_name or normalized.split("@")[0],
                            avatar_url=avatar_url,
                            created_at=stamp,
                            updated_at=stamp,
                        )
                    )
                else:
                    user_id = row.id
                    if not row.avatar_url and avatar_url:
                        conn.execute(
                            _users.update().where(_users.c.id == user_id).values(avatar_url=avatar_url, updated_at=stamp)
                        )
                conn.execute(
                    _oauth_identities.delete().where(
                        and_(_oauth_identities.c.user_id == user_id, _oauth_identities.c.provider == provider)
                    )
                )
                conn.execute(
                    _oauth_identities.insert().values(
                        user_id=user_id,
                        provider=provider,
                        provider_user_id=provider_user_id,
                        created_at=stamp,
                        updated_at=stamp,
                    )
                )
        return self.get_user(user_id), connected  # type: ignore[return-value]

    def get_oauth_identities(self, user_id: str) -> list[OAuthIdentity]:
        with self.engine.connect() as conn:
            rows = conn.execute(_oauth_identities.select().where(_oauth_identities.c.user_id == user_id)).fetchall()
        return [
            OAuthIdentity(
                user_id=r.user_id,
                provider=r.provider,
                provider_user_id=r.provider_user_id,
                created_at=r.created_at,
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Audit events
    # ------------------------------------------------------------------

    def append_event(self, auth_event: AuthEvent, *, now: datetime) -> int:
        """Append an audit row. Never updates or deletes existing rows."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _auth_events.insert().values(
                    event_type=auth_event.event_type.value,
                    user_id=auth_event.user_id,
                    email=auth_event.email,
                    provider=auth_event.provider,
                    metadata=json.dumps(auth_event.metadata) if auth_event.metadata else None,
                    created_at=_iso(now),
                )
            )
        return result.inserted_primary_key[0]

    def list_events(self, *, user_id: str | None = None, limit: int = 100) -> list[AuthEvent]:
        """Return audit events newest first, optionally filtered by user."""
        stmt = _auth_events.select().order_by(_auth_events.c.id.desc()).limit(limit)
        if user_id is not None:
            stmt = stmt.where(_auth_events.c.user_id == user_id)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [
            AuthEvent(
                id=r.id,
                event_type=AuthEventType(r.event_type),
                user_id=r.user_id,
                email=r.email,
                provider=r.provider,
                metadata=json.loads(r.metadata) if r.metadata else {},
                created_at=r.created_at,
            )
            for r in rows
        ]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _session_values(session: Session) -> dict[str, Any]:
    return {
        "id": session.id,
        "user_id": session.user_id,
        "access_token_hash": session.access_token_hash,
        "refresh_token_hash": session.refresh_token_hash,
        "expires_at": _iso(session.expires_at),
        "is_active": 1 if session.is_active else 0,
        "created_at": session.created_at,
        "updated_at": session.created_at,
    }


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        display_name=row.display_name,
        avatar_url=row.avatar_url,
        is_banned=bool(row.is_banned),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_credential(row) -> PasswordCredential:
    return PasswordCredential(
        user_id=row.user_id,
        password_hash=row.password_hash,
        email_verified=bool(row.email_verified),
        failed_attempts=row.failed_attempts,
        lockout_until=_parse(row.lockout_until),
        verification_token_hash=row.verification_token_hash,
        verification_expires_at=_parse(row.verification_expires_at),
        reset_token_hash=row.reset_token_hash,
        reset_expires_at=_parse(row.reset_expires_at),
        last_login_at=_parse(row.last_login_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        access_token_hash=row.access_token_hash,
        refresh_token_hash=row.refresh_token_hash,
        expires_at=_parse(row.expires_at),  # type: ignore[arg-type]
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )
