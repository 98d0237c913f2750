"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository;
_row_to_user / _row_to_enrollment / _row_to_reset are the mappers. The
service and challenge code never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Single-use challenges [S1]: consumption is a conditional UPDATE/DELETE
  whose WHERE clause repeats the digest the caller just matched and requires
  the expiry to still be in the future. Two concurrent consumers of the same
  challenge both reach the statement, but only one affects a row -- the other
  sees rowcount 0 and must fail.

  Supersession [S2]: reset challenges are written with an SQLite upsert on
  UNIQUE(user_id, purpose). Concurrent forgot-password requests therefore
  leave exactly one row; the later write wins and earlier envelopes stop
  matching.

Timestamps: UTC ISO-8601 with fixed microsecond precision, so lexical
comparison in SQL is chronological comparison.

DB path: auth/stepguard_auth.db unless DATABASE_URL says otherwise.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    or_,
    text,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine

from auth.models import ChallengePurpose, ResetChallenge, TwoFactorEnrollment, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("refresh_token_hash", String(64)),  # HMAC-SHA256 hex of the live refresh token
    Column("created_at", String(32), nullable=False),
)

_two_factor = Table(
    "two_factor",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, unique=True),
    Column("secret_key", String(64), nullable=False),
    Column("is_enabled", Integer, nullable=False, server_default="1"),
    Column("recovery_codes", Text, nullable=False),  # JSON list of HMAC digests
    # In-flight step-up challenge: all three NULL or all three set
    Column("challenge_hash", String(64)),
    Column("challenge_purpose", String(40)),
    Column("challenge_expires_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_reset_challenges = Table(
    "reset_challenges",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("purpose", String(40), nullable=False),
    Column("token_hash", String(64), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("user_id", "purpose", name="uq_reset_user_purpose"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so request handlers and the sweeper can overlap.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for User, TwoFactorEnrollment and ResetChallenge entities.

    Usage:
        store = AuthStore()
        user_id = store.create_user(User(email="a@x.com", password_hash=hasher.hash("secret")))
        user = store.get_by_email("a@x.com")
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

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        The service catches it as the signal that a concurrent registration
        won the race.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    password_hash=user.password_hash,
                    refresh_token_hash=user.refresh_token_hash,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_password(self, user_id: int, password_hash: str) -> bool:
        """Replace the password digest and drop the refresh reference in one statement.

        Returns True if a row was updated, False if user_id was not found.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(password_hash=password_hash, refresh_token_hash=None)
            )
            conn.commit()
        return result.rowcount > 0

    def set_refresh_token_hash(self, user_id: int, refresh_token_hash: str | None) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(refresh_token_hash=refresh_token_hash)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Two-factor enrollment
    # ------------------------------------------------------------------

    def create_enrollment(self, enrollment: TwoFactorEnrollment) -> int:
        """Insert an enrollment. Raises IntegrityError if the user already has one."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _two_factor.insert().values(
                    user_id=enrollment.user_id,
                    secret_key=enrollment.secret_key,
                    is_enabled=1 if enrollment.is_enabled else 0,
                    recovery_codes=json.dumps(sorted(enrollment.recovery_codes)),
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_enrollment(self, user_id: int) -> TwoFactorEnrollment | None:
        with self.engine.connect() as conn:
            row = conn.execute(_two_factor.select().where(_two_factor.c.user_id == user_id)).fetchone()
        return _row_to_enrollment(row) if row is not None else None

    def delete_enrollment(self, user_id: int) -> bool:
        """Delete the user's enrollment. Returns True if a row was removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_two_factor.delete().where(_two_factor.c.user_id == user_id))
            conn.commit()
        return result.rowcount > 0

    def set_step_up_challenge(
        self,
        user_id: int,
        purpose: ChallengePurpose,
        token_hash: str,
        expires_at: datetime,
        unless_pending: ChallengePurpose | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Write the step-up slot, overwriting any in-flight challenge.

        With unless_pending set, a live challenge of that purpose (unexpired
        at `now`) is left in place instead. Returns False if nothing was
        written: no enabled enrollment, or the slot is held.
        """
        condition = (_two_factor.c.user_id == user_id) & (_two_factor.c.is_enabled == 1)
        if unless_pending is not None:
            condition = condition & or_(
                _two_factor.c.challenge_purpose.is_(None),
                _two_factor.c.challenge_purpose != unless_pending.value,
                _two_factor.c.challenge_expires_at < _iso(now),
            )
        with self.engine.connect() as conn:
            result = conn.execute(
                _two_factor.update()
                .where(condition)
                .values(
                    challenge_hash=token_hash,
                    challenge_purpose=purpose.value,
                    challenge_expires_at=_iso(expires_at),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def consume_step_up_challenge(
        self, user_id: int, purpose: ChallengePurpose, token_hash: str, now: datetime
    ) -> bool:
        """Clear the step-up slot only if it still holds this exact, unexpired challenge [S1].

        Returns True for exactly one caller per issued challenge.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _two_factor.update()
                .where(
                    (_two_factor.c.user_id == user_id)
                    & (_two_factor.c.challenge_hash == token_hash)
                    & (_two_factor.c.challenge_purpose == purpose.value)
                    & (_two_factor.c.challenge_expires_at >= _iso(now))
                )
                .values(challenge_hash=None, challenge_purpose=None, challenge_expires_at=None)
            )
            conn.commit()
        return result.rowcount == 1

    def clear_step_up_challenge(self, user_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _two_factor.update()
                .where((_two_factor.c.user_id == user_id) & (_two_factor.c.challenge_hash.is_not(None)))
                .values(challenge_hash=None, challenge_purpose=None, challenge_expires_at=None)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Reset challenges
    # ------------------------------------------------------------------

    def put_reset_challenge(self, challenge: ResetChallenge) -> None:
        """Insert or supersede the live challenge for (user_id, purpose) [S2]."""
        stmt = sqlite_insert(_reset_challenges).values(
            user_id=challenge.user_id,
            purpose=challenge.purpose,
            token_hash=challenge.token_hash,
            expires_at=_iso(challenge.expires_at),
            created_at=_now_iso(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "purpose"],
            set_={
                "token_hash": stmt.excluded.token_hash,
                "expires_at": stmt.excluded.expires_at,
                "created_at": stmt.excluded.created_at,
            },
        )
        with self.engine.connect() as conn:
            conn.execute(stmt)
            conn.commit()

    def get_reset_challenge(self, user_id: int, purpose: str) -> ResetChallenge | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _reset_challenges.select().where(
                    (_reset_challenges.c.user_id == user_id) & (_reset_challenges.c.purpose == purpose)
                )
            ).fetchone()
        return _row_to_reset(row) if row is not None else None

    def consume_reset_challenge(self, user_id: int, purpose: str, token_hash: str, now: datetime) -> bool:
        """Delete the challenge only if it still holds this exact, unexpired digest [S1]."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _reset_challenges.delete().where(
                    (_reset_challenges.c.user_id == user_id)
                    & (_reset_challenges.c.purpose == purpose)
                    & (_reset_challenges.c.token_hash == token_hash)
                    & (_reset_challenges.c.expires_at >= _iso(now))
                )
            )
            conn.commit()
        return result.rowcount == 1

    def delete_reset_challenges(self, user_id: int) -> int:
        """Drop every outstanding reset challenge for a user. Returns rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_reset_challenges.delete().where(_reset_challenges.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def count_reset_challenges(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                text("SELECT COUNT(*) FROM reset_challenges WHERE user_id = :uid"), {"uid": user_id}
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    def purge_expired(self, now: datetime) -> tuple[int, int]:
        """Clear expired step-up slots and delete expired reset rows in one transaction.

        Only rows already past their expiry are touched, so running this
        alongside request handlers cannot invalidate a live challenge.
        Returns (step_up_cleared, reset_deleted).
        """
        cutoff = _iso(now)
        with self.engine.begin() as conn:
            cleared = conn.execute(
                _two_factor.update()
                .where(_two_factor.c.challenge_expires_at < cutoff)
                .values(challenge_hash=None, challenge_purpose=None, challenge_expires_at=None)
            ).rowcount
            deleted = conn.execute(
                _reset_challenges.delete().where(_reset_challenges.c.expires_at < cutoff)
            ).rowcount
        return cleared, deleted

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        refresh_token_hash=row.refresh_token_hash,
        created_at=row.created_at,
    )


def _row_to_enrollment(row) -> TwoFactorEnrollment:
    return TwoFactorEnrollment(
        id=row.id,
        user_id=row.user_id,
        secret_key=row.secret_key,
        is_enabled=bool(row.is_enabled),
        recovery_codes=json.loads(row.recovery_codes or "[]"),
        challenge_hash=row.challenge_hash,
        challenge_purpose=row.challenge_purpose,
        challenge_expires_at=_parse(row.challenge_expires_at),
        created_at=row.created_at,
    )


def _row_to_reset(row) -> ResetChallenge:
    return ResetChallenge(
        id=row.id,
        user_id=row.user_id,
        purpose=row.purpose,
        token_hash=row.token_hash,
        expires_at=_parse(row.expires_at),
        created_at=row.created_at,
    )
