"""
SQLite database layer using aiosqlite.

Stores users, their activity log, and one-time codes.
Tables are created automatically on first connect.

Timestamps are written as UTC ISO-8601 strings with a fixed microsecond
precision so that string comparison in SQL matches time order.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

import aiosqlite

from agroai.config import DB_PATH
from agroai.models import District, Language, OtpPurpose, OtpRecord, User

logger = logging.getLogger(__name__)

# Newest activity entries kept per user.
ACTIVITY_LOG_LIMIT = 100

# ── Module-level connection ───────────────────────────────────────────────

_db: aiosqlite.Connection | None = None
_otp_lock: asyncio.Lock | None = None


async def init_db() -> None:
    """Open the database and create tables if they don't exist."""
    global _db, _otp_lock
    db_path = Path(DB_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    _db = await aiosqlite.connect(str(db_path))
    _db.row_factory = aiosqlite.Row  # dict-like rows
    await _db.execute("PRAGMA journal_mode=WAL")
    await _db.execute("PRAGMA foreign_keys=ON")

    await _db.executescript(_SCHEMA)
    await _db.commit()
    _otp_lock = asyncio.Lock()
    logger.info("Database initialized at %s", db_path)


async def close_db() -> None:
    """Close the database connection."""
    global _db, _otp_lock
    if _db is not None:
        await _db.close()
        _db = None
        _otp_lock = None
        logger.info("Database connection closed")


def get_db() -> aiosqlite.Connection:
    """Return the active database connection (must call init_db first)."""
    assert _db is not None, "Database not initialized, call init_db() first"
    return _db


# ── Schema ────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id                TEXT PRIMARY KEY,
    phone_number      TEXT NOT NULL UNIQUE,
    is_phone_verified INTEGER NOT NULL DEFAULT 0,
    language          TEXT NOT NULL DEFAULT 'en',
    district          TEXT,
    profile           TEXT NOT NULL DEFAULT '{}',   -- JSON object
    login_count       INTEGER NOT NULL DEFAULT 0,
    last_login        TEXT,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_activity (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id     TEXT NOT NULL,
    action      TEXT NOT NULL,
    details     TEXT,                              -- JSON object
    created_at  TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_activity_user ON user_activity(user_id, id);

CREATE TABLE IF NOT EXISTS otp_codes (
    id            TEXT PRIMARY KEY,
    phone_number  TEXT NOT NULL,
    code_hash     TEXT NOT NULL,
    purpose       TEXT NOT NULL,
    attempts      INTEGER NOT NULL DEFAULT 0,
    used          INTEGER NOT NULL DEFAULT 0,
    created_at    TEXT NOT NULL,
    expires_at    TEXT NOT NULL
);

-- At most one unused code per phone number.
CREATE UNIQUE INDEX IF NOT EXISTS idx_otp_one_unused
    ON otp_codes(phone_number) WHERE used = 0;

CREATE INDEX IF NOT EXISTS idx_otp_expires ON otp_codes(expires_at);
"""


# ── Helpers ───────────────────────────────────────────────────────────────


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    return datetime.fromisoformat(raw)


def _row_to_user(row: aiosqlite.Row) -> User:
    """Convert a database row to a User model."""
    return User(
        id=row["id"],
        phone_number=row["phone_number"],
        is_phone_verified=bool(row["is_phone_verified"]),
        language=Language(row["language"]),
        district=District(row["district"]) if row["district"] else None,
        profile=json.loads(row["profile"]),
        login_count=row["login_count"],
        last_login=_parse(row["last_login"]),
        created_at=_parse(row["created_at"]),
        updated_at=_parse(row["updated_at"]),
    )


def _row_to_otp(row: aiosqlite.Row) -> OtpRecord:
    """Convert a database row to an OtpRecord."""
    return OtpRecord(
        id=row["id"],
        phone_number=row["phone_number"],
        code_hash=row["code_hash"],
        purpose=OtpPurpose(row["purpose"]),
        attempts=row["attempts"],
        used=bool(row["used"]),
        created_at=_parse(row["created_at"]),
        expires_at=_parse(row["expires_at"]),
    )


# ══════════════════════════════════════════════════════════════════════════
#                         USER REPOSITORY
# ══════════════════════════════════════════════════════════════════════════


async def get_user(user_id: str) -> User | None:
    """Fetch a single user by ID."""
    db = get_db()
    async with db.execute("SELECT * FROM users WHERE id = ?", (user_id,)) as cur:
        row = await cur.fetchone()
    return _row_to_user(row) if row else None


async def get_user_by_phone(phone_number: str) -> User | None:
    db = get_db()
    async with db.execute(
        "SELECT * FROM users WHERE phone_number = ?", (phone_number,)
    ) as cur:
        row = await cur.fetchone()
    return _row_to_user(row) if row else None


async def create_verified_user(
    phone_number: str,
    district: District,
    language: Language,
    now: datetime,
) -> tuple[User, bool]:
    """
    Insert a verified user for the phone number.

    Returns (user, created). When a concurrent registration already
    inserted the phone, the existing row is returned with created=False.
    """
    db = get_db()
    cur = await db.execute(
        """
        INSERT INTO users (
            id, phone_number, is_phone_verified, language, district,
            profile, login_count, last_login, created_at, updated_at
        ) VALUES (?, ?, 1, ?, ?, '{}', 1, ?, ?, ?)
        ON CONFLICT(phone_number) DO NOTHING
        """,
        (
            str(uuid4()), phone_number, language.value, district.value,
            _iso(now), _iso(now), _iso(now),
        ),
    )
    await db.commit()
    created = cur.rowcount > 0
    user = await get_user_by_phone(phone_number)
    return user, created  # type: ignore[return-value]


async def record_login(
    user_id: str,
    now: datetime,
    *,
    language: Language | None = None,
    district: District | None = None,
) -> User | None:
    """Mark the user verified, bump login stats, apply optional profile changes."""
    db = get_db()
    await db.execute(
        """
        UPDATE users SET
            is_phone_verified = 1,
            login_count = login_count + 1,
            last_login = ?,
            language = COALESCE(?, language),
            district = COALESCE(?, district),
            updated_at = ?
        WHERE id = ?
        """,
        (
            _iso(now),
            language.value if language else None,
            district.value if district else None,
            _iso(now),
            user_id,
        ),
    )
    await db.commit()
    return await get_user(user_id)


async def add_activity(
    user_id: str,
    action: str,
    details: dict | None = None,
    *,
    now: datetime | None = None,
) -> None:
    """Append to the user's activity log, keeping only the newest entries."""
    db = get_db()
    now = now or datetime.now(timezone.utc)
    await db.execute(
        "INSERT INTO user_activity (user_id, action, details, created_at) VALUES (?, ?, ?, ?)",
        (user_id, action, json.dumps(details or {}, default=str), _iso(now)),
    )
    await db.execute(
        """
        DELETE FROM user_activity
        WHERE user_id = ? AND id NOT IN (
            SELECT id FROM user_activity WHERE user_id = ?
            ORDER BY id DESC LIMIT ?
        )
        """,
        (user_id, user_id, ACTIVITY_LOG_LIMIT),
    )
    await db.commit()


# ══════════════════════════════════════════════════════════════════════════
#                          OTP REPOSITORY
# ══════════════════════════════════════════════════════════════════════════


async def put_otp(
    phone_number: str,
    purpose: OtpPurpose,
    code_hash: str,
    *,
    now: datetime,
    ttl_seconds: int,
) -> OtpRecord:
    """
    Replace any unused code for the phone with a fresh one.

    The delete and insert run under a process-wide lock; the partial unique
    index catches a race with another process and the insert is retried.
    """
    db = get_db()
    otp = OtpRecord(
        id=str(uuid4()),
        phone_number=phone_number,
        code_hash=code_hash,
        purpose=purpose,
        attempts=0,
        used=False,
        created_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
    )

    assert _otp_lock is not None, "Database not initialized, call init_db() first"
    async with _otp_lock:
        for attempt in range(2):
            await db.execute(
                "DELETE FROM otp_codes WHERE phone_number = ? AND used = 0",
                (phone_number,),
            )
            try:
                await db.execute(
                    """
                    INSERT INTO otp_codes
                        (id, phone_number, code_hash, purpose, attempts, used, created_at, expires_at)
                    VALUES (?, ?, ?, ?, 0, 0, ?, ?)
                    """,
                    (
                        otp.id, phone_number, code_hash, purpose.value,
                        _iso(otp.created_at), _iso(otp.expires_at),
                    ),
                )
            except sqlite3.IntegrityError:
                await db.rollback()
                if attempt:
                    raise
                logger.warning("Concurrent OTP issuance detected, retrying")
                continue
            await db.commit()
            break
    return otp


async def find_valid_otp(phone_number: str, code_hash: str, *, now: datetime) -> OtpRecord | None:
    """Return the unused, unexpired record matching phone and code, if any."""
    db = get_db()
    async with db.execute(
        """
        SELECT * FROM otp_codes
        WHERE phone_number = ? AND code_hash = ? AND used = 0 AND expires_at > ?
        """,
        (phone_number, code_hash, _iso(now)),
    ) as cur:
        row = await cur.fetchone()
    return _row_to_otp(row) if row else None


async def record_failed_attempt(phone_number: str, max_attempts: int, *, now: datetime) -> bool:
    """
    Count a wrong guess against every live (unused, unexpired) code of the phone.

    Codes that reach *max_attempts* are deleted. Returns True if any did.
    Expired codes are left to the sweeper.
    """
    db = get_db()
    await db.execute(
        """
        UPDATE otp_codes SET attempts = attempts + 1
        WHERE phone_number = ? AND used = 0 AND expires_at > ?
        """,
        (phone_number, _iso(now)),
    )
    cur = await db.execute(
        """
        DELETE FROM otp_codes
        WHERE phone_number = ? AND used = 0 AND expires_at > ? AND attempts >= ?
        """,
        (phone_number, _iso(now), max_attempts),
    )
    await db.commit()
    return cur.rowcount > 0


async def mark_otp_used(otp_id: str) -> bool:
    """Flip the used flag. False when the code was already consumed."""
    db = get_db()
    cur = await db.execute(
        "UPDATE otp_codes SET used = 1 WHERE id = ? AND used = 0", (otp_id,)
    )
    await db.commit()
    return cur.rowcount > 0


async def delete_otp(otp_id: str) -> None:
    db = get_db()
    await db.execute("DELETE FROM otp_codes WHERE id = ?", (otp_id,))
    await db.commit()


async def invalidate_otps(phone_number: str) -> int:
    """Delete every unused code for the phone. Returns the number removed."""
    db = get_db()
    cur = await db.execute(
        "DELETE FROM otp_codes WHERE phone_number = ? AND used = 0", (phone_number,)
    )
    await db.commit()
    return cur.rowcount


async def delete_stale_otps(now: datetime) -> int:
    """Remove expired or used codes. Returns the number removed."""
    db = get_db()
    cur = await db.execute(
        "DELETE FROM otp_codes WHERE used = 1 OR expires_at <= ?", (_iso(now),)
    )
    await db.commit()
    return cur.rowcount
