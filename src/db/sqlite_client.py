from __future__ import annotations

import os
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from src.db.records import Action, Position, Session, User, parse_timestamp
from src.engine.errors import CorruptRecordError

SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    role TEXT NOT NULL DEFAULT 'user' CHECK(role IN ('admin', 'user')),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS app_settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS vote_sessions (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    starts_at TEXT NOT NULL,
    ends_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'scheduled'
        CHECK(status IN ('scheduled', 'open', 'closed')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    closed_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_vote_sessions_single_open
    ON vote_sessions(status) WHERE status = 'open';
CREATE INDEX IF NOT EXISTS idx_vote_sessions_created_at ON vote_sessions(created_at);

CREATE TABLE IF NOT EXISTS positions (
    session_id TEXT NOT NULL REFERENCES vote_sessions(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    value INTEGER NOT NULL CHECK(value IN (-1, 0, 1)),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (session_id, user_id)
);

CREATE TABLE IF NOT EXISTS actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES vote_sessions(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    value INTEGER NOT NULL CHECK(value IN (-1, 0, 1)),
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_actions_session ON actions(session_id, created_at, id);
CREATE INDEX IF NOT EXISTS idx_actions_session_user ON actions(session_id, user_id, created_at);
"""

POSTGRES_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'user' CHECK(role IN ('admin', 'user')),
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vote_sessions (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        starts_at TIMESTAMPTZ NOT NULL,
        ends_at TIMESTAMPTZ NOT NULL,
        status TEXT NOT NULL DEFAULT 'scheduled'
            CHECK(status IN ('scheduled', 'open', 'closed')),
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        closed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_vote_sessions_single_open
        ON vote_sessions(status) WHERE status = 'open'
    """,
    "CREATE INDEX IF NOT EXISTS idx_vote_sessions_created_at ON vote_sessions(created_at)",
    """
    CREATE TABLE IF NOT EXISTS positions (
        session_id TEXT NOT NULL REFERENCES vote_sessions(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        value INTEGER NOT NULL CHECK(value IN (-1, 0, 1)),
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (session_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS actions (
        id BIGSERIAL PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES vote_sessions(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        value INTEGER NOT NULL CHECK(value IN (-1, 0, 1)),
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_actions_session ON actions(session_id, created_at, id)",
    """
    CREATE INDEX IF NOT EXISTS idx_actions_session_user
        ON actions(session_id, user_id, created_at)
    """,
]

SEED_SETTINGS = {"registrations_closed": "false"}

_FALLBACK_WRITE_LOCK = threading.RLock()
_ACTIVE_TRANSACTIONS: set[int] = set()


class _SQLiteConnection(sqlite3.Connection):
    """sqlite3 connection carrying the lock that serializes its write transactions."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.write_lock = threading.RLock()


def _is_postgres(conn: Any) -> bool:
    return conn.__class__.__module__.startswith("psycopg")


def _adapt_sql(conn: Any, sql: str) -> str:
    return sql.replace("?", "%s") if _is_postgres(conn) else sql


def _execute(conn: Any, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> Any:
    if _is_postgres(conn):
        cur = conn.cursor()
        cur.execute(_adapt_sql(conn, sql), tuple(params))
        return cur
    return conn.execute(_adapt_sql(conn, sql), tuple(params))


def _to_dict(row: Any) -> dict[str, Any]:
    return row if isinstance(row, dict) else dict(row)


def _db_timestamp(conn: Any, value: datetime) -> Any:
    """Postgres takes aware datetimes; SQLite stores sortable fixed-width UTC text."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    if _is_postgres(conn):
        return value
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def utc_now() -> datetime:
    return datetime.now(UTC)


def get_connection(db_path: str) -> Any:
    database_url = os.getenv("DATABASE_URL", "").strip()
    if database_url:
        from psycopg import connect
        from psycopg.rows import dict_row

        return connect(database_url, row_factory=dict_row, autocommit=False)

    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        db_path, timeout=30.0, check_same_thread=False, factory=_SQLiteConnection
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_schema(conn: Any) -> None:
    if _is_postgres(conn):
        cur = conn.cursor()
        for statement in POSTGRES_SCHEMA_STATEMENTS:
            cur.execute(statement)
    else:
        conn.executescript(SQLITE_SCHEMA)
    for key, value in SEED_SETTINGS.items():
        _execute(
            conn,
            "INSERT INTO app_settings (key, value) VALUES (?, ?) ON CONFLICT(key) DO NOTHING",
            [key, value],
        )
    conn.commit()


def _safe_rollback(conn: Any) -> None:
    """Reset failed DB transactions without masking original errors."""
    with suppress(Exception):
        conn.rollback()


@contextmanager
def transaction(conn: Any) -> Iterator[Any]:
    """Run the block as one write transaction: commit on success, roll back on error.

    SQLite begins with ``BEGIN IMMEDIATE`` so concurrent writers on other
    connections queue behind the database write lock. A nested block joins the
    enclosing transaction.
    """
    lock = getattr(conn, "write_lock", None) or _FALLBACK_WRITE_LOCK
    with lock:
        if id(conn) in _ACTIVE_TRANSACTIONS:
            yield conn
            return
        _ACTIVE_TRANSACTIONS.add(id(conn))
        try:
            if not _is_postgres(conn):
                conn.execute("BEGIN IMMEDIATE")
            yield conn
        except BaseException:
            _safe_rollback(conn)
            raise
        else:
            conn.commit()
        finally:
            _ACTIVE_TRANSACTIONS.discard(id(conn))


@contextmanager
def read_lock(conn: Any) -> Iterator[Any]:
    """Hold the connection's write lock for a read.

    A connection shared between threads has one transaction, so a read issued
    while another thread is mid-write would see that write half done.
    """
    lock = getattr(conn, "write_lock", None) or _FALLBACK_WRITE_LOCK
    with lock:
        yield conn


def is_unique_violation(exc: BaseException) -> bool:
    if isinstance(exc, sqlite3.IntegrityError):
        return "UNIQUE" in str(exc).upper()
    return exc.__class__.__module__.startswith("psycopg") and (
        getattr(exc, "sqlstate", None) == "23505"
    )


def lock_session_votes(conn: Any, session_id: str) -> None:
    """Serialize vote writers for one session until the transaction ends.

    Action ids are then handed out in commit order within the session, which
    keeps the history high-water mark a true snapshot. SQLite already holds
    the database write lock from ``BEGIN IMMEDIATE``.
    """
    if _is_postgres(conn):
        _execute(conn, "SELECT pg_advisory_xact_lock(hashtext(?))", [f"vote_sessions:{session_id}"])


# --------------------------
# Session store
# --------------------------


def insert_session(
    conn: Any,
    title: str,
    starts_at: datetime,
    ends_at: datetime,
    now: datetime,
) -> Session:
    session_id = str(uuid.uuid4())
    stamp = _db_timestamp(conn, now)
    _execute(
        conn,
        """
        INSERT INTO vote_sessions (
            id, title, starts_at, ends_at, status, created_at, updated_at, closed_at
        ) VALUES (?, ?, ?, ?, 'scheduled', ?, ?, NULL)
        """,
        [
            session_id,
            title,
            _db_timestamp(conn, starts_at),
            _db_timestamp(conn, ends_at),
            stamp,
            stamp,
        ],
    )
    session = get_session(conn, session_id)
    if session is None:
        raise CorruptRecordError(f"Session {session_id} vanished after insert")
    return session


def get_session(conn: Any, session_id: str) -> Session | None:
    row = _execute(conn, "SELECT * FROM vote_sessions WHERE id = ?", [session_id]).fetchone()
    return Session.from_row(_to_dict(row)) if row else None


def list_sessions(conn: Any) -> list[Session]:
    rows = _execute(
        conn, "SELECT * FROM vote_sessions ORDER BY created_at DESC, id DESC"
    ).fetchall()
    return [Session.from_row(_to_dict(row)) for row in rows]


def list_open_sessions(conn: Any) -> list[Session]:
    rows = _execute(
        conn,
        "SELECT * FROM vote_sessions WHERE status = 'open' ORDER BY updated_at DESC",
    ).fetchall()
    return [Session.from_row(_to_dict(row)) for row in rows]


def other_open_session_ids(conn: Any, session_id: str) -> list[str]:
    rows = _execute(
        conn,
        "SELECT id FROM vote_sessions WHERE status = 'open' AND id != ?",
        [session_id],
    ).fetchall()
    return [str(_to_dict(row)["id"]) for row in rows]


def update_session_fields(
    conn: Any,
    session_id: str,
    title: str,
    starts_at: datetime,
    ends_at: datetime,
    now: datetime,
) -> bool:
    cur = _execute(
        conn,
        """
        UPDATE vote_sessions
        SET title = ?, starts_at = ?, ends_at = ?, updated_at = ?
        WHERE id = ?
        """,
        [
            title,
            _db_timestamp(conn, starts_at),
            _db_timestamp(conn, ends_at),
            _db_timestamp(conn, now),
            session_id,
        ],
    )
    return cur.rowcount > 0


def update_session_status(
    conn: Any,
    session_id: str,
    status: str,
    now: datetime,
    closed_at: datetime | None = None,
) -> bool:
    cur = _execute(
        conn,
        "UPDATE vote_sessions SET status = ?, updated_at = ?, closed_at = ? WHERE id = ?",
        [
            status,
            _db_timestamp(conn, now),
            _db_timestamp(conn, closed_at) if closed_at else None,
            session_id,
        ],
    )
    return cur.rowcount > 0


def delete_session_cascade(conn: Any, session_id: str) -> bool:
    _execute(conn, "DELETE FROM actions WHERE session_id = ?", [session_id])
    _execute(conn, "DELETE FROM positions WHERE session_id = ?", [session_id])
    cur = _execute(conn, "DELETE FROM vote_sessions WHERE id = ?", [session_id])
    return cur.rowcount > 0


# --------------------------
# Position store
# --------------------------


def upsert_position(
    conn: Any,
    session_id: str,
    user_id: str,
    value: int,
    now: datetime,
) -> Position:
    stamp = _db_timestamp(conn, now)
    _execute(
        conn,
        """
        INSERT INTO positions (session_id, user_id, value, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(session_id, user_id)
        DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        [session_id, user_id, value, stamp, stamp],
    )
    position = get_position(conn, session_id, user_id)
    if position is None:
        raise CorruptRecordError(f"Position {session_id}/{user_id} vanished after upsert")
    return position


def get_position(conn: Any, session_id: str, user_id: str) -> Position | None:
    row = _execute(
        conn,
        "SELECT * FROM positions WHERE session_id = ? AND user_id = ?",
        [session_id, user_id],
    ).fetchone()
    return Position.from_row(_to_dict(row)) if row else None


def list_positions(conn: Any, session_id: str) -> list[Position]:
    rows = _execute(
        conn,
        "SELECT * FROM positions WHERE session_id = ? ORDER BY created_at ASC, user_id ASC",
        [session_id],
    ).fetchall()
    return [Position.from_row(_to_dict(row)) for row in rows]


def get_position_totals(conn: Any, session_id: str) -> dict[str, int]:
    row = _execute(
        conn,
        """
        SELECT
            COALESCE(SUM(value), 0) AS total,
            COUNT(*) AS voters,
            COALESCE(SUM(CASE WHEN value = 1 THEN 1 ELSE 0 END), 0) AS votes_for,
            COALESCE(SUM(CASE WHEN value = -1 THEN 1 ELSE 0 END), 0) AS votes_against,
            COALESCE(SUM(CASE WHEN value = 0 THEN 1 ELSE 0 END), 0) AS abstentions
        FROM positions
        WHERE session_id = ?
        """,
        [session_id],
    ).fetchone()
    return {key: int(val) for key, val in _to_dict(row).items()}


# --------------------------
# Action log store
# --------------------------


def append_action(
    conn: Any,
    session_id: str,
    user_id: str,
    value: int,
    now: datetime,
) -> Action:
    params = [session_id, user_id, value, _db_timestamp(conn, now)]
    sql = "INSERT INTO actions (session_id, user_id, value, created_at) VALUES (?, ?, ?, ?)"
    if _is_postgres(conn):
        row = _execute(conn, f"{sql} RETURNING id", params).fetchone()
        action_id = int(_to_dict(row)["id"])
    else:
        action_id = int(_execute(conn, sql, params).lastrowid)
    row = _execute(conn, "SELECT * FROM actions WHERE id = ?", [action_id]).fetchone()
    return Action.from_row(_to_dict(row))


def count_actions_between(
    conn: Any,
    session_id: str,
    user_id: str,
    start: datetime,
    end: datetime,
) -> int:
    row = _execute(
        conn,
        """
        SELECT COUNT(*) AS c
        FROM actions
        WHERE session_id = ? AND user_id = ? AND created_at >= ? AND created_at < ?
        """,
        [session_id, user_id, _db_timestamp(conn, start), _db_timestamp(conn, end)],
    ).fetchone()
    return int(_to_dict(row)["c"])


def get_latest_action_at(conn: Any, session_id: str, user_id: str) -> datetime | None:
    row = _execute(
        conn,
        "SELECT MAX(created_at) AS latest FROM actions WHERE session_id = ? AND user_id = ?",
        [session_id, user_id],
    ).fetchone()
    return parse_timestamp(_to_dict(row)["latest"])


def get_action_high_water(conn: Any, session_id: str) -> int:
    row = _execute(
        conn,
        "SELECT COALESCE(MAX(id), 0) AS high_water FROM actions WHERE session_id = ?",
        [session_id],
    ).fetchone()
    return int(_to_dict(row)["high_water"])


def fetch_actions_page(
    conn: Any,
    session_id: str,
    max_id: int,
    after: Action | None,
    limit: int,
) -> list[Action]:
    sql = "SELECT * FROM actions WHERE session_id = ? AND id <= ?"
    params: list[Any] = [session_id, max_id]
    if after is not None:
        stamp = _db_timestamp(conn, after.created_at)
        sql += " AND (created_at > ? OR (created_at = ? AND id > ?))"
        params.extend([stamp, stamp, after.id])
    sql += " ORDER BY created_at ASC, id ASC LIMIT ?"
    params.append(limit)
    rows = _execute(conn, sql, params).fetchall()
    return [Action.from_row(_to_dict(row)) for row in rows]


def get_action_totals(conn: Any, session_id: str) -> dict[str, int]:
    row = _execute(
        conn,
        """
        SELECT
            COALESCE(SUM(value), 0) AS total,
            COUNT(DISTINCT user_id) AS voters,
            COUNT(*) AS actions
        FROM actions
        WHERE session_id = ?
        """,
        [session_id],
    ).fetchone()
    return {key: int(val) for key, val in _to_dict(row).items()}


# --------------------------
# Users and app settings
# --------------------------


def normalize_email(email: str) -> str:
    return email.strip().lower()


def insert_user(conn: Any, email: str, role: str, now: datetime) -> User:
    user_id = str(uuid.uuid4())
    _execute(
        conn,
        "INSERT INTO users (id, email, role, created_at) VALUES (?, ?, ?, ?)",
        [user_id, normalize_email(email), role, _db_timestamp(conn, now)],
    )
    user = get_user(conn, user_id)
    if user is None:
        raise CorruptRecordError(f"User {user_id} vanished after insert")
    return user


def get_user(conn: Any, user_id: str) -> User | None:
    row = _execute(conn, "SELECT * FROM users WHERE id = ?", [user_id]).fetchone()
    return User.from_row(_to_dict(row)) if row else None


def get_user_by_email(conn: Any, email: str) -> User | None:
    row = _execute(
        conn, "SELECT * FROM users WHERE email = ?", [normalize_email(email)]
    ).fetchone()
    return User.from_row(_to_dict(row)) if row else None


def get_app_settings(conn: Any) -> dict[str, str]:
    rows = _execute(conn, "SELECT key, value FROM app_settings").fetchall()
    return {str(_to_dict(row)["key"]): str(_to_dict(row)["value"]) for row in rows}


def set_app_setting(conn: Any, key: str, value: str) -> None:
    _execute(
        conn,
        """
        INSERT INTO app_settings (key, value) VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        [key, value],
    )
