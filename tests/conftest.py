from __future__ import annotations

import os
import sqlite3
from collections.abc import Callable, Generator
from datetime import UTC, datetime
from pathlib import Path

import pytest

from src.auth.identity import Identity
from src.db.records import Session
from src.db.sqlite_client import get_connection, init_schema
from src.sessions.manager import create_vote_session, open_vote_session

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)
T1 = datetime(2025, 1, 20, 17, 0, tzinfo=UTC)


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "test.db")


@pytest.fixture
def sqlite_db(db_path: str) -> Generator[sqlite3.Connection, None, None]:
    os.environ.pop("DATABASE_URL", None)
    conn = get_connection(db_path)
    init_schema(conn)
    yield conn
    conn.close()


@pytest.fixture
def admin() -> Identity:
    return Identity(user_id="admin-1", role="admin")


@pytest.fixture
def voter() -> Identity:
    return Identity(user_id="user-1", role="user")


@pytest.fixture
def other_voter() -> Identity:
    return Identity(user_id="user-2", role="user")


@pytest.fixture
def make_session(sqlite_db, admin) -> Callable[..., Session]:
    def _make(title: str = "Budget 2025", now: datetime | None = None) -> Session:
        return create_vote_session(sqlite_db, admin, title, T0, T1, now=now)

    return _make


@pytest.fixture
def open_session(sqlite_db, admin, make_session) -> Session:
    session = make_session()
    return open_vote_session(sqlite_db, admin, session.id)
