from __future__ import annotations

import sqlite3


def up(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
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
        """
    )
    conn.commit()


def down(conn: sqlite3.Connection) -> None:
    conn.executescript("DROP TABLE IF EXISTS vote_sessions;")
    conn.commit()
