from __future__ import annotations

from typing import Any

from src.db.sqlite_client import read_lock


def liveness() -> dict[str, Any]:
    return {"ok": True}


def _scalar(conn: Any, sql: str) -> Any:
    if hasattr(conn, "execute"):
        row = conn.execute(sql).fetchone()
    else:
        cur = conn.cursor()
        cur.execute(sql)
        row = cur.fetchone()
    return row[0] if not isinstance(row, dict) else next(iter(row.values()))


def _database_ready(conn: Any) -> str:
    try:
        _scalar(conn, "SELECT 1")
        return "ready"
    except Exception as exc:
        return f"error: {exc}"


def _single_open_session(conn: Any) -> str:
    try:
        open_count = int(_scalar(conn, "SELECT COUNT(*) FROM vote_sessions WHERE status = 'open'"))
    except Exception as exc:
        return f"error: {exc}"
    if open_count > 1:
        return f"error: {open_count} sessions are open"
    return "ready"


def readiness(conn: Any | None) -> dict[str, Any]:
    dependencies: dict[str, str] = {}
    if conn is None:
        dependencies["database"] = "error: unavailable"
        dependencies["sessions"] = "error: unavailable"
    else:
        with read_lock(conn):
            dependencies["database"] = _database_ready(conn)
            dependencies["sessions"] = _single_open_session(conn)
    ok = all(status == "ready" for status in dependencies.values())
    return {"ok": ok, "dependencies": dependencies}
