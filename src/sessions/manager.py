from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, cast

from dateutil import parser as date_parser

from src.auth.identity import Identity, require_admin
from src.db.records import STATUS_CLOSED, STATUS_OPEN, STATUS_SCHEDULED, Session
from src.db.sqlite_client import (
    delete_session_cascade,
    get_session,
    insert_session,
    is_unique_violation,
    list_open_sessions,
    list_sessions,
    other_open_session_ids,
    read_lock,
    transaction,
    update_session_fields,
    update_session_status,
    utc_now,
)
from src.engine.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("title", "starts_at", "ends_at")


@dataclass(frozen=True)
class SessionUpdate:
    title: str | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None


def parse_session_time(value: Any, field: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = cast(datetime, date_parser.parse(value.strip()))
        except (ValueError, OverflowError) as exc:
            raise ValidationError(f"{field} is not a valid timestamp.", field=field) from exc
    else:
        raise ValidationError(f"{field} is required.", field=field)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def validate_title(title: Any) -> str:
    cleaned = " ".join(str(title or "").split())
    if not cleaned:
        raise ValidationError("title is required.", field="title")
    return cleaned


def load_session_update(payload: Mapping[str, Any] | None) -> SessionUpdate:
    payload = payload or {}
    unknown = sorted(set(payload) - set(UPDATABLE_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown session fields: {', '.join(unknown)}.")
    return SessionUpdate(
        title=validate_title(payload["title"]) if "title" in payload else None,
        starts_at=(
            parse_session_time(payload["starts_at"], "starts_at")
            if "starts_at" in payload
            else None
        ),
        ends_at=(
            parse_session_time(payload["ends_at"], "ends_at") if "ends_at" in payload else None
        ),
    )


def get_vote_session(conn: Any, session_id: str) -> Session:
    with read_lock(conn):
        session = get_session(conn, session_id)
    if session is None:
        raise NotFoundError("Session", session_id)
    return session


def list_vote_sessions(conn: Any) -> list[Session]:
    with read_lock(conn):
        return list_sessions(conn)


def get_open_session(conn: Any) -> Session | None:
    with read_lock(conn):
        open_sessions = list_open_sessions(conn)
    if not open_sessions:
        return None
    if len(open_sessions) > 1:
        logger.warning(
            "Found %d open sessions; using most recently updated %s",
            len(open_sessions),
            open_sessions[0].id,
        )
    return open_sessions[0]


def create_vote_session(
    conn: Any,
    actor: Identity | None,
    title: str,
    starts_at: datetime | str | None,
    ends_at: datetime | str | None,
    *,
    now: datetime | None = None,
) -> Session:
    require_admin(actor)
    cleaned_title = validate_title(title)
    start = parse_session_time(starts_at, "starts_at")
    end = parse_session_time(ends_at, "ends_at")
    with transaction(conn):
        session = insert_session(conn, cleaned_title, start, end, now or utc_now())
    logger.info("Session %s created (%s)", session.id, session.title)
    return session


def update_vote_session(
    conn: Any,
    actor: Identity | None,
    session_id: str,
    changes: Mapping[str, Any] | SessionUpdate,
    *,
    now: datetime | None = None,
) -> Session:
    require_admin(actor)
    update = changes if isinstance(changes, SessionUpdate) else load_session_update(changes)
    with transaction(conn):
        current = get_vote_session(conn, session_id)
        update_session_fields(
            conn,
            session_id,
            title=update.title if update.title is not None else current.title,
            starts_at=update.starts_at if update.starts_at is not None else current.starts_at,
            ends_at=update.ends_at if update.ends_at is not None else current.ends_at,
            now=now or utc_now(),
        )
        session = get_vote_session(conn, session_id)
    logger.info("Session %s updated", session_id)
    return session


def open_vote_session(
    conn: Any,
    actor: Identity | None,
    session_id: str,
    *,
    now: datetime | None = None,
) -> Session:
    """Open a session; reopening the session that is already open only re-stamps it."""
    require_admin(actor)
    try:
        with transaction(conn):
            current = get_vote_session(conn, session_id)
            if other_open_session_ids(conn, session_id):
                raise ConflictError("another session is open")
            update_session_status(conn, session_id, STATUS_OPEN, now or utc_now())
            session = get_vote_session(conn, session_id)
    except ConflictError:
        logger.warning("Refused to open session %s: another session is open", session_id)
        raise
    except Exception as exc:
        if is_unique_violation(exc):
            logger.warning("Lost race opening session %s", session_id)
            raise ConflictError("another session is open") from exc
        raise
    logger.info("Session %s opened (was %s)", session_id, current.status)
    return session


def close_vote_session(
    conn: Any,
    actor: Identity | None,
    session_id: str,
    *,
    now: datetime | None = None,
) -> Session:
    require_admin(actor)
    stamp = now or utc_now()
    with transaction(conn):
        current = get_vote_session(conn, session_id)
        update_session_status(conn, session_id, STATUS_CLOSED, stamp, closed_at=stamp)
        session = get_vote_session(conn, session_id)
    if current.status == STATUS_SCHEDULED:
        logger.info("Session %s closed without ever being opened", session_id)
    else:
        logger.info("Session %s closed (was %s)", session_id, current.status)
    return session


def delete_vote_session(conn: Any, actor: Identity | None, session_id: str) -> None:
    require_admin(actor)
    with transaction(conn):
        if not delete_session_cascade(conn, session_id):
            raise NotFoundError("Session", session_id)
    logger.info("Session %s deleted with its positions and actions", session_id)
