from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from src.auth.identity import Identity, require_identity
from src.db.records import VOTE_VALUES, Action, Position, Session
from src.db.sqlite_client import (
    append_action,
    count_actions_between,
    get_latest_action_at,
    get_position,
    lock_session_votes,
    read_lock,
    transaction,
    upsert_position,
    utc_now,
)
from src.engine.errors import NoOpenSessionError, RateLimitedError, ValidationError
from src.engine.tally import CONSENSUS, Tally, check_tally_mode, compute_tally
from src.sessions.manager import get_open_session
from src.utils.vote_day import next_vote_day_start, vote_day_bounds

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoteReceipt:
    session: Session
    position: Position
    action: Action
    tally: Tally


@dataclass(frozen=True)
class Standing:
    session: Session
    tally: Tally
    my_position: Position | None


def validate_vote_value(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value not in VOTE_VALUES:
        raise ValidationError("Vote value must be -1, 0 or 1.", field="value")
    return value


def cast_vote(
    conn: Any,
    actor: Identity | None,
    value: Any,
    *,
    daily_limit: bool = False,
    tally_mode: str = CONSENSUS,
    now: datetime | None = None,
) -> VoteReceipt:
    identity = require_identity(actor)
    vote = validate_vote_value(value)
    check_tally_mode(tally_mode)
    if get_open_session(conn) is None:
        raise NoOpenSessionError()

    with transaction(conn):
        # Re-read inside the write transaction so a concurrent close wins.
        session = get_open_session(conn)
        if session is None:
            raise NoOpenSessionError()
        lock_session_votes(conn, session.id)
        # Stamped under the lock so log order matches commit order; never
        # earlier than this voter's previous action, even if the clock steps back.
        stamp = now or utc_now()
        latest = get_latest_action_at(conn, session.id, identity.user_id)
        if latest is not None and stamp < latest:
            stamp = latest
        if daily_limit:
            day_start, day_end = vote_day_bounds(stamp)
            if count_actions_between(conn, session.id, identity.user_id, day_start, day_end):
                logger.warning(
                    "User %s already voted today in session %s", identity.user_id, session.id
                )
                raise RateLimitedError(
                    "You have already voted today. Try again after "
                    f"{next_vote_day_start(stamp).strftime('%Y-%m-%d %H:%M UTC')}."
                )
        position = upsert_position(conn, session.id, identity.user_id, vote, stamp)
        action = append_action(conn, session.id, identity.user_id, vote, stamp)

    logger.info("User %s voted %+d in session %s", identity.user_id, vote, session.id)
    with read_lock(conn):
        tally = compute_tally(conn, session, tally_mode)
    return VoteReceipt(session=session, position=position, action=action, tally=tally)


def get_user_position(conn: Any, session_id: str, user_id: str) -> Position | None:
    with read_lock(conn):
        return get_position(conn, session_id, user_id)


def current_standing(
    conn: Any,
    user_id: str | None = None,
    *,
    tally_mode: str = CONSENSUS,
) -> Standing | None:
    """Public view of the open session; ``my_position`` only when a user id is given."""
    with read_lock(conn):
        session = get_open_session(conn)
        if session is None:
            return None
        return Standing(
            session=session,
            tally=compute_tally(conn, session, tally_mode),
            my_position=get_position(conn, session.id, user_id) if user_id else None,
        )
