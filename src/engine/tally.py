"""Tally computation over positions and the action log.

Two metrics are offered and never mixed:

- ``consensus``: sum of every voter's current position (one value per voter).
- ``momentum``: sum of every action ever logged for the session.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from src.db.records import Action, Session
from src.db.sqlite_client import (
    fetch_actions_page,
    get_action_high_water,
    get_action_totals,
    get_position_totals,
    list_positions,
    read_lock,
)
from src.engine.errors import ValidationError
from src.sessions.manager import get_vote_session

CONSENSUS = "consensus"
MOMENTUM = "momentum"
TALLY_MODES = (CONSENSUS, MOMENTUM)


@dataclass(frozen=True)
class Tally:
    session_id: str
    mode: str
    total: int
    voters_count: int
    for_count: int
    against_count: int
    abstain_count: int
    session_status: str
    is_final: bool


@dataclass(frozen=True)
class SeriesPoint:
    at: datetime
    consensus: int
    momentum: int


def check_tally_mode(mode: str) -> str:
    if mode not in TALLY_MODES:
        raise ValidationError(f"Unknown tally mode '{mode}'.", field="mode")
    return mode


def compute_tally(conn: Any, session: Session, mode: str = CONSENSUS) -> Tally:
    check_tally_mode(mode)
    positions = get_position_totals(conn, session.id)
    if mode == CONSENSUS:
        total, voters = positions["total"], positions["voters"]
    else:
        actions = get_action_totals(conn, session.id)
        total, voters = actions["total"], actions["voters"]
    return Tally(
        session_id=session.id,
        mode=mode,
        total=total,
        voters_count=voters,
        for_count=positions["votes_for"],
        against_count=positions["votes_against"],
        abstain_count=positions["abstentions"],
        session_status=session.status,
        is_final=session.is_closed,
    )


def live_tally(conn: Any, session_id: str, *, mode: str = CONSENSUS) -> Tally:
    with read_lock(conn):
        return compute_tally(conn, get_vote_session(conn, session_id), mode)


def final_tally(conn: Any, session_id: str, *, mode: str = CONSENSUS) -> Tally:
    """Authoritative result; ``is_final`` is only set once the session is closed."""
    with read_lock(conn):
        return compute_tally(conn, get_vote_session(conn, session_id), mode)


class ActionHistory:
    """Snapshot of a session's action log, read lazily page by page.

    Iterating more than once replays the same snapshot: actions appended after
    the history was created are bounded out by the recorded high-water id.
    """

    def __init__(self, conn: Any, session_id: str, high_water: int, page_size: int = 500) -> None:
        if page_size <= 0:
            raise ValidationError("page_size must be positive.", field="page_size")
        self._conn = conn
        self.session_id = session_id
        self.high_water = high_water
        self.page_size = page_size

    def __iter__(self) -> Iterator[Action]:
        if self.high_water == 0:
            return
        after: Action | None = None
        while True:
            with read_lock(self._conn):
                page = fetch_actions_page(
                    self._conn, self.session_id, self.high_water, after, self.page_size
                )
            yield from page
            if len(page) < self.page_size:
                return
            after = page[-1]


def action_history(conn: Any, session_id: str, *, page_size: int = 500) -> ActionHistory:
    with read_lock(conn):
        get_vote_session(conn, session_id)
        high_water = get_action_high_water(conn, session_id)
    return ActionHistory(conn, session_id, high_water, page_size)


def replay_positions(actions: Iterable[Action]) -> dict[str, int]:
    latest: dict[str, int] = {}
    for action in actions:
        latest[action.user_id] = action.value
    return latest


def sentiment_series(actions: Iterable[Action]) -> list[SeriesPoint]:
    latest: dict[str, int] = {}
    consensus = 0
    momentum = 0
    points: list[SeriesPoint] = []
    for action in actions:
        consensus += action.value - latest.get(action.user_id, 0)
        latest[action.user_id] = action.value
        momentum += action.value
        points.append(SeriesPoint(at=action.created_at, consensus=consensus, momentum=momentum))
    return points


def audit_positions(conn: Any, session_id: str) -> list[str]:
    """Compare stored positions with the last action per user; return mismatches."""
    expected = replay_positions(action_history(conn, session_id))
    with read_lock(conn):
        stored = {p.user_id: p.value for p in list_positions(conn, session_id)}
    problems: list[str] = []
    for user_id in sorted(set(expected) | set(stored)):
        if user_id not in stored:
            problems.append(f"user {user_id}: action logged but no position stored")
        elif user_id not in expected:
            problems.append(f"user {user_id}: position stored without any action")
        elif stored[user_id] != expected[user_id]:
            problems.append(
                f"user {user_id}: position {stored[user_id]} != last action {expected[user_id]}"
            )
    return problems
