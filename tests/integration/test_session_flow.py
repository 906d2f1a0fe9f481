from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from src.engine.errors import ConflictError, NotFoundError, RateLimitedError
from src.engine.tally import action_history, final_tally, live_tally
from src.engine.voting import cast_vote, get_user_position
from src.sessions.manager import (
    close_vote_session,
    create_vote_session,
    delete_vote_session,
    open_vote_session,
)

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)
T1 = datetime(2025, 1, 20, 17, 0, tzinfo=UTC)


@pytest.mark.integration
def test_session_vote_flow(sqlite_db, admin, voter, other_voter):
    session = create_vote_session(sqlite_db, admin, "Budget 2025", T0, T1)
    assert session.status == "scheduled"
    opened = open_vote_session(sqlite_db, admin, session.id)
    assert opened.status == "open"
    assert opened.closed_at is None
    rival = create_vote_session(sqlite_db, admin, "Rival", T0, T1)
    with pytest.raises(ConflictError):
        open_vote_session(sqlite_db, admin, rival.id)

    assert cast_vote(sqlite_db, voter, 1).tally.total == 1
    assert cast_vote(sqlite_db, other_voter, -1).tally.total == 0
    receipt = cast_vote(sqlite_db, voter, -1)
    assert receipt.position.value == -1
    assert receipt.tally.total == -2
    history = [(a.user_id, a.value) for a in action_history(sqlite_db, session.id)]
    assert history == [("user-1", 1), ("user-2", -1), ("user-1", -1)]

    closed = close_vote_session(sqlite_db, admin, session.id)
    assert closed.status == "closed"
    assert closed.closed_at is not None
    result = final_tally(sqlite_db, session.id)
    assert result.total == -2
    assert result.voters_count == 2
    assert result.is_final is True


@pytest.mark.integration
def test_daily_limit_flow(sqlite_db, voter, open_session):
    ten_am = datetime(2025, 1, 7, 10, 0, tzinfo=UTC)
    cast_vote(sqlite_db, voter, 1, daily_limit=True, now=ten_am)
    with pytest.raises(RateLimitedError):
        cast_vote(sqlite_db, voter, -1, daily_limit=True, now=ten_am + timedelta(hours=5))
    receipt = cast_vote(sqlite_db, voter, -1, daily_limit=True, now=ten_am + timedelta(days=1))
    assert receipt.position.value == -1


@pytest.mark.integration
def test_delete_removes_votes_and_history(sqlite_db, admin, voter, other_voter, open_session):
    cast_vote(sqlite_db, voter, 1)
    cast_vote(sqlite_db, other_voter, -1)
    delete_vote_session(sqlite_db, admin, open_session.id)
    for table in ("positions", "actions"):
        row = sqlite_db.execute(
            f"SELECT COUNT(*) AS c FROM {table} WHERE session_id = ?", (open_session.id,)
        ).fetchone()
        assert int(row["c"]) == 0
    assert get_user_position(sqlite_db, open_session.id, voter.user_id) is None
    with pytest.raises(NotFoundError):
        live_tally(sqlite_db, open_session.id)
    with pytest.raises(NotFoundError):
        action_history(sqlite_db, open_session.id)
