from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

import src.engine.tally as tally_module
from src.auth.identity import Identity
from src.db.records import Action
from src.engine.errors import NotFoundError, ValidationError
from src.engine.tally import (
    action_history,
    audit_positions,
    final_tally,
    live_tally,
    replay_positions,
    sentiment_series,
)
from src.engine.voting import cast_vote
from src.sessions.manager import close_vote_session

NOON = datetime(2025, 1, 7, 12, 0, tzinfo=UTC)


def _action(action_id: int, user_id: str, value: int) -> Action:
    return Action(
        id=action_id,
        session_id="s",
        user_id=user_id,
        value=value,
        created_at=NOON + timedelta(seconds=action_id),
    )


def test_live_tally_empty_session(sqlite_db, open_session):
    tally = live_tally(sqlite_db, open_session.id)
    assert tally.total == 0
    assert tally.voters_count == 0
    assert tally.mode == "consensus"
    assert tally.is_final is False


def test_live_tally_equals_sum_of_positions(sqlite_db, open_session):
    for index, value in enumerate([1, 1, -1, 0, 1]):
        cast_vote(sqlite_db, Identity(user_id=f"u{index}", role="user"), value)
    tally = live_tally(sqlite_db, open_session.id)
    row = sqlite_db.execute(
        "SELECT SUM(value) AS s FROM positions WHERE session_id = ?", (open_session.id,)
    ).fetchone()
    assert tally.total == int(row["s"]) == 2
    assert tally.voters_count == 5
    assert (tally.for_count, tally.against_count, tally.abstain_count) == (3, 1, 1)


def test_momentum_differs_from_consensus(sqlite_db, voter, other_voter, open_session):
    cast_vote(sqlite_db, voter, 1)
    cast_vote(sqlite_db, voter, 1)
    cast_vote(sqlite_db, voter, 1)
    cast_vote(sqlite_db, other_voter, -1)
    consensus = live_tally(sqlite_db, open_session.id, mode="consensus")
    momentum = live_tally(sqlite_db, open_session.id, mode="momentum")
    assert consensus.total == 0
    assert momentum.total == 2
    assert consensus.voters_count == momentum.voters_count == 2


def test_unknown_mode_rejected(sqlite_db, open_session):
    with pytest.raises(ValidationError):
        live_tally(sqlite_db, open_session.id, mode="volume")


def test_final_tally_marks_closed_sessions_final(sqlite_db, admin, voter, open_session):
    cast_vote(sqlite_db, voter, -1)
    assert final_tally(sqlite_db, open_session.id).is_final is False
    close_vote_session(sqlite_db, admin, open_session.id)
    result = final_tally(sqlite_db, open_session.id)
    assert result.is_final is True
    assert result.session_status == "closed"
    assert result.total == -1


def test_tallies_for_unknown_session_are_not_found(sqlite_db):
    with pytest.raises(NotFoundError):
        live_tally(sqlite_db, "missing")
    with pytest.raises(NotFoundError):
        final_tally(sqlite_db, "missing")
    with pytest.raises(NotFoundError):
        action_history(sqlite_db, "missing")


def test_action_history_is_ordered_and_restartable(sqlite_db, voter, other_voter, open_session):
    cast_vote(sqlite_db, voter, 1, now=NOON)
    cast_vote(sqlite_db, other_voter, -1, now=NOON + timedelta(seconds=1))
    cast_vote(sqlite_db, voter, -1, now=NOON + timedelta(seconds=2))
    history = action_history(sqlite_db, open_session.id, page_size=2)
    first_pass = [(a.user_id, a.value) for a in history]
    second_pass = [(a.user_id, a.value) for a in history]
    assert first_pass == [("user-1", 1), ("user-2", -1), ("user-1", -1)]
    assert second_pass == first_pass


def test_action_history_is_a_snapshot(sqlite_db, voter, open_session):
    cast_vote(sqlite_db, voter, 1)
    history = action_history(sqlite_db, open_session.id)
    cast_vote(sqlite_db, voter, -1)
    assert [a.value for a in history] == [1]
    assert [a.value for a in action_history(sqlite_db, open_session.id)] == [1, -1]


def test_action_history_is_lazy(sqlite_db, voter, open_session, mocker):
    cast_vote(sqlite_db, voter, 1)
    spy = mocker.spy(tally_module, "fetch_actions_page")
    history = action_history(sqlite_db, open_session.id)
    assert spy.call_count == 0
    assert len(list(history)) == 1
    assert spy.call_count == 1


def test_action_history_rejects_bad_page_size(sqlite_db, open_session):
    with pytest.raises(ValidationError):
        action_history(sqlite_db, open_session.id, page_size=0)


def test_replay_positions_keeps_last_value_per_user():
    actions = [_action(1, "a", 1), _action(2, "b", -1), _action(3, "a", 0)]
    assert replay_positions(actions) == {"a": 0, "b": -1}


def test_sentiment_series_tracks_consensus_and_momentum():
    actions = [_action(1, "a", 1), _action(2, "b", -1), _action(3, "a", -1)]
    points = sentiment_series(actions)
    assert [p.consensus for p in points] == [1, 0, -2]
    assert [p.momentum for p in points] == [1, 0, -1]
    assert points[-1].at == actions[-1].created_at


def test_sentiment_series_empty():
    assert sentiment_series([]) == []


def test_audit_positions_clean_after_votes(sqlite_db, voter, other_voter, open_session):
    cast_vote(sqlite_db, voter, 1)
    cast_vote(sqlite_db, other_voter, -1)
    cast_vote(sqlite_db, voter, 0)
    assert audit_positions(sqlite_db, open_session.id) == []


def test_audit_positions_reports_drift(sqlite_db, voter, open_session):
    cast_vote(sqlite_db, voter, 1)
    sqlite_db.execute(
        "UPDATE positions SET value = -1 WHERE session_id = ?", (open_session.id,)
    )
    sqlite_db.commit()
    problems = audit_positions(sqlite_db, open_session.id)
    assert problems == ["user user-1: position -1 != last action 1"]
