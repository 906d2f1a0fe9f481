from __future__ import annotations

import pytest

from src.db.sqlite_client import get_connection, list_positions
from src.engine.tally import action_history, audit_positions, live_tally, replay_positions
from src.engine.voting import cast_vote
from src.sessions.manager import close_vote_session, open_vote_session


@pytest.mark.integration
def test_position_matches_last_action_after_many_votes(sqlite_db, voter, other_voter, open_session):
    for value in (1, -1, 0, 1, -1):
        cast_vote(sqlite_db, voter, value)
    for value in (0, 1):
        cast_vote(sqlite_db, other_voter, value)
    replayed = replay_positions(action_history(sqlite_db, open_session.id))
    stored = {p.user_id: p.value for p in list_positions(sqlite_db, open_session.id)}
    assert replayed == stored == {"user-1": -1, "user-2": 1}
    assert audit_positions(sqlite_db, open_session.id) == []


@pytest.mark.integration
def test_votes_are_durable_across_connections(sqlite_db, db_path, voter, open_session):
    cast_vote(sqlite_db, voter, 1)
    other = get_connection(db_path)
    try:
        assert live_tally(other, open_session.id).total == 1
    finally:
        other.close()


@pytest.mark.integration
def test_reopen_keeps_prior_votes(sqlite_db, admin, voter, open_session):
    cast_vote(sqlite_db, voter, 1)
    close_vote_session(sqlite_db, admin, open_session.id)
    open_vote_session(sqlite_db, admin, open_session.id)
    receipt = cast_vote(sqlite_db, voter, 1)
    assert receipt.tally.total == 1
    assert len(list(action_history(sqlite_db, open_session.id))) == 2
