from __future__ import annotations

import pytest

from src.auth.users import ensure_admin, identity_for, register_user
from src.db.sqlite_client import get_user_by_email
from src.engine.tally import action_history, final_tally, sentiment_series
from src.engine.voting import cast_vote, current_standing
from src.sessions.manager import close_vote_session, create_vote_session, open_vote_session
from src.utils.health import readiness


@pytest.mark.smoke
def test_critical_user_journey_module_level(sqlite_db):
    ensure_admin(sqlite_db, "admin@example.com")
    admin = identity_for(get_user_by_email(sqlite_db, "admin@example.com"))
    voter = identity_for(register_user(sqlite_db, "voter@example.com"))

    session = create_vote_session(
        sqlite_db, admin, "Budget 2025", "2025-01-06T09:00:00Z", "2025-01-20T17:00:00Z"
    )
    open_vote_session(sqlite_db, admin, session.id)
    cast_vote(sqlite_db, voter, 1)
    standing = current_standing(sqlite_db, voter.user_id)
    close_vote_session(sqlite_db, admin, session.id)
    result = final_tally(sqlite_db, session.id)
    series = sentiment_series(action_history(sqlite_db, session.id))

    assert readiness(sqlite_db)["ok"] is True
    assert standing.my_position.value == 1
    assert result.total == 1
    assert result.is_final is True
    assert [(p.consensus, p.momentum) for p in series] == [(1, 1)]
