from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

import streamlit as st

from src.auth.identity import Identity
from src.auth.tokens import identity_from_token, issue_token
from src.auth.users import (
    ensure_admin,
    get_app_settings,
    get_user,
    register_user,
    registrations_closed,
    set_registrations_closed,
)
from src.config.settings import ensure_runtime_dirs, load_settings, validate_settings
from src.db.records import Session
from src.db.sqlite_client import get_connection, init_schema
from src.engine.errors import VotingError
from src.engine.tally import Tally, action_history, audit_positions, final_tally, sentiment_series
from src.engine.voting import cast_vote, current_standing
from src.sessions.manager import (
    close_vote_session,
    create_vote_session,
    delete_vote_session,
    list_vote_sessions,
    open_vote_session,
    update_vote_session,
)
from src.utils.health import readiness
from src.utils.logging import configure_logging

logger = logging.getLogger("src.app")

VOTE_LABELS = {1: "For (+1)", 0: "Rescind (0)", -1: "Against (-1)"}


def _format_datetime_for_ui(value: datetime | None) -> str:
    if value is None:
        return ""
    return value.astimezone(UTC).strftime("%a, %b %d at %I:%M %p UTC")


def _format_total(total: int) -> str:
    return f"{total:+d}" if total else "0"


@st.cache_resource
def get_runtime() -> dict[str, Any]:
    settings = load_settings()
    configure_logging(settings.log_level)
    ensure_runtime_dirs(settings)
    errors = validate_settings(settings)
    conn: Any | None = None
    try:
        conn = get_connection(settings.sqlite_db_path)
        init_schema(conn)
        if ensure_admin(conn, settings.admin_email):
            logger.info(
                "Issue the admin sign-in token with: python -m src.auth.tokens --email %s",
                settings.admin_email,
            )
    except Exception as exc:
        logger.exception("Database initialization failed")
        errors.append(f"Database initialization failed: {exc}")
    return {"settings": settings, "conn": conn, "errors": errors}


def init_state() -> None:
    defaults = {
        "current_view": "public",
        "auth_token": None,
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def current_identity() -> Identity | None:
    token = st.session_state.auth_token
    if not token:
        return None
    runtime = get_runtime()
    identity = identity_from_token(runtime["conn"], token, runtime["settings"].token_secret)
    if identity is None:
        st.session_state.auth_token = None
    return identity


def render_tally(tally: Tally) -> None:
    col_total, col_voters, col_for, col_against = st.columns(4)
    col_total.metric(f"Tally ({tally.mode})", _format_total(tally.total))
    col_voters.metric("Voters", tally.voters_count)
    col_for.metric("For", tally.for_count)
    col_against.metric("Against", tally.against_count)
    if tally.is_final:
        st.caption("Final result: this session is closed.")


def render_history_chart(session_id: str) -> None:
    conn = get_runtime()["conn"]
    points = sentiment_series(action_history(conn, session_id))
    if not points:
        st.caption("No votes recorded yet.")
        return
    st.line_chart(
        {
            "consensus": [point.consensus for point in points],
            "momentum": [point.momentum for point in points],
        }
    )


def render_sidebar_identity() -> None:
    runtime = get_runtime()
    conn = runtime["conn"]
    secret = runtime["settings"].token_secret
    with st.sidebar:
        st.subheader("Identity")
        identity = current_identity()
        if identity is not None:
            user = get_user(conn, identity.user_id)
            st.write(f"Signed in as **{user.email}** ({user.role})")
            if st.session_state.get("issued_token"):
                st.caption("Your sign-in token. Keep it; it is shown once.")
                st.code(st.session_state.pop("issued_token"))
            if st.button("Sign out"):
                st.session_state.auth_token = None
                st.rerun()
            return
        token = st.text_input("Sign-in token", type="password", key="identity_token")
        if st.button("Sign in"):
            if identity_from_token(conn, token, secret) is None:
                st.error("Invalid or expired token.")
            else:
                st.session_state.auth_token = token.strip()
                st.rerun()
        st.divider()
        email = st.text_input("Email", key="register_email")
        if st.button("Register", disabled=registrations_closed(conn)):
            try:
                user = register_user(conn, email)
                issued = issue_token(user, secret)
                st.session_state.auth_token = issued
                st.session_state.issued_token = issued
                st.rerun()
            except VotingError as exc:
                st.error(str(exc))


def render_public() -> None:
    runtime = get_runtime()
    conn = runtime["conn"]
    settings = runtime["settings"]
    identity = current_identity()
    standing = current_standing(
        conn,
        identity.user_id if identity else None,
        tally_mode=settings.tally_mode,
    )
    if standing is None:
        st.info("No vote session is open right now.")
    else:
        session = standing.session
        st.subheader(session.title)
        st.caption(
            f"{_format_datetime_for_ui(session.starts_at)} - "
            f"{_format_datetime_for_ui(session.ends_at)}"
        )
        render_tally(standing.tally)
        if identity is None:
            st.caption("Sign in to vote.")
        else:
            mine = standing.my_position
            st.write(
                "Your position: "
                + (VOTE_LABELS[mine.value] if mine is not None else "not voted yet")
            )
            choice = st.radio(
                "Your vote",
                options=list(VOTE_LABELS),
                format_func=lambda value: VOTE_LABELS[value],
                horizontal=True,
            )
            if st.button("Cast vote"):
                try:
                    cast_vote(
                        conn,
                        identity,
                        int(choice),
                        daily_limit=settings.daily_limit,
                        tally_mode=settings.tally_mode,
                    )
                    st.success("Vote recorded.")
                    st.rerun()
                except VotingError as exc:
                    st.error(str(exc))
        st.markdown("### How sentiment evolved")
        render_history_chart(session.id)

    st.markdown("### Results")
    sessions = [s for s in list_vote_sessions(conn) if s.status != "scheduled"]
    if not sessions:
        st.caption("No results yet.")
        return
    picked = st.selectbox(
        "Session",
        options=sessions,
        format_func=lambda s: f"{s.title} ({s.status})",
    )
    if picked is not None:
        render_tally(final_tally(conn, picked.id, mode=settings.tally_mode))
        render_history_chart(picked.id)


def _session_times_inputs(prefix: str, session: Session | None = None) -> tuple[datetime, datetime]:
    start_default = session.starts_at.date() if session else date.today()
    end_default = session.ends_at.date() if session else date.today() + timedelta(days=7)
    start_day = st.date_input("Starts", value=start_default, key=f"{prefix}_start")
    end_day = st.date_input("Ends", value=end_default, min_value=start_day, key=f"{prefix}_end")
    return (
        datetime.combine(start_day, time.min, tzinfo=UTC),
        datetime.combine(end_day, time.max, tzinfo=UTC),
    )


def render_admin(identity: Identity) -> None:
    conn = get_runtime()["conn"]
    st.subheader("Session admin")
    with st.form("create_session"):
        title = st.text_input("Title")
        starts_at, ends_at = _session_times_inputs("create")
        if st.form_submit_button("Create session"):
            try:
                create_vote_session(conn, identity, title, starts_at, ends_at)
                st.success("Session created.")
            except VotingError as exc:
                st.error(str(exc))

    for session in list_vote_sessions(conn):
        with st.expander(f"{session.title} [{session.status}]"):
            st.caption(f"Created {_format_datetime_for_ui(session.created_at)}")
            if session.closed_at:
                st.caption(f"Closed {_format_datetime_for_ui(session.closed_at)}")
            new_title = st.text_input("Title", value=session.title, key=f"title_{session.id}")
            starts_at, ends_at = _session_times_inputs(session.id, session)
            b_save, b_open, b_close, b_delete, b_audit = st.columns(5)
            try:
                with b_save:
                    if st.button("Save", key=f"save_{session.id}"):
                        update_vote_session(
                            conn,
                            identity,
                            session.id,
                            {"title": new_title, "starts_at": starts_at, "ends_at": ends_at},
                        )
                        st.rerun()
                with b_open:
                    if st.button("Open", key=f"open_{session.id}"):
                        open_vote_session(conn, identity, session.id)
                        st.rerun()
                with b_close:
                    if st.button("Close", key=f"close_{session.id}"):
                        close_vote_session(conn, identity, session.id)
                        st.rerun()
                with b_delete:
                    if st.button("Delete", key=f"delete_{session.id}"):
                        delete_vote_session(conn, identity, session.id)
                        st.rerun()
                with b_audit:
                    if st.button("Audit", key=f"audit_{session.id}"):
                        problems = audit_positions(conn, session.id)
                        if problems:
                            for problem in problems:
                                st.warning(problem)
                        else:
                            st.success("Positions match the action log.")
            except VotingError as exc:
                st.error(str(exc))

    st.subheader("Registrations")
    closed = registrations_closed(conn)
    if st.toggle("Registrations closed", value=closed) != closed:
        set_registrations_closed(conn, identity, not closed)
        st.rerun()
    with st.expander("App settings"):
        st.json(get_app_settings(conn))


def main() -> None:
    st.set_page_config(page_title="Votebox", page_icon=":ballot_box:", layout="wide")
    init_state()
    runtime = get_runtime()
    if runtime["errors"]:
        st.error("Startup validation failed.")
        for error in runtime["errors"]:
            st.write(f"- {error}")
        return
    status = readiness(runtime["conn"])
    if not status["ok"]:
        st.error("Readiness check failed.")
        st.json(status)
        return

    st.title("Votebox")
    render_sidebar_identity()
    identity = current_identity()
    views = ["public", "admin"] if identity is not None and identity.is_admin else ["public"]
    if st.session_state.current_view not in views:
        st.session_state.current_view = "public"
    st.session_state.current_view = st.radio(
        "View", options=views, horizontal=True, label_visibility="collapsed"
    )
    if st.session_state.current_view == "admin" and identity is not None:
        render_admin(identity)
    else:
        render_public()


if __name__ == "__main__":
    main()
