"""User registry consulted by the request layer.

Credentials are not stored here; the identity collaborator verifies them and
hands the core a user id and role.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any

from src.auth.identity import Identity, require_admin
from src.db.records import ROLE_ADMIN, ROLE_USER, User
from src.db.sqlite_client import get_app_settings as _read_app_settings
from src.db.sqlite_client import get_user as _get_user
from src.db.sqlite_client import (
    get_user_by_email,
    insert_user,
    is_unique_violation,
    normalize_email,
    set_app_setting,
    transaction,
    utc_now,
)
from src.engine.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
REGISTRATIONS_CLOSED_KEY = "registrations_closed"


def validate_email(email: str) -> str | None:
    cleaned = normalize_email(email or "")
    if not cleaned:
        return "Email is required."
    if len(cleaned) > 254:
        return "Email must be at most 254 characters."
    if not EMAIL_PATTERN.match(cleaned):
        return "Email address is not valid."
    return None


def ensure_admin(conn: Any, email: str, now: datetime | None = None) -> bool:
    """Create the bootstrap admin once; return False when it already exists."""
    error = validate_email(email)
    if error:
        raise ValidationError(error, field="email")
    with transaction(conn):
        if get_user_by_email(conn, email) is not None:
            logger.info("Admin account %s already exists", normalize_email(email))
            return False
        insert_user(conn, email, ROLE_ADMIN, now or utc_now())
    logger.info("Admin account %s created", normalize_email(email))
    return True


def registrations_closed(conn: Any) -> bool:
    return _read_app_settings(conn).get(REGISTRATIONS_CLOSED_KEY) == "true"


def set_registrations_closed(conn: Any, actor: Identity | None, closed: bool) -> bool:
    require_admin(actor)
    with transaction(conn):
        set_app_setting(conn, REGISTRATIONS_CLOSED_KEY, "true" if closed else "false")
    logger.info("Registrations %s", "closed" if closed else "opened")
    return closed


def get_app_settings(conn: Any) -> dict[str, str]:
    return _read_app_settings(conn)


def register_user(conn: Any, email: str, now: datetime | None = None) -> User:
    error = validate_email(email)
    if error:
        raise ValidationError(error, field="email")
    if registrations_closed(conn):
        raise ForbiddenError("Registrations are closed.")
    try:
        with transaction(conn):
            if get_user_by_email(conn, email) is not None:
                raise ConflictError("Email already exists.")
            return insert_user(conn, email, ROLE_USER, now or utc_now())
    except Exception as exc:
        if is_unique_violation(exc):
            raise ConflictError("Email already exists.") from exc
        raise


def get_user(conn: Any, user_id: str) -> User:
    user = _get_user(conn, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    return user


def identity_for(user: User) -> Identity:
    return Identity(user_id=user.id, role=user.role)
