"""Signed sign-in tokens.

Token payload:
{
    "sub": <user_id>,
    "iat": <issued_at>,
    "exp": <expires_at>,
    "jti": <unique_id>
}

Tokens are HS256 JWTs signed with ``TOKEN_SECRET``. The role is never read
from the token; it comes from the user registry at verification time, so a
demoted account loses admin rights without waiting for its tokens to expire.
"""

from __future__ import annotations

import argparse
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

import jwt

from src.auth.identity import Identity
from src.auth.users import get_user, identity_for
from src.config.settings import load_settings, validate_settings
from src.db.records import User
from src.db.sqlite_client import get_connection, get_user_by_email, utc_now
from src.engine.errors import NotFoundError
from src.utils.logging import configure_logging

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DEFAULT_TOKEN_TTL = 12 * 3600  # 12 hours


def issue_token(
    user: User,
    secret: str,
    *,
    now: datetime | None = None,
    ttl_seconds: int = DEFAULT_TOKEN_TTL,
) -> str:
    issued_at = now or utc_now()
    payload = {
        "sub": user.id,
        "iat": issued_at,
        "exp": issued_at + timedelta(seconds=ttl_seconds),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def decode_token(token: str, secret: str) -> dict[str, Any]:
    """Verify signature and expiry; raises ``jwt.InvalidTokenError`` subclasses."""
    return jwt.decode(
        token,
        secret,
        algorithms=[ALGORITHM],
        options={"require": ["sub", "iat", "exp"]},
    )


def identity_from_token(conn: Any, token: str | None, secret: str) -> Identity | None:
    """Return the caller's identity, or ``None`` for a missing or invalid token."""
    if not token or not secret:
        return None
    try:
        payload = decode_token(token.strip(), secret)
    except jwt.InvalidTokenError as exc:
        logger.warning("Rejected sign-in token: %s", exc)
        return None
    try:
        return identity_for(get_user(conn, str(payload["sub"])))
    except NotFoundError:
        logger.warning("Sign-in token for unknown user %s", payload["sub"])
        return None


def main() -> None:
    parser = argparse.ArgumentParser(description="Issue a votebox sign-in token.")
    parser.add_argument("--email", required=True)
    parser.add_argument("--ttl-hours", type=int, default=DEFAULT_TOKEN_TTL // 3600)
    args = parser.parse_args()
    settings = load_settings()
    configure_logging(settings.log_level)
    errors = validate_settings(settings)
    if errors:
        raise SystemExit("; ".join(errors))
    conn = get_connection(settings.sqlite_db_path)
    try:
        user = get_user_by_email(conn, args.email)
        if user is None:
            raise SystemExit(f"No account for {args.email}")
        print(issue_token(user, settings.token_secret, ttl_seconds=args.ttl_hours * 3600))
    finally:
        conn.close()


if __name__ == "__main__":
    main()
