from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

TALLY_MODES = ("consensus", "momentum")
MIN_TOKEN_SECRET_LENGTH = 16


def _get_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str
    sqlite_db_path: str
    log_level: str
    daily_limit: bool
    tally_mode: str
    admin_email: str
    token_secret: str


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "").strip(),
        sqlite_db_path=os.getenv("SQLITE_DB_PATH", "data/votebox.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        daily_limit=_get_bool_env("VOTE_DAILY_LIMIT", False),
        tally_mode=os.getenv("TALLY_MODE", "consensus").strip().lower(),
        admin_email=os.getenv("ADMIN_EMAIL", "admin@example.com").strip().lower(),
        # Signing secret for the identity collaborator; rotated by changing the env.
        token_secret=os.getenv("TOKEN_SECRET", ""),
    )


def validate_settings(settings: Settings) -> list[str]:
    errors: list[str] = []
    if settings.database_url and not settings.database_url.startswith(
        ("postgres://", "postgresql://")
    ):
        errors.append("DATABASE_URL must start with postgres:// or postgresql://")
    if not settings.database_url and not settings.sqlite_db_path.strip():
        errors.append("SQLITE_DB_PATH is required when DATABASE_URL is not set")
    if not isinstance(logging.getLevelName(settings.log_level), int):
        errors.append(f"LOG_LEVEL '{settings.log_level}' is not a logging level")
    if settings.tally_mode not in TALLY_MODES:
        errors.append(f"TALLY_MODE must be one of: {', '.join(TALLY_MODES)}")
    if "@" not in settings.admin_email:
        errors.append("ADMIN_EMAIL must be an email address")
    if not settings.token_secret:
        errors.append("TOKEN_SECRET is required")
    elif len(settings.token_secret) < MIN_TOKEN_SECRET_LENGTH:
        errors.append(f"TOKEN_SECRET must be at least {MIN_TOKEN_SECRET_LENGTH} characters")
    return errors


def ensure_runtime_dirs(settings: Settings) -> None:
    if not settings.database_url:
        Path(settings.sqlite_db_path).parent.mkdir(parents=True, exist_ok=True)
