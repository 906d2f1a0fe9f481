from __future__ import annotations

from typing import Any, cast

from src.config.settings import Settings, ensure_runtime_dirs, load_settings, validate_settings


def _valid_settings(**overrides: object) -> Settings:
    defaults = {
        "database_url": "",
        "sqlite_db_path": "data/votebox.db",
        "log_level": "INFO",
        "daily_limit": False,
        "tally_mode": "consensus",
        "admin_email": "admin@example.com",
        "token_secret": "s" * 32,
    }
    defaults.update(overrides)
    return Settings(**cast(dict[str, Any], defaults))


def test_validate_settings_accepts_defaults():
    assert validate_settings(_valid_settings()) == []


def test_validate_settings_requires_token_secret():
    """An unset TOKEN_SECRET is an error; there is no built-in fallback."""
    errors = validate_settings(_valid_settings(token_secret=""))
    assert "TOKEN_SECRET is required" in errors


def test_validate_settings_rejects_short_token_secret():
    errors = validate_settings(_valid_settings(token_secret="short"))
    assert any("at least 16" in e for e in errors)


def test_validate_settings_rejects_unknown_tally_mode():
    errors = validate_settings(_valid_settings(tally_mode="volume"))
    assert any("TALLY_MODE" in e for e in errors)


def test_validate_settings_rejects_non_postgres_database_url():
    errors = validate_settings(_valid_settings(database_url="mysql://db"))
    assert any("DATABASE_URL" in e for e in errors)


def test_validate_settings_rejects_bad_log_level_and_admin_email():
    errors = validate_settings(_valid_settings(log_level="LOUD", admin_email="admin"))
    assert any("LOG_LEVEL" in e for e in errors)
    assert "ADMIN_EMAIL must be an email address" in errors


def test_load_settings_reads_environment(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("SQLITE_DB_PATH", "tmp/votes.db")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("VOTE_DAILY_LIMIT", "yes")
    monkeypatch.setenv("TALLY_MODE", " Momentum ")
    monkeypatch.setenv("ADMIN_EMAIL", "Root@Example.com")
    monkeypatch.setenv("TOKEN_SECRET", "rotate-me-please-123")
    settings = load_settings()
    assert settings.sqlite_db_path == "tmp/votes.db"
    assert settings.log_level == "DEBUG"
    assert settings.daily_limit is True
    assert settings.tally_mode == "momentum"
    assert settings.admin_email == "root@example.com"
    assert settings.token_secret == "rotate-me-please-123"
    assert validate_settings(settings) == []


def test_load_settings_defaults(monkeypatch):
    for name in ("DATABASE_URL", "SQLITE_DB_PATH", "VOTE_DAILY_LIMIT", "TALLY_MODE", "TOKEN_SECRET"):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings.sqlite_db_path == "data/votebox.db"
    assert settings.daily_limit is False
    assert settings.tally_mode == "consensus"
    assert settings.token_secret == ""


def test_ensure_runtime_dirs_creates_sqlite_parent(tmp_path):
    target = tmp_path / "nested" / "votebox.db"
    ensure_runtime_dirs(_valid_settings(sqlite_db_path=str(target)))
    assert target.parent.is_dir()
