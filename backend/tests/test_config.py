"""Tests for settings-derived database URLs and error sanitizing."""

import pytest

from clarity.config import Settings, sanitize_error


@pytest.mark.parametrize(
    ("override", "async_url", "sync_url"),
    [
        (
            "postgres://u:p@db.example.com/clarity?sslmode=require",
            "postgresql+asyncpg://u:p@db.example.com/clarity",
            "postgresql://u:p@db.example.com/clarity?sslmode=require",
        ),
        (
            "postgresql+asyncpg://u:p@localhost/clarity",
            "postgresql+asyncpg://u:p@localhost/clarity",
            "postgresql://u:p@localhost/clarity",
        ),
        (
            "sqlite+aiosqlite:///./clarity.db",
            "sqlite+aiosqlite:///./clarity.db",
            "sqlite:///./clarity.db",
        ),
    ],
)
def test_database_urls_from_override(override, async_url, sync_url):
    settings = Settings(database_url_override=override)
    assert settings.database_url == async_url
    assert settings.database_url_sync == sync_url


def test_database_url_from_parts():
    settings = Settings(database_url_override=None, postgres_password="pw", postgres_host="db")
    assert settings.database_url == "postgresql+asyncpg://clarity:pw@db:5432/clarity"
    assert settings.database_requires_ssl is False


def test_ssl_detected_from_override():
    settings = Settings(database_url_override="postgres://u@h/d?sslmode=require")
    assert settings.database_requires_ssl is True


def test_sanitize_error_hides_details_outside_development(monkeypatch):
    from clarity import config

    monkeypatch.setattr(config.get_settings(), "environment", "production")
    assert sanitize_error(RuntimeError("db password leaked"), generic_message="Oops") == "Oops"

    monkeypatch.setattr(config.get_settings(), "environment", "development")
    assert sanitize_error(RuntimeError("details")) == "details"
