"""
Tests for settings and database URL handling.
"""

from content_desk.config import Settings
from content_desk.db.base import get_database_url


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.database_url == "sqlite:///./content_desk.db"
        assert settings.reject_reason_min_length == 20
        assert settings.schedule_max_attempts == 3
        assert settings.default_quiet_hours_start == "22:00"
        assert settings.default_quiet_hours_end == "08:00"
        assert settings.delivery_webhook_url is None

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://desk:secret@db/desk")
        monkeypatch.setenv("SCHEDULE_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("WORKER_POLL_INTERVAL", "5")

        settings = Settings(_env_file=None)

        assert settings.database_url == "postgresql://desk:secret@db/desk"
        assert settings.schedule_max_attempts == 7
        assert settings.worker_poll_interval == 5


class TestDatabaseUrl:
    """Async drivers are rewritten to their synchronous counterparts."""

    def test_asyncpg_becomes_psycopg(self):
        url = get_database_url("postgresql+asyncpg://desk:secret@db:5432/desk")

        assert url == "postgresql+psycopg://desk:secret@db:5432/desk"

    def test_aiosqlite_becomes_sqlite(self):
        assert get_database_url("sqlite+aiosqlite:///./desk.db") == "sqlite:///./desk.db"

    def test_sync_url_unchanged(self):
        assert get_database_url("postgresql://desk:secret@db/desk") == "postgresql://desk:secret@db/desk"
