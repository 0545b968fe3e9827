"""Tests for settings and logging setup."""

import logging

import pytest
from pydantic import ValidationError

from passport_sync.logging_config import configure_logging
from passport_sync.settings import Settings
from passport_sync.sync.orchestrator import create_orchestrator


class TestSettings:
    """Tests for environment-driven configuration."""

    def test_cursor_name_derived_from_source_system(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("SOURCE_SYSTEM", "kisumu-openmrs")

        config = Settings()

        assert config.sync_cursor_name == "kisumu-openmrs-observations"

    def test_explicit_cursor_name_kept(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SYNC_CURSOR_NAME", "legacy-cursor")

        assert Settings().sync_cursor_name == "legacy-cursor"

    def test_nonsense_interval_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SYNC_INTERVAL_SECONDS", "0")

        with pytest.raises(ValidationError):
            Settings()

    def test_orchestrator_built_from_settings(self) -> None:
        config = Settings(
            target_database_url="sqlite+aiosqlite://",
            sync_interval_seconds=30,
            sync_item_attempts=5,
            sync_auto_provision=False,
        )

        orchestrator = create_orchestrator(config)

        assert orchestrator.interval_seconds == 30
        assert orchestrator.item_attempts == 5
        assert orchestrator.resolver.auto_provision is False
        assert orchestrator.cursor_name == "openmrs-observations"
        assert orchestrator.source.page_size == config.source_page_size


class TestConfigureLogging:
    """Tests for logging setup."""

    def test_sets_root_level_and_quiets_sqlalchemy(self) -> None:
        root = logging.getLogger()
        previous = root.level
        try:
            configure_logging("debug")

            assert root.level == logging.DEBUG
            assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        finally:
            root.setLevel(previous)
