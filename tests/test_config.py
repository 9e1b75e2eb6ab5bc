"""Tests for application settings."""

import pytest

from cryptopay_core.config import Settings, settings

from conftest import TEST_SETTINGS, apply_test_settings


class TestSettings:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("CRYPTOPAY_CONFIRMATION_TIMEOUT_SECONDS", raising=False)
        monkeypatch.delenv("CRYPTOPAY_ABANDON_PROCESSING_SECONDS", raising=False)
        fresh = Settings()
        assert fresh.confirmation_timeout_seconds == 300.0
        assert fresh.abandon_processing_seconds == 86400.0

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("CRYPTOPAY_STALE_PROCESSING_SECONDS", "30")
        assert Settings().stale_processing_seconds == 30.0

    def test_test_overrides_active(self):
        for name, value in TEST_SETTINGS.items():
            assert getattr(settings, name) == value

    def test_test_overrides_are_undone(self):
        """Test the per-test overrides restore whatever settings held before them."""
        before = settings.model_dump()
        with pytest.MonkeyPatch.context() as mp:
            mp.setattr(settings, "chain_mode", "rpc")
            mp.setattr(settings, "confirmation_timeout_seconds", 42.0)
            leaked = settings.model_dump()
            with pytest.MonkeyPatch.context() as inner:
                apply_test_settings(inner)
                assert settings.confirmation_timeout_seconds == 5.0
            assert settings.model_dump() == leaked
        assert settings.model_dump() == before
