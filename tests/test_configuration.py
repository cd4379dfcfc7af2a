"""
Tests for settings resolution.
"""

import pytest
from omegaconf.errors import ReadonlyConfigError

from medreport_backend.configuration import is_mock_mode, load_settings


class TestLoadSettings:
    """Tests for load_settings()."""

    def test_environment_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("OPENAI_MODEL", "gpt-test")
        monkeypatch.setenv("AI_MAX_ATTEMPTS", "5")

        settings = load_settings()

        assert settings.ai.model == "gpt-test"
        assert settings.ai.max_attempts == 5

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("OPENAI_MODEL", raising=False)
        monkeypatch.delenv("OCR_LANG", raising=False)

        settings = load_settings()

        assert settings.ai.model == "gpt-4o-mini"
        assert settings.ocr.language == "eng"
        assert settings.queue.concurrency == 1

    def test_overrides_take_precedence(self, monkeypatch):
        monkeypatch.setenv("OCR_LANG", "deu")
        settings = load_settings({"ocr": {"language": "fra"}})
        assert settings.ocr.language == "fra"

    def test_concurrency_other_than_one_rejected(self):
        with pytest.raises(ValueError, match="concurrency"):
            load_settings({"queue": {"concurrency": 2}})

    def test_settings_are_read_only(self):
        settings = load_settings()
        with pytest.raises(ReadonlyConfigError):
            settings.ai.model = "other"


class TestMockMode:
    """Tests for is_mock_mode()."""

    @pytest.mark.parametrize("value,expected", [("true", True), ("1", True), ("false", False), ("0", False)])
    def test_env_values(self, monkeypatch, value, expected):
        monkeypatch.setenv("USE_MOCK_AI", value)
        assert is_mock_mode(load_settings()) is expected
