"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from authgate.config import (
    DEFAULT_INACTIVITY_TIMEOUT_SECONDS,
    DEFAULT_MANUAL_GUARD_GRACE_MS,
    DEFAULT_RECOVERY_MARKER,
    Settings,
    get_settings,
    reset_settings_cache,
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in (
        "IDENTITY_URL",
        "IDENTITY_API_KEY",
        "APP_BASE_URL",
        "INACTIVITY_TIMEOUT_SECONDS",
        "MANUAL_GUARD_GRACE_MS",
        "RECOVERY_MARKER",
        "HTTP_TIMEOUT_SECONDS",
        "USE_MEMORY_BACKENDS",
        "PROFILES_TABLE",
    ):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


class TestSettingsDefaults:
    def test_defaults(self, clean_env):
        settings = Settings.from_env()

        assert settings.inactivity_timeout_seconds == DEFAULT_INACTIVITY_TIMEOUT_SECONDS
        assert settings.manual_guard_grace_ms == DEFAULT_MANUAL_GUARD_GRACE_MS
        assert settings.manual_guard_grace_seconds == pytest.approx(0.3)
        assert settings.recovery_marker == DEFAULT_RECOVERY_MARKER
        assert settings.use_memory_backends is False
        assert settings.profiles_table == "profiles"


class TestSettingsFromEnv:
    def test_environment_overrides(self, clean_env, monkeypatch):
        monkeypatch.setenv("INACTIVITY_TIMEOUT_SECONDS", "60")
        monkeypatch.setenv("MANUAL_GUARD_GRACE_MS", "0")
        monkeypatch.setenv("USE_MEMORY_BACKENDS", "true")
        monkeypatch.setenv("IDENTITY_URL", "https://project.example.com")

        settings = Settings.from_env()

        assert settings.inactivity_timeout_seconds == 60
        assert settings.manual_guard_grace_ms == 0
        assert settings.use_memory_backends is True
        assert settings.identity_url == "https://project.example.com"

    def test_dotenv_file_is_read(self, clean_env, monkeypatch):
        (clean_env / ".env").write_text("RECOVERY_MARKER=flow=reset\nPROFILES_TABLE=staff\n")
        monkeypatch.setenv("PROFILES_TABLE", "people")

        settings = Settings.from_env()

        assert settings.recovery_marker == "flow=reset"
        assert settings.profiles_table == "people"

    def test_cache_reset(self, clean_env, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("PROFILES_TABLE", "staff")
        reset_settings_cache()

        assert get_settings().profiles_table == "staff"


class TestSettingsValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"inactivity_timeout_seconds": 0},
            {"http_timeout_seconds": -1},
            {"manual_guard_grace_ms": -5},
            {"recovery_marker": "   "},
            {"identity_url": "ftp://project.example.com"},
            {"app_base_url": "audits.example.com"},
        ],
    )
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ValidationError):
            Settings(**overrides)

    def test_marker_is_stripped(self):
        assert Settings(recovery_marker=" type=recovery ").recovery_marker == "type=recovery"
