"""Tests for process settings (gptrelay.config)."""

from __future__ import annotations

import pytest

from gptrelay.config import RelaySettings, clear_settings_cache, get_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "CONFIG",
        "CONFIG_PATH",
        "LLM_PROVIDER",
        "LOGFIRE_TOKEN",
        "CONFIG_RELOAD_DEBOUNCE",
        "STARTUP_RETRY_DELAY",
        "STARTUP_MAX_ATTEMPTS",
    ):
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


def _settings() -> RelaySettings:
    return RelaySettings(_env_file=None)


class TestDefaults:
    def test_defaults(self):
        settings = _settings()
        assert settings.config_path == "config.yml"
        assert settings.llm_provider == "openai"
        assert settings.logfire_token is None
        assert settings.config_reload_debounce == 2.0
        assert settings.startup_max_attempts == 0


class TestEnvironment:
    def test_config_env_var(self, monkeypatch):
        monkeypatch.setenv("CONFIG", "/etc/gptrelay/config.yml")
        assert _settings().config_path == "/etc/gptrelay/config.yml"

    def test_config_path_env_var(self, monkeypatch):
        monkeypatch.setenv("CONFIG_PATH", "other.yml")
        assert _settings().config_path == "other.yml"

    def test_numeric_values_parsed(self, monkeypatch):
        monkeypatch.setenv("CONFIG_RELOAD_DEBOUNCE", "0.5")
        monkeypatch.setenv("STARTUP_MAX_ATTEMPTS", "3")
        settings = _settings()
        assert settings.config_reload_debounce == 0.5
        assert settings.startup_max_attempts == 3

    def test_logfire_token_is_secret(self, monkeypatch):
        monkeypatch.setenv("LOGFIRE_TOKEN", "pylf_secret")
        settings = _settings()
        assert settings.logfire_token.get_secret_value() == "pylf_secret"
        assert "pylf_secret" not in repr(settings)

    def test_unknown_provider_warns(self, monkeypatch):
        monkeypatch.setenv("LLM_PROVIDER", "nonesuch")
        with pytest.warns(UserWarning, match="Unknown LLM_PROVIDER"):
            settings = _settings()
        assert settings.llm_provider == "nonesuch"


class TestModelString:
    def test_bare_name_gets_provider_prefix(self):
        assert _settings().model_string("gpt-4o-mini") == "openai:gpt-4o-mini"

    def test_prefixed_name_unchanged(self):
        assert _settings().model_string("anthropic:claude-3-5-haiku-latest") == (
            "anthropic:claude-3-5-haiku-latest"
        )

    def test_provider_from_env(self, monkeypatch):
        monkeypatch.setenv("LLM_PROVIDER", "groq")
        assert _settings().model_string("llama-3.1-8b-instant") == "groq:llama-3.1-8b-instant"


class TestCaching:
    def test_get_settings_cached(self):
        assert get_settings() is get_settings()

    def test_clear_cache_rereads_environment(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("CONFIG", "changed.yml")
        clear_settings_cache()
        second = get_settings()
        assert second is not first
        assert second.config_path == "changed.yml"
