"""gptrelay process settings — centralized environment variable management.

The bot itself is configured by a YAML file (see gptrelay.models and
gptrelay.config_file). This module only declares the handful of process-level
knobs that decide where that file lives and how the process runs around it.

No module should call os.environ directly — import settings from here instead.

Usage:
    from gptrelay.config import get_settings

    settings = get_settings()
    path = settings.config_path

Environment variables:

  Optional:
    CONFIG                  — Path to the YAML configuration file.
                              Default: "config.yml".
    LLM_PROVIDER            — pydantic-ai provider prefix used for model names
                              that carry no "provider:" prefix. Default: "openai".
    LOGFIRE_TOKEN           — Logfire project token for observability.
                              If unset, logfire runs in local/dev mode.
    CONFIG_RELOAD_DEBOUNCE  — Seconds to wait after a config file change before
                              reloading it. Default: 2.0.
    STARTUP_RETRY_DELAY     — Seconds to wait before retrying a failed start-up.
                              Default: 5.0.
    STARTUP_MAX_ATTEMPTS    — Start-up attempts before giving up. 0 = forever.
"""

from __future__ import annotations

import warnings
from functools import lru_cache

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Mapping from provider name → API key environment variable read by pydantic-ai.
# The YAML file's auth.chatgpt_api_key is exported under this name at start-up
# when the variable is not already set.
PROVIDER_API_KEY_ENV: dict[str, str | None] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "google": "GOOGLE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "ollama": None,
}


class RelaySettings(BaseSettings):
    """Process-level settings for the gptrelay bot.

    Field names map to env vars by uppercasing: llm_provider → LLM_PROVIDER.
    config_path additionally answers to CONFIG.

    Instantiate via get_settings() to benefit from caching.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    config_path: str = Field(
        default="config.yml",
        validation_alias=AliasChoices("CONFIG", "CONFIG_PATH"),
    )
    """Path to the YAML configuration file. Watched for changes at runtime."""

    llm_provider: str = "openai"
    """Default provider prefix for model names like "gpt-4o-mini"."""

    logfire_token: SecretStr | None = None
    """Logfire project token. Optional — if unset, logfire runs in local mode."""

    config_reload_debounce: float = 2.0
    """Seconds of quiet after a file change before the config is reloaded."""

    startup_retry_delay: float = 5.0
    """Seconds between start-up attempts (bad token, network down, ...)."""

    startup_max_attempts: int = 0
    """Maximum start-up attempts. 0 or negative retries forever."""

    @field_validator("llm_provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        known = set(PROVIDER_API_KEY_ENV.keys())
        if v not in known:
            warnings.warn(
                f"Unknown LLM_PROVIDER '{v}'. API key export will be skipped. "
                f"Known providers: {', '.join(sorted(known))}",
                stacklevel=2,
            )
        return v

    def model_string(self, model: str) -> str:
        """pydantic-ai model identifier for a configured model name.

        Names that already carry a provider ("anthropic:claude-3-5-haiku-latest")
        are returned unchanged.
        """
        if ":" in model:
            return model
        return f"{self.llm_provider}:{model}"


@lru_cache(maxsize=1)
def get_settings() -> RelaySettings:
    """Return the cached RelaySettings instance.

    Reads from environment on first call, then caches for the process lifetime.
    Call clear_settings_cache() in tests to reset between test cases.
    """
    return RelaySettings()


def clear_settings_cache() -> None:
    """Clear the settings cache (tests that vary environment variables)."""
    get_settings.cache_clear()
