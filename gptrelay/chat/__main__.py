"""Entry point for the gptrelay Telegram bot.

Starts the bot using long polling. Intended to be run as a module:

    python -m gptrelay.chat

or via the installed ``gptrelay`` script.

Process settings come from environment variables (or a .env file); the bot
itself is configured by the YAML file named by CONFIG (default config.yml),
which is watched and hot-reloaded while the bot runs.

A failed start-up (bad token, network down, broken config) is retried after
STARTUP_RETRY_DELAY seconds instead of exiting.
"""

from __future__ import annotations

import logging
import os
import time

import logfire
from telegram import Update

from gptrelay.chat.bot import build_application
from gptrelay.completion import CompletionClient
from gptrelay.config import PROVIDER_API_KEY_ENV, RelaySettings, get_settings
from gptrelay.config_file import ConfigProvider

# ── Logging ───────────────────────────────────────────────────────────────────

logging.basicConfig(
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    level=logging.INFO,
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


# ── Start-up ──────────────────────────────────────────────────────────────────


def _export_api_key(settings: RelaySettings, api_key: str | None) -> None:
    """Expose the config file's API key under the env var pydantic-ai reads."""
    key_env_var = PROVIDER_API_KEY_ENV.get(settings.llm_provider)
    if key_env_var is None:
        return
    if api_key and not os.environ.get(key_env_var):
        os.environ[key_env_var] = api_key
    elif not os.environ.get(key_env_var):
        logger.warning(
            "LLM_PROVIDER is '%s' but neither %s nor auth.chatgpt_api_key is set",
            settings.llm_provider,
            key_env_var,
        )


def run_once(settings: RelaySettings) -> None:
    """Load config, start watching it, and poll until SIGINT / SIGTERM."""
    provider = ConfigProvider(settings.config_path, debounce_seconds=settings.config_reload_debounce)
    _export_api_key(settings, provider.current.auth.chatgpt_api_key)

    application = build_application(provider, CompletionClient())
    provider.start()
    logger.info("Bot started (model: %s)", provider.current.completion_params.model)
    try:
        # run_polling installs SIGINT/SIGTERM handlers and stops the bot cleanly.
        application.run_polling(
            allowed_updates=Update.ALL_TYPES,
            drop_pending_updates=True,
            close_loop=False,
        )
    finally:
        provider.stop()


def run_with_retries(settings: RelaySettings) -> None:
    """Call run_once, retrying failed start-ups after a fixed delay."""
    attempt = 0
    while True:
        attempt += 1
        try:
            run_once(settings)
            return
        except Exception:
            logger.exception("Start-up failed (attempt %d)", attempt)
            if 0 < settings.startup_max_attempts <= attempt:
                raise
        logger.info("Restart after %g seconds...", settings.startup_retry_delay)
        time.sleep(settings.startup_retry_delay)


# ── Entrypoint ────────────────────────────────────────────────────────────────


def main() -> None:
    """Start the gptrelay bot with long polling."""
    settings = get_settings()

    logfire_token = settings.logfire_token
    logfire.configure(
        token=logfire_token.get_secret_value() if logfire_token else None,
        service_name="gptrelay",
        send_to_logfire="if-token-present",
    )

    run_with_retries(settings)


if __name__ == "__main__":
    main()
