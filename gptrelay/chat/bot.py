"""Telegram bot application factory for gptrelay.

This module provides build_application() — the single function responsible for
constructing a fully-wired python-telegram-bot Application instance.

Responsibilities:
  - Accept the config provider and completion client, return a ready-to-run Application
  - Register all message and command handlers
  - Publish the bot's command list on start-up
  - Forward config reloads from the watcher thread onto the bot's event loop

Usage (from __main__.py):
    from gptrelay.chat.bot import build_application

    app = build_application(provider, CompletionClient())
    app.run_polling(allowed_updates=Update.ALL_TYPES)
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from telegram import BotCommand
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CommandHandler,
    MessageHandler,
    filters,
)

from gptrelay.chat.handlers import (
    COMPLETION_CLIENT_KEY,
    CONFIG_PROVIDER_KEY,
    handle_forget,
    handle_help,
    handle_info,
    handle_message,
    on_config_reload,
)

if TYPE_CHECKING:
    from gptrelay.completion import CompletionClient
    from gptrelay.config_file import ConfigProvider
    from gptrelay.models import RelayConfig

logger = logging.getLogger(__name__)

BOT_COMMANDS: list[tuple[str, str]] = [
    ("help", "Помощь"),
    ("forget", "Забыть диалог"),
    ("info", "Начальная установка"),
]


async def _post_init(application: Application) -> None:
    await application.bot.set_my_commands([BotCommand(name, desc) for name, desc in BOT_COMMANDS])

    loop = asyncio.get_running_loop()
    provider: ConfigProvider = application.bot_data[CONFIG_PROVIDER_KEY]

    def forward_reload(config: RelayConfig) -> None:
        # Called on the watchdog thread.
        loop.call_soon_threadsafe(on_config_reload, application, config)

    provider.subscribe(forward_reload)


def build_application(provider: ConfigProvider, client: CompletionClient) -> Application:
    """Build and return a configured Telegram Application.

    Registers:
      - /help, /start → handle_help   (usage guide)
      - /forget       → handle_forget (drop the continuation)
      - /info         → handle_info   (effective system message)
      - Text and edited-text messages → handle_message (dispatcher)

    Command handlers are registered before the catch-all message handler so
    PTB's handler priority (group 0, first match) routes them without
    reaching handle_message. Other slash-prefixed text still reaches the
    dispatcher, where configured prefixes may claim it.

    Args:
        provider: Source of the current configuration snapshot.
        client: Completion client shared by all chats.

    Returns:
        A fully configured Application ready for run_polling().
    """
    token = provider.current.auth.bot_token
    application: Application = ApplicationBuilder().token(token).post_init(_post_init).build()
    application.bot_data[CONFIG_PROVIDER_KEY] = provider
    application.bot_data[COMPLETION_CLIENT_KEY] = client

    application.add_handler(CommandHandler(["help", "start"], handle_help))
    application.add_handler(CommandHandler("forget", handle_forget))
    application.add_handler(CommandHandler("info", handle_info))

    application.add_handler(
        MessageHandler(
            filters.TEXT & (filters.UpdateType.MESSAGE | filters.UpdateType.EDITED_MESSAGE),
            handle_message,
        )
    )

    return application
