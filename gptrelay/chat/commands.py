"""Text-command interception — buttons, prefixes and admin commands.

Runs after the message is recorded in the thread's history and before any
completion call. Checks apply in a fixed order and the first one that claims
the message ends processing with a Reply or a Drop:

  1. button match         — text equals a button name → use its prompt;
                            a button with a wait message asks for more text
  2. active button        — the follow-up text for such a button: forget,
                            use the button prompt as the next system message
  3. address prefix       — chats with a prefix ignore unprefixed text
  4. foreign reply        — replies between other people are ignored
  5. reprogram prefix     — set or reset the thread's persona
  6. info prefix          — report the effective system message
  7. sync keyword         — re-import the chat's buttons from its sheet
  8. forget prefix        — drop the continuation

Anything left becomes Proceed(text), possibly with the text substituted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from gptrelay.buttons_sync import ButtonSyncError
from gptrelay.chat.formatting import build_keyboard
from gptrelay.completion import effective_system_message
from gptrelay.config_file import ConfigError
from gptrelay.tokens import count_tokens

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from telegram import ReplyKeyboardMarkup

    from gptrelay.chat.events import InboundMessage
    from gptrelay.chat.threads import ThreadState
    from gptrelay.models import ButtonConfig, ChatConfig, RelayConfig

logger = logging.getLogger(__name__)

SYNC_KEYWORD = "sync"
PERSONA_PREFIX = "Я "

PERSONA_RESET_TEXT = "Начальная установка сброшена"
PERSONA_SET_TEXT = "Сменил начальную установку на: "
FORGET_TEXT = "OK"
SYNC_DONE_TEXT = "Кнопки синхронизированы:\n"
SYNC_FAILED_TEXT = "Ошибка синхронизации кнопок"


@dataclass(frozen=True)
class Reply:
    """Answer the message with ``text`` and stop."""

    text: str
    reply_to_message: bool = False
    keyboard: ReplyKeyboardMarkup | None = None


@dataclass(frozen=True)
class Drop:
    """Ignore the message without answering."""


@dataclass(frozen=True)
class Proceed:
    """Send ``text`` to the completion provider."""

    text: str


CommandOutcome = Reply | Drop | Proceed


def _has_prefix(text: str, prefix: str | None) -> bool:
    return bool(prefix) and text.casefold().startswith(prefix.casefold())


def _strip_prefix(text: str, prefix: str) -> str:
    return text[len(prefix) :].strip()


def persona(text: str) -> str:
    """First-person framing for a reprogrammed system message."""
    return f"{PERSONA_PREFIX}{text}"


def info_text(thread: ThreadState | None, chat: ChatConfig, config: RelayConfig) -> str:
    """Report of the effective system message, its token count and the model."""
    system_message = effective_system_message(thread, chat, config)
    answer = f"Начальная установка: {system_message}\nТокенов: {count_tokens(system_message)}\n"
    if chat.completion_params is not None and chat.completion_params.model:
        answer = f"Модель: {chat.completion_params.model}\n\n{answer}"
    return answer


async def intercept(
    message: InboundMessage,
    *,
    chat: ChatConfig,
    thread: ThreadState,
    config: RelayConfig,
    sync_buttons: Callable[[ChatConfig], Awaitable[list[ButtonConfig]]] | None = None,
) -> CommandOutcome:
    """Apply the command checks to one inbound message.

    Args:
        message: The normalized inbound message.
        chat: The resolved chat configuration.
        thread: The chat's thread; mutated by buttons, reprogram and forget.
        config: The configuration snapshot captured for this event.
        sync_buttons: Fetches, persists and returns a chat's synced buttons.
                      Sync is unavailable when None.
    """
    text = message.text

    # 1. Button match
    matched: ButtonConfig | None = next(
        (b for b in chat.effective_buttons if b.name == text), None
    )
    if matched is not None:
        text = matched.prompt
        # A new press replaces any button still waiting for text.
        thread.active_button = matched if matched.wait_message else None
        if matched.wait_message:
            return Reply(matched.wait_message, reply_to_message=True)

    # 2. Follow-up text for a button that asked for it
    active = thread.active_button
    if active is not None and matched is None:
        thread.forget()
        thread.next_system_message = active.prompt
        thread.active_button = None

    # 3. Address prefix
    if chat.prefix and matched is None and active is None and not _has_prefix(text, chat.prefix):
        return Drop()

    # 4. Replies to someone other than the sender or the bot
    if message.is_reply and message.reply_to_username != message.username:
        if message.reply_to_username != config.bot_name:
            return Drop()

    # 5. Reprogram
    if chat.prog_prefix and _has_prefix(text, chat.prog_prefix):
        remainder = _strip_prefix(text, chat.prog_prefix)
        thread.forget()
        if not remainder:
            thread.custom_system_message = ""
            return Reply(PERSONA_RESET_TEXT)
        thread.custom_system_message = persona(remainder)
        return Reply(PERSONA_SET_TEXT + thread.custom_system_message)

    # 6. Info
    if chat.prog_info_prefix and _has_prefix(text, chat.prog_info_prefix):
        return Reply(info_text(thread, chat, config))

    # 7. Button sync
    if chat.buttons_sync is not None and sync_buttons is not None and text.strip().casefold() == SYNC_KEYWORD:
        try:
            buttons = await sync_buttons(chat)
        except (ButtonSyncError, ConfigError):
            logger.exception("Button sync failed for chat %s", chat.name or message.chat_id)
            return Reply(SYNC_FAILED_TEXT)
        names = "\n".join(b.name for b in buttons)
        return Reply(SYNC_DONE_TEXT + names, keyboard=build_keyboard(buttons))

    # 8. Forget
    if chat.forget_prefix and _has_prefix(text, chat.forget_prefix):
        thread.forget()
        return Reply(FORGET_TEXT)

    return Proceed(text)
