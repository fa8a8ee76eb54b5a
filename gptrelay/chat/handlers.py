"""Telegram handlers and the message dispatcher for the gptrelay bot.

Responsibilities:
  - Normalize text and edited-text updates into InboundMessage (once, here)
  - Resolve the chat configuration and enforce the allow-list
  - Record the message in the chat's thread and run the command checks
  - Invoke the completion provider with the thread's continuation
  - Send the answer back as MarkdownV2 chunks with the chat's reply keyboard
  - Recover from provider errors — users never see raw tracebacks

Architecture decisions reflected here:
  - Collaborators (config provider, completion client, thread store) live in
    ``application.bot_data`` and are read per update. The config snapshot is
    captured once per event, so a reload mid-completion doesn't change it.
  - No per-chat lock. Two messages for one chat may interleave at await
    points and race on the thread's continuation; accepted as rare.
  - Context-length errors forget the conversation and replay the event once.
    A partial streamed answer that dies mid-way is shown to the user and the
    conversation is forgotten, so the broken half never becomes context.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from telegram import ReplyParameters
from telegram.constants import ChatAction

from gptrelay.buttons_sync import fetch_buttons
from gptrelay.chat.commands import FORGET_TEXT, Drop, Reply, info_text, intercept
from gptrelay.chat.events import InboundMessage, event_from_update
from gptrelay.chat.formatting import (
    build_keyboard,
    extract_paragraph_mode,
    paragraphize,
    send_chunks,
)
from gptrelay.chat.resolver import Rejected, resolve_chat
from gptrelay.chat.threads import ThreadStore
from gptrelay.completion import CompletionError, invoke_completion
from gptrelay.config_file import save_synced_buttons

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from telegram import Bot, Update
    from telegram.ext import Application, ContextTypes

    from gptrelay.chat.threads import ThreadState
    from gptrelay.completion import CompletionClient
    from gptrelay.config_file import ConfigProvider
    from gptrelay.models import ButtonConfig, ChatConfig, RelayConfig

logger = logging.getLogger(__name__)

NO_ANSWER_TEXT = "бот не ответил"
PARTIAL_ANSWER_TEXT = "Бот ответил частично и забыл диалог:"
RETRY_NOTICE = "\n\nПовторная отправка последнего сообщения..."

HELP_TEXT = (
    "Я пересылаю ваши сообщения языковой модели и присылаю её ответы.\n\n"
    "Команды:\n"
    "/forget — забыть текущий диалог\n"
    "/info — показать начальную установку\n"
    "/help — это сообщение"
)

# Keys under which collaborators are kept in application.bot_data.
CONFIG_PROVIDER_KEY = "config_provider"
COMPLETION_CLIENT_KEY = "completion_client"
THREAD_STORE_KEY = "thread_store"


# ── Collaborators ─────────────────────────────────────────────────────────────


def _get_thread_store(application: Application) -> ThreadStore:
    """Return the shared ThreadStore, creating it if needed."""
    store = application.bot_data.get(THREAD_STORE_KEY)
    if store is None:
        store = ThreadStore()
        application.bot_data[THREAD_STORE_KEY] = store
    return store


@dataclass
class DispatchContext:
    """Everything one event needs, captured when the event arrives."""

    bot: Bot
    config: RelayConfig
    threads: ThreadStore
    client: CompletionClient
    sync_buttons: Callable[[ChatConfig], Awaitable[list[ButtonConfig]]] | None = None


def _make_button_sync(provider: ConfigProvider) -> Callable[[ChatConfig], Awaitable[list[ButtonConfig]]]:
    async def sync(chat: ChatConfig) -> list[ButtonConfig]:
        if chat.buttons_sync is None:
            return chat.effective_buttons
        buttons = await fetch_buttons(chat.buttons_sync)
        await asyncio.to_thread(save_synced_buttons, provider.path, chat, buttons)
        provider.replace(provider.current.with_synced_buttons(chat, buttons))
        return buttons

    return sync


def dispatch_context(context: ContextTypes.DEFAULT_TYPE) -> DispatchContext:
    """Build the DispatchContext for one update from the application's bot_data."""
    bot_data = context.application.bot_data
    provider: ConfigProvider = bot_data[CONFIG_PROVIDER_KEY]
    return DispatchContext(
        bot=context.bot,
        config=provider.current,
        threads=_get_thread_store(context.application),
        client=bot_data[COMPLETION_CLIENT_KEY],
        sync_buttons=_make_button_sync(provider),
    )


# ── Dispatch ──────────────────────────────────────────────────────────────────


async def dispatch(message: InboundMessage, deps: DispatchContext, *, second_try: bool = False) -> None:
    """Run the full pipeline for one inbound message.

    Args:
        message: The normalized inbound message.
        deps: Collaborators and the config snapshot for this event.
        second_try: Set on the single automatic replay after a
                    context-length error; a replay is never replayed again.
    """
    config = deps.config
    chat = await _accepted_chat(message, deps)
    if chat is None:
        return

    if second_try:
        thread = deps.threads.get_or_create(message.chat_id, chat.completion_params)
    else:
        thread = deps.threads.add_to_history(message, completion_params=chat.completion_params)

    outcome = await intercept(
        message, chat=chat, thread=thread, config=config, sync_buttons=deps.sync_buttons
    )
    if isinstance(outcome, Drop):
        return
    if isinstance(outcome, Reply):
        await _send_reply(deps.bot, message, outcome)
        return

    prompt, paragraphs = extract_paragraph_mode(outcome.text)
    reply_to = ReplyParameters(message_id=message.message_id, allow_sending_without_reply=True)

    try:
        answer = await invoke_completion(
            deps.client,
            thread,
            chat,
            config,
            prompt,
            username=message.username,
            on_typing=lambda: deps.bot.send_chat_action(
                chat_id=message.chat_id, action=ChatAction.TYPING
            ),
        )
    except CompletionError as e:
        logger.warning("Completion failed for chat %s: %s", message.chat_id, e.message)
        await _recover(message, deps, thread, e, second_try=second_try)
        return

    text = answer.text or NO_ANSWER_TEXT
    if paragraphs:
        text = paragraphize(text)
    await send_chunks(
        deps.bot,
        message.chat_id,
        text,
        markdown=True,
        reply_parameters=reply_to,
        reply_markup=build_keyboard(chat.effective_buttons),
    )


async def _send_reply(bot: Bot, message: InboundMessage, reply: Reply) -> None:
    params: dict[str, object] = {}
    if reply.reply_to_message:
        params["reply_parameters"] = ReplyParameters(
            message_id=message.message_id, allow_sending_without_reply=True
        )
    if reply.keyboard is not None:
        params["reply_markup"] = reply.keyboard
    await send_chunks(bot, message.chat_id, reply.text, **params)


async def _recover(
    message: InboundMessage,
    deps: DispatchContext,
    thread: ThreadState,
    error: CompletionError,
    *,
    second_try: bool,
) -> None:
    """Tell the user what went wrong, salvage any partial answer, maybe replay once."""
    retry = error.is_context_length_exceeded and not second_try
    if retry:
        thread.forget()

    reply_to = ReplyParameters(message_id=message.message_id, allow_sending_without_reply=True)
    if thread.partial_answer:
        text = f"{PARTIAL_ANSWER_TEXT}\n\n{error.message}\n\n{thread.partial_answer}"
        thread.forget()
        thread.partial_answer = ""
    else:
        text = error.message + (RETRY_NOTICE if retry else "")
    await send_chunks(deps.bot, message.chat_id, text, reply_parameters=reply_to)

    if retry:
        await dispatch(message, deps, second_try=True)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle a new or edited text message."""
    event = event_from_update(update)
    if event is None:
        return
    await dispatch(event.message, dispatch_context(context))


async def _accepted_chat(message: InboundMessage, deps: DispatchContext) -> ChatConfig | None:
    """Resolve the chat, sending the rejection notice (if any) when there is none."""
    resolution = resolve_chat(deps.config, message)
    if isinstance(resolution, Rejected):
        if resolution.notice:
            await deps.bot.send_message(chat_id=message.chat_id, text=resolution.notice)
        return None
    return resolution.chat


async def _resolve_command(update: Update, deps: DispatchContext) -> tuple[InboundMessage, ChatConfig | None]:
    event = event_from_update(update)
    if event is None:
        raise ValueError("command handler called on an update without a text message")
    return event.message, await _accepted_chat(event.message, deps)


async def handle_forget(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /forget — drop the chat's continuation, keep its persona."""
    deps = dispatch_context(context)
    message, chat = await _resolve_command(update, deps)
    if chat is None:
        return
    deps.threads.forget(message.chat_id)
    await deps.bot.send_message(chat_id=message.chat_id, text=FORGET_TEXT)


async def handle_info(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /info — report the effective system message."""
    deps = dispatch_context(context)
    message, chat = await _resolve_command(update, deps)
    if chat is None:
        return
    text = info_text(deps.threads.get(message.chat_id), chat, deps.config)
    await send_chunks(deps.bot, message.chat_id, text)


async def handle_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help and /start with a static usage guide."""
    if update.effective_message is None:
        raise ValueError("handle_help called on an update with no effective_message")
    await update.effective_message.reply_text(HELP_TEXT)


# ── Config reload ─────────────────────────────────────────────────────────────


def on_config_reload(application: Application, config: RelayConfig) -> None:
    """Reset debug-flagged chats so system message edits apply at once.

    Must run on the application's event loop (see gptrelay.chat.bot).
    """
    for name in _get_thread_store(application).reset_debug_chats(config):
        logger.info("Clear debug chat: %s", name)
