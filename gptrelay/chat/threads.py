"""Per-chat conversation thread state.

A thread is this bot's mutable state for one Telegram chat: what was said,
which completion answer the next prompt continues from, and the handful of
overrides the admin commands and buttons set.

Design decisions:
  - In-memory storage (dict), lost on restart. Fine for a
    single-process bot. Threads are created on the first message for a
    chat and never evicted.
  - The continuation (``last_answer``) and the custom system message are
    independent: forgetting the conversation keeps the persona, and
    reprogramming the persona decides separately whether to forget.
  - ``custom_system_message`` distinguishes None (never set) from ""
    (explicitly reset to the chat/global default).
  - ``next_system_message`` is consumed by exactly one completion call.
  - Not locked. Handlers for the same chat may interleave at await points;
    the platform's per-chat ordering makes that rare, and it is accepted.

The store is kept in ``application.bot_data`` and passed around explicitly
(no globals) for testability.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gptrelay.chat.events import InboundMessage
    from gptrelay.completion import CompletionAnswer
    from gptrelay.models import ButtonConfig, CompletionParams, RelayConfig


@dataclass
class ThreadState:
    """Mutable state for a single chat."""

    history: list[InboundMessage] = field(default_factory=list)
    last_answer: CompletionAnswer | None = None
    partial_answer: str = ""
    """Streamed text of the in-flight completion. Empty between calls."""
    custom_system_message: str | None = None
    next_system_message: str | None = None
    active_button: ButtonConfig | None = None
    """Button waiting for the user's follow-up text."""
    completion_params: CompletionParams | None = None

    @property
    def continuation_id(self) -> str | None:
        """Id of the answer the next prompt continues from, None for a fresh context."""
        return self.last_answer.id if self.last_answer is not None else None

    def forget(self) -> None:
        """Drop the continuation. The custom system message is kept."""
        self.last_answer = None

    def take_next_system_message(self) -> str | None:
        """Return the pending one-shot system message and clear it."""
        message, self.next_system_message = self.next_system_message, None
        return message or None


class ThreadStore:
    """Chat id → ThreadState, created on first use.

    Usage::

        store = ThreadStore()
        thread = store.add_to_history(message, completion_params=chat.completion_params)
        ...
        store.forget(message.chat_id)

    Args:
        max_history: Keep at most this many messages per thread (oldest are
                     dropped). 0 or negative keeps everything. The history is
                     never sent to the provider — continuation ids carry the
                     context — so this is purely a memory bound.
    """

    def __init__(self, max_history: int = 0) -> None:
        self._max_history = max_history
        self._threads: dict[int, ThreadState] = {}

    def __contains__(self, chat_id: object) -> bool:
        return chat_id in self._threads

    def __len__(self) -> int:
        return len(self._threads)

    def get(self, chat_id: int) -> ThreadState | None:
        return self._threads.get(chat_id)

    def get_or_create(
        self, chat_id: int, completion_params: CompletionParams | None = None
    ) -> ThreadState:
        thread = self._threads.get(chat_id)
        if thread is None:
            thread = ThreadState(completion_params=completion_params)
            self._threads[chat_id] = thread
        return thread

    def add_to_history(
        self, message: InboundMessage, completion_params: CompletionParams | None = None
    ) -> ThreadState:
        """Record an inbound message, creating the chat's thread if needed."""
        thread = self.get_or_create(message.chat_id, completion_params)
        thread.history.append(message)
        if self._max_history > 0 and len(thread.history) > self._max_history:
            del thread.history[: -self._max_history]
        return thread

    def forget(self, chat_id: int) -> None:
        """Clear a chat's continuation. No-op for chats without a thread."""
        thread = self._threads.get(chat_id)
        if thread is not None:
            thread.forget()

    def reset_debug_chats(self, config: RelayConfig) -> list[str]:
        """Forget and reset the persona of every debug-flagged chat with a thread.

        Called after a config reload so edits to a debug chat's system
        message take effect immediately. Returns the names of the reset chats.
        """
        reset: list[str] = []
        for chat in config.chats:
            thread = self._threads.get(chat.id) if chat.debug and chat.id else None
            if thread is None:
                continue
            thread.forget()
            thread.custom_system_message = ""
            reset.append(chat.name)
        return reset

    def clear_all(self) -> None:
        """Remove every thread. Primarily for testing."""
        self._threads.clear()
