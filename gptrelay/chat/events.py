"""Inbound event normalization — the boundary between PTB updates and the dispatcher.

Telegram delivers text either as a new message or as an edit of an earlier
one. Both are answered the same way, so they are resolved here, once, into
an InboundEvent carrying a plain InboundMessage. Nothing past this module
touches telegram.Update.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from telegram import Message, Update

PRIVATE_CHAT = "private"


@dataclass(frozen=True)
class InboundMessage:
    """The parts of a Telegram text message the dispatcher needs."""

    chat_id: int
    chat_type: str  # known: "private", "group", "supergroup", "channel"
    message_id: int
    username: str | None
    text: str
    reply_to_username: str | None = None
    is_reply: bool = False

    @property
    def is_private(self) -> bool:
        return self.chat_type == PRIVATE_CHAT


@dataclass(frozen=True)
class NewMessage:
    message: InboundMessage


@dataclass(frozen=True)
class EditedMessage:
    message: InboundMessage


InboundEvent = NewMessage | EditedMessage


def _normalize(message: Message) -> InboundMessage | None:
    if message.text is None:
        return None
    reply = message.reply_to_message
    reply_author = reply.from_user if reply is not None else None
    return InboundMessage(
        chat_id=message.chat.id,
        chat_type=str(message.chat.type),
        message_id=message.message_id,
        username=message.from_user.username if message.from_user else None,
        text=message.text,
        reply_to_username=reply_author.username if reply_author else None,
        is_reply=reply is not None,
    )


def event_from_update(update: Update) -> InboundEvent | None:
    """Return the normalized event for a text update, or None for anything else."""
    if update.edited_message is not None:
        message = _normalize(update.edited_message)
        return EditedMessage(message) if message else None
    if update.message is not None:
        message = _normalize(update.message)
        return NewMessage(message) if message else None
    return None
