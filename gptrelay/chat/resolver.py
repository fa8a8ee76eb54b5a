"""Chat resolution — which ChatConfig answers an inbound message, if any.

Precedence:
  1. An entry whose id equals the chat id, used as-is.
  2. Groups and channels without such an entry are rejected silently.
  3. Private chats start from the "default" entry (if there is one), must
     pass the allow-list (when one is configured), and then have their
     per-username entry merged over the default.

Resolution is pure: it reads the config snapshot and the message, and never
touches thread state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from gptrelay.models import DEFAULT_CHAT_NAME, ChatConfig

if TYPE_CHECKING:
    from gptrelay.chat.events import InboundMessage
    from gptrelay.models import RelayConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Accepted:
    chat: ChatConfig


@dataclass(frozen=True)
class Rejected:
    notice: str | None = None
    """Text to send back to the user, None to drop silently."""


Resolution = Accepted | Rejected


def not_allowed_notice(username: str | None) -> str:
    return f"You are not allowed to use this bot.\nYour username: {username}"


def merge_chat_config(default: ChatConfig | None, override: ChatConfig | None) -> ChatConfig:
    """Field-level merge: fields set explicitly on ``override`` win.

    Fields the override entry never mentioned fall back to ``default``.
    Either side may be missing; with neither, an empty ChatConfig results.
    """
    if default is None:
        return override or ChatConfig()
    if override is None:
        return default
    return default.model_copy(
        update={name: getattr(override, name) for name in override.model_fields_set}
    )


def resolve_chat(config: RelayConfig, message: InboundMessage) -> Resolution:
    """Return the effective ChatConfig for ``message`` or a rejection."""
    explicit = config.find_chat(message.chat_id)
    if explicit is not None:
        return Accepted(explicit)

    if not message.is_private:
        logger.info(
            "This is %s chat, not in whitelist: %s", message.chat_type, message.chat_id
        )
        return Rejected()

    if config.allowed_private_users is not None and (
        not message.username or message.username not in config.allowed_private_users
    ):
        logger.info("Not in whitelist: %s", message.username)
        return Rejected(not_allowed_notice(message.username))

    default = config.find_chat_by_name(DEFAULT_CHAT_NAME)
    user_chat = config.find_chat_by_username(message.username or "")
    return Accepted(merge_chat_config(default, user_chat))
