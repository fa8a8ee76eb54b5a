"""Pydantic models for the gptrelay configuration snapshot.

A RelayConfig is validated from the YAML configuration file on every
(re)load and is never mutated afterwards: a reload or a button sync produces
a new snapshot that replaces the old one wholesale. Handlers that captured a
reference keep using it until they finish.

Keys accept both the camelCase spelling used by existing config files
(systemMessage, progPrefix, completionParams, buttonsSynced, ...) and the
snake_case field names.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Name of the chat entry that applies to any allowed private chat.
DEFAULT_CHAT_NAME = "default"

# Default completion call timeout (milliseconds), matching the config key unit.
DEFAULT_TIMEOUT_MS = 60_000


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )


class FunctionSchema(_ConfigModel):
    """A function the model may call, declared with a JSON schema."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class CompletionParams(_ConfigModel):
    """Model name and sampling parameters for a completion call."""

    model: str = "gpt-4o-mini"
    temperature: float | None = None
    top_p: float | None = Field(default=None, alias="top_p")
    presence_penalty: float | None = Field(default=None, alias="presence_penalty")
    max_tokens: int | None = Field(default=None, alias="max_tokens")
    functions: list[FunctionSchema] = Field(default_factory=list)


class ButtonConfig(_ConfigModel):
    """A reply-keyboard button mapped to a canned prompt."""

    name: str
    prompt: str = ""
    row: int = 1
    wait_message: str | None = None
    """When set, pressing the button asks for more text instead of answering."""

    @field_validator("row", mode="before")
    @classmethod
    def default_row(cls, v: Any) -> Any:
        # Sheets and hand-written YAML both produce blanks for "first row".
        if v in (None, "", 0):
            return 1
        return v


class ButtonsSyncConfig(_ConfigModel):
    """Where to fetch a chat's button list from (a Google Sheets tab)."""

    sheet_id: str
    sheet_name: str
    auth: dict[str, Any] = Field(default_factory=dict)
    """Service-account credential mapping (the JSON key file's contents)."""


class ChatConfig(_ConfigModel):
    """Settings for one chat, one private user, or the "default" entry."""

    name: str = ""
    id: int = 0
    username: str | None = None
    prefix: str | None = None
    prog_prefix: str | None = None
    prog_info_prefix: str | None = None
    forget_prefix: str | None = None
    system_message: str | None = None
    completion_params: CompletionParams | None = None
    debug: bool = False
    memoryless: bool = False
    buttons: list[ButtonConfig] | None = None
    buttons_sync: ButtonsSyncConfig | None = None
    buttons_synced: list[ButtonConfig] | None = None

    @property
    def effective_buttons(self) -> list[ButtonConfig]:
        """Synced buttons when present, otherwise the static list."""
        if self.buttons_synced:
            return list(self.buttons_synced)
        return list(self.buttons or [])


class AuthConfig(_ConfigModel):
    bot_token: str = Field(alias="bot_token")
    chatgpt_api_key: str | None = Field(default=None, alias="chatgpt_api_key")


class RelayConfig(_ConfigModel):
    """One validated load of the YAML configuration file."""

    bot_name: str = Field(default="", alias="bot_name")
    debug: bool = False
    auth: AuthConfig
    system_message: str | None = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    completion_params: CompletionParams = Field(default_factory=CompletionParams)
    allowed_private_users: list[str] | None = None
    """None means no allow-list applies; an empty list rejects everyone."""
    chats: list[ChatConfig] = Field(default_factory=list)

    def find_chat(self, chat_id: int) -> ChatConfig | None:
        if not chat_id:
            return None
        return next((c for c in self.chats if c.id == chat_id), None)

    def find_chat_by_name(self, name: str) -> ChatConfig | None:
        return next((c for c in self.chats if c.name == name), None)

    def find_chat_by_username(self, username: str) -> ChatConfig | None:
        if not username:
            return None
        return next((c for c in self.chats if c.username == username), None)

    def with_synced_buttons(self, chat: ChatConfig, buttons: list[ButtonConfig]) -> RelayConfig:
        """Return a new snapshot with one chat's synced button list replaced.

        The chat is matched by id, or by name for entries without an id
        (the "default" entry and per-username entries).
        """
        chats = [
            c.model_copy(update={"buttons_synced": list(buttons)}) if _same_entry(c, chat) else c
            for c in self.chats
        ]
        return self.model_copy(update={"chats": chats})


def _same_entry(a: ChatConfig, b: ChatConfig) -> bool:
    if a.id and b.id:
        return a.id == b.id
    return a.name == b.name and a.username == b.username
