"""Button list import from a Google Sheets tab.

The sheet's first row is a header naming the columns; the recognised headers
are ``name``, ``prompt``, ``row`` and ``waitMessage`` (``wait_message`` also
works). Every following row becomes a ButtonConfig, except rows whose name
is blank or starts with ``#`` — those are comments.

The Sheets client is synchronous (googleapiclient), so the fetch runs in a
worker thread to keep the bot's event loop responsive.

Observability: fetch_buttons is wrapped in a logfire span so slow or failing
sheet reads show up next to the message that triggered them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import logfire
from google.oauth2 import service_account
from googleapiclient.discovery import build
from pydantic import ValidationError

from gptrelay.models import ButtonConfig

if TYPE_CHECKING:
    from gptrelay.models import ButtonsSyncConfig

logger = logging.getLogger(__name__)

_SCOPES = ["https://www.googleapis.com/auth/spreadsheets.readonly"]

_HEADER_ALIASES = {
    "name": "name",
    "prompt": "prompt",
    "row": "row",
    "waitmessage": "wait_message",
    "wait_message": "wait_message",
}


class ButtonSyncError(Exception):
    """Raised when the button sheet can't be fetched or parsed."""


def _read_sheet_values(sync: ButtonsSyncConfig) -> list[list[Any]]:
    """Blocking Sheets API call — returns the tab's cell values row by row."""
    creds = service_account.Credentials.from_service_account_info(sync.auth, scopes=_SCOPES)
    service = build("sheets", "v4", credentials=creds, cache_discovery=False)
    response = (
        service.spreadsheets()
        .values()
        .get(spreadsheetId=sync.sheet_id, range=sync.sheet_name)
        .execute()
    )
    return response.get("values", [])


def parse_button_rows(values: list[list[Any]]) -> list[ButtonConfig]:
    """Turn raw sheet values (header row first) into buttons.

    Raises:
        ButtonSyncError: The header has no ``name`` column, or a row is invalid.
    """
    if not values:
        return []

    header = [_HEADER_ALIASES.get(str(h).strip().lower()) for h in values[0]]
    if "name" not in header:
        raise ButtonSyncError("Button sheet has no 'name' column in its first row")

    buttons: list[ButtonConfig] = []
    for line_no, row in enumerate(values[1:], start=2):
        record = {
            key: str(cell).strip()
            for key, cell in zip(header, row, strict=False)
            if key is not None and str(cell).strip()
        }
        name = record.get("name", "")
        if not name or name.startswith("#"):
            continue
        try:
            buttons.append(ButtonConfig.model_validate(record))
        except ValidationError as e:
            raise ButtonSyncError(f"Invalid button on sheet row {line_no}: {e}") from e
    return buttons


async def fetch_buttons(sync: ButtonsSyncConfig) -> list[ButtonConfig]:
    """Fetch and parse the button list described by ``sync``.

    Raises:
        ButtonSyncError: Any failure — credentials, network, API, or parsing.
    """
    with logfire.span("fetch_buttons", sheet_id=sync.sheet_id, sheet_name=sync.sheet_name):
        try:
            values = await asyncio.to_thread(_read_sheet_values, sync)
        except Exception as e:
            raise ButtonSyncError(f"Cannot read button sheet: {e}") from e

        buttons = parse_button_rows(values)
        logger.info("Fetched %d buttons from sheet %s", len(buttons), sync.sheet_id)
        return buttons
