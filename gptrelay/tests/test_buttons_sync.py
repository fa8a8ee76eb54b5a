"""Tests for the Google Sheets button import.

The Sheets API is never called: parse_button_rows is tested on raw cell
values, and fetch_buttons with _read_sheet_values patched out.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from gptrelay.buttons_sync import ButtonSyncError, fetch_buttons, parse_button_rows
from gptrelay.models import ButtonConfig, ButtonsSyncConfig

_SYNC = ButtonsSyncConfig(sheet_id="sheet-1", sheet_name="Buttons")


class TestParseButtonRows:
    def test_header_maps_columns(self):
        values = [
            ["name", "prompt", "row", "waitMessage"],
            ["Menu", "Show menu options", "", ""],
            ["Translate", "Translate to English", "2", "Send the text"],
        ]
        assert parse_button_rows(values) == [
            ButtonConfig(name="Menu", prompt="Show menu options"),
            ButtonConfig(name="Translate", prompt="Translate to English", row=2, wait_message="Send the text"),
        ]

    def test_header_case_and_order_insensitive(self):
        values = [["Prompt", "NAME", "wait_message"], ["p", "A", "w"]]
        assert parse_button_rows(values) == [ButtonConfig(name="A", prompt="p", wait_message="w")]

    def test_short_rows_padded(self):
        values = [["name", "prompt", "row"], ["A"]]
        assert parse_button_rows(values) == [ButtonConfig(name="A")]

    def test_blank_and_comment_rows_skipped(self):
        values = [["name", "prompt"], ["", "orphan"], ["#Hidden", "x"], ["  ", ""], ["Shown", "y"]]
        assert [b.name for b in parse_button_rows(values)] == ["Shown"]

    def test_unknown_columns_ignored(self):
        values = [["name", "notes"], ["A", "anything"]]
        assert parse_button_rows(values) == [ButtonConfig(name="A")]

    def test_empty_sheet(self):
        assert parse_button_rows([]) == []

    def test_missing_name_column(self):
        with pytest.raises(ButtonSyncError, match="name"):
            parse_button_rows([["prompt"], ["p"]])

    def test_invalid_row_reports_line(self):
        with pytest.raises(ButtonSyncError, match="row 3"):
            parse_button_rows([["name", "row"], ["A", "1"], ["B", "second"]])


class TestFetchButtons:
    async def test_fetch_parses_sheet(self):
        values = [["name", "prompt"], ["Menu", "Show menu options"]]
        with patch("gptrelay.buttons_sync._read_sheet_values", return_value=values) as read:
            buttons = await fetch_buttons(_SYNC)
        read.assert_called_once_with(_SYNC)
        assert buttons == [ButtonConfig(name="Menu", prompt="Show menu options")]

    async def test_api_failure_wrapped(self):
        with patch("gptrelay.buttons_sync._read_sheet_values", side_effect=RuntimeError("403 Forbidden")):
            with pytest.raises(ButtonSyncError, match="403"):
                await fetch_buttons(_SYNC)
