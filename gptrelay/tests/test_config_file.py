"""Tests for YAML config loading, hot reload and synced-button write-back.

Files live under pytest's tmp_path; the watchdog observer itself is not
started; reloads are driven through ConfigProvider.reload() directly.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import yaml

from gptrelay.config_file import ConfigError, ConfigProvider, _ReloadHandler, load_config, save_synced_buttons
from gptrelay.models import ButtonConfig

_YAML = """\
bot_name: relay_bot
auth:
  bot_token: "123:abc"
  chatgpt_api_key: sk-test
systemMessage: "Today is {date}"
timeoutMs: 30000
completionParams:
  model: gpt-4o-mini
allowedPrivateUsers: [alice]
chats:
  - name: default
    progPrefix: бот ты
    customKey: kept
  - name: Team
    id: -1001
    prefix: бот
    buttonsSync:
      sheetId: sheet-1
      sheetName: Buttons
"""


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(_YAML, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_loads_and_validates(self, config_path):
        config = load_config(config_path)
        assert config.bot_name == "relay_bot"
        assert config.timeout_ms == 30000
        assert config.find_chat(-1001).buttons_sync.sheet_name == "Buttons"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read"):
            load_config(tmp_path / "absent.yml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("auth: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(path)

    def test_validation_failure(self, tmp_path):
        path = tmp_path / "noauth.yml"
        path.write_text("bot_name: x\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid config"):
            load_config(path)


class TestSaveSyncedButtons:
    def test_written_under_matching_chat(self, config_path):
        team = load_config(config_path).find_chat(-1001)
        buttons = [ButtonConfig(name="One", prompt="p1"), ButtonConfig(name="Two", row=2, wait_message="?")]

        save_synced_buttons(config_path, team, buttons)

        reloaded = load_config(config_path)
        assert reloaded.find_chat(-1001).effective_buttons == buttons

    def test_written_with_camel_case_keys(self, config_path):
        team = load_config(config_path).find_chat(-1001)
        save_synced_buttons(config_path, team, [ButtonConfig(name="A", wait_message="w")])

        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        assert raw["chats"][1]["buttonsSynced"] == [{"name": "A", "prompt": "", "row": 1, "waitMessage": "w"}]

    def test_unknown_keys_preserved(self, config_path):
        default = load_config(config_path).find_chat_by_name("default")
        save_synced_buttons(config_path, default, [ButtonConfig(name="A")])

        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        assert raw["chats"][0]["customKey"] == "kept"
        assert raw["chats"][0]["progPrefix"] == "бот ты"
        assert "buttonsSynced" not in raw["chats"][1]

    def test_unwritable_file_raises_config_error(self, config_path):
        team = load_config(config_path).find_chat(-1001)
        with (
            patch("gptrelay.config_file.Path.write_text", side_effect=PermissionError("read-only")),
            pytest.raises(ConfigError, match="Cannot write"),
        ):
            save_synced_buttons(config_path, team, [ButtonConfig(name="A")])

    def test_unmatched_chat_raises(self, config_path):
        config = load_config(config_path)
        stranger = config.find_chat(-1001).model_copy(update={"id": -999})
        with pytest.raises(ConfigError, match="No chat entry"):
            save_synced_buttons(config_path, stranger, [])


class TestConfigProvider:
    def test_initial_snapshot(self, config_path):
        provider = ConfigProvider(config_path)
        assert provider.current.bot_name == "relay_bot"
        assert provider.path == config_path

    def test_broken_initial_file_raises(self, tmp_path):
        with pytest.raises(ConfigError):
            ConfigProvider(tmp_path / "absent.yml")

    def test_reload_notifies_subscribers(self, config_path):
        provider = ConfigProvider(config_path)
        received = []
        provider.subscribe(received.append)

        config_path.write_text(_YAML.replace("relay_bot", "renamed_bot"), encoding="utf-8")
        new = provider.reload()

        assert new is not None
        assert provider.current.bot_name == "renamed_bot"
        assert received == [new]

    def test_bad_reload_keeps_previous_snapshot(self, config_path):
        provider = ConfigProvider(config_path)
        old = provider.current
        callback = MagicMock()
        provider.subscribe(callback)

        config_path.write_text("auth: [unclosed", encoding="utf-8")

        assert provider.reload() is None
        assert provider.current is old
        callback.assert_not_called()

    def test_failing_subscriber_does_not_block_others(self, config_path):
        provider = ConfigProvider(config_path)
        second = MagicMock()
        provider.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        provider.subscribe(second)

        provider.reload()

        second.assert_called_once()

    def test_replace_swaps_snapshot_without_notifying(self, config_path):
        provider = ConfigProvider(config_path)
        callback = MagicMock()
        provider.subscribe(callback)
        updated = provider.current.with_synced_buttons(provider.current.find_chat(-1001), [ButtonConfig(name="X")])

        provider.replace(updated)

        assert provider.current is updated
        callback.assert_not_called()

    def test_schedule_reload_debounces(self, config_path):
        provider = ConfigProvider(config_path, debounce_seconds=60)
        provider.reload = MagicMock()

        provider.schedule_reload()
        first_timer = provider._timer
        provider.schedule_reload()

        assert provider._timer is not first_timer
        assert not first_timer.is_alive() or first_timer.finished.is_set()
        provider.stop()
        provider.reload.assert_not_called()


class TestReloadHandler:
    def _event(self, path, is_directory=False, dest_path=""):
        event = MagicMock()
        event.src_path = str(path)
        event.dest_path = str(dest_path) if dest_path else ""
        event.is_directory = is_directory
        return event

    def test_event_for_config_file_schedules_reload(self, config_path):
        provider = MagicMock(path=config_path)
        _ReloadHandler(provider).on_any_event(self._event(config_path))
        provider.schedule_reload.assert_called_once()

    def test_rename_onto_config_file_schedules_reload(self, config_path):
        provider = MagicMock(path=config_path)
        event = self._event(config_path.with_name(".config.yml.swp"), dest_path=config_path)
        _ReloadHandler(provider).on_any_event(event)
        provider.schedule_reload.assert_called_once()

    def test_other_files_ignored(self, config_path):
        provider = MagicMock(path=config_path)
        _ReloadHandler(provider).on_any_event(self._event(config_path.with_name("notes.txt")))
        provider.schedule_reload.assert_not_called()

    def test_directory_events_ignored(self, config_path):
        provider = MagicMock(path=config_path)
        _ReloadHandler(provider).on_any_event(self._event(config_path, is_directory=True))
        provider.schedule_reload.assert_not_called()
