"""YAML configuration loading, hot reload, and synced-button write-back.

The dispatcher only ever sees ``ConfigProvider.current`` (an immutable
RelayConfig) and the ``subscribe()`` notification. Everything file-shaped
lives here:

  - load_config()          — read + validate the YAML file
  - ConfigProvider         — holds the current snapshot, watches the file with
                             watchdog, debounces bursts of writes, and notifies
                             subscribers after each successful reload
  - save_synced_buttons()  — persist a chat's synced button list into the file
                             so it survives the next reload

Watchdog callbacks run on the observer thread. Subscribers that touch
asyncio-owned state must hop back onto their loop themselves (see
gptrelay.chat.bot).
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import ValidationError
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from gptrelay.models import ButtonConfig, ChatConfig, RelayConfig

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when the configuration file cannot be read, validated or written."""


def _read_raw(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config {path} must contain a mapping at the top level")
    return raw


def load_config(path: str | Path) -> RelayConfig:
    """Read and validate the YAML configuration file.

    Raises:
        ConfigError: The file is missing, is not YAML, or fails validation.
    """
    path = Path(path)
    raw = _read_raw(path)
    try:
        return RelayConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {path}:\n{e}") from e


def save_synced_buttons(path: str | Path, chat: ChatConfig, buttons: list[ButtonConfig]) -> None:
    """Write a chat's synced button list back into the YAML file.

    The raw mapping is edited in place rather than re-serialising the whole
    RelayConfig, so keys and values the models don't know about survive.
    The chat entry is matched by id, or by name/username when it has no id.

    Raises:
        ConfigError: The file can't be read or written, or no entry matches
                     the chat.
    """
    path = Path(path)
    raw = _read_raw(path)

    for entry in raw.get("chats") or []:
        if _entry_matches(entry, chat):
            entry.pop("buttons_synced", None)
            entry["buttonsSynced"] = [
                b.model_dump(by_alias=True, exclude_none=True) for b in buttons
            ]
            break
    else:
        raise ConfigError(f"No chat entry for '{chat.name}' ({chat.id}) in {path}")

    try:
        path.write_text(
            yaml.safe_dump(raw, allow_unicode=True, sort_keys=False),
            encoding="utf-8",
        )
    except OSError as e:
        raise ConfigError(f"Cannot write config {path}: {e}") from e


def _entry_matches(entry: dict[str, Any], chat: ChatConfig) -> bool:
    entry_id = entry.get("id") or 0
    if chat.id and entry_id:
        return int(entry_id) == chat.id
    return entry.get("name", "") == chat.name and entry.get("username") == chat.username


# ── Provider ──────────────────────────────────────────────────────────────────


class _ReloadHandler(FileSystemEventHandler):
    """Forward events for one file (editors often write via rename) to the provider."""

    def __init__(self, provider: ConfigProvider) -> None:
        self._provider = provider

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        target = self._provider.path.resolve()
        paths = [event.src_path, getattr(event, "dest_path", "") or ""]
        if any(p and Path(str(p)).resolve() == target for p in paths):
            self._provider.schedule_reload()


class ConfigProvider:
    """Current configuration snapshot plus change notification.

    Usage::

        provider = ConfigProvider("config.yml")
        provider.subscribe(lambda cfg: print("reloaded", cfg.bot_name))
        provider.start()      # begin watching the file
        cfg = provider.current
        ...
        provider.stop()

    Args:
        path: YAML file to load and watch.
        debounce_seconds: Quiet period after the last change before reloading.
                          Saving in an editor typically fires several events.
    """

    def __init__(self, path: str | Path, debounce_seconds: float = 2.0) -> None:
        self._path = Path(path)
        self._debounce_seconds = debounce_seconds
        self._current = load_config(self._path)
        self._subscribers: list[Callable[[RelayConfig], None]] = []
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._observer: Any = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def current(self) -> RelayConfig:
        return self._current

    def subscribe(self, callback: Callable[[RelayConfig], None]) -> None:
        """Call ``callback(new_config)`` after every successful reload."""
        self._subscribers.append(callback)

    def replace(self, config: RelayConfig) -> None:
        """Swap in a snapshot produced in-process (e.g. after a button sync)."""
        self._current = config

    def reload(self) -> RelayConfig | None:
        """Re-read the file now. Keeps the old snapshot if the new one is invalid."""
        try:
            config = load_config(self._path)
        except ConfigError:
            logger.exception("Config reload failed, keeping the previous configuration")
            return None

        logger.info("Config reloaded from %s", self._path)
        self._current = config
        for callback in list(self._subscribers):
            try:
                callback(config)
            except Exception:
                logger.exception("Config subscriber %r failed", callback)
        return config

    def schedule_reload(self) -> None:
        """Debounced reload — restarts the quiet-period timer on each call."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self._debounce_seconds, self.reload)
            self._timer.daemon = True
            self._timer.start()

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = Observer()
        observer.schedule(_ReloadHandler(self), str(self._path.resolve().parent), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("Watching %s for changes", self._path)

    def stop(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
