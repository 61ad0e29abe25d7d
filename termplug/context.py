"""
Plugin context: the bridge between a host application and its plugins.

A PluginContext is built once per host and shared by every plugin the
host loads. It carries the host's identity and directories, a table of
callbacks through which plugins reach host features, and a string-keyed
state store that the host may also touch from other threads.

Callbacks are plain callables collected by PluginContextBuilder, so each
host (or test) supplies its own behavior without any global hooks:

    ctx = (
        PluginContextBuilder("editor", "2.3.0")
        .on_notify(lambda msg: status_bar.flash(msg))
        .on_run_command(lambda name, args: commands.execute(name, args))
        .build()
    )
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from platformdirs import PlatformDirs

from termplug.errors import PluginError
from termplug.protocol.response import LogLevel

logger = logging.getLogger(__name__)
plugin_logger = logging.getLogger("termplug.plugins")

LogCallback = Callable[[LogLevel, str], None]
NotifyCallback = Callable[[str], None]
SelectionCallback = Callable[[], "str | None"]
ClipboardCallback = Callable[[str], None]
RunCommandCallback = Callable[[str, dict[str, Any]], None]


def _default_log(level: LogLevel, message: str) -> None:
    plugin_logger.log(level.logging_level, message)


def _default_notify(message: str) -> None:
    plugin_logger.info(f"[notify] {message}")


def _default_get_selection() -> str | None:
    return None


def _default_set_clipboard(text: str) -> None:
    logger.debug(f"set_clipboard ignored ({len(text)} chars): no clipboard callback configured")


def _default_run_command(name: str, args: dict[str, Any]) -> None:
    logger.debug(f"run_command ignored ({name}): no command callback configured")


@dataclass
class HostCallbacks:
    """Host features reachable from plugins.

    Attributes:
        log: Receives plugin log lines.
        notify: Shows a short message to the user.
        get_selection: Returns the current selection, if any.
        set_clipboard: Copies text; raises PluginError on failure.
        run_command: Runs a host command; raises PluginError on failure.
    """

    log: LogCallback = _default_log
    notify: NotifyCallback = _default_notify
    get_selection: SelectionCallback = _default_get_selection
    set_clipboard: ClipboardCallback = _default_set_clipboard
    run_command: RunCommandCallback = _default_run_command


class ReadWriteLock:
    """Many concurrent readers or one writer.

    Writers take priority over new readers once they are waiting, so a
    steady stream of ``get_state`` calls cannot starve ``set_state``.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class PluginContext:
    """Identity, directories, callbacks and shared state for plugins.

    State values are JSON-compatible (None, bool, int, float, str, lists
    and dicts of those). They are copied on the way in and out, so a
    caller never holds a live reference into the store.
    """

    def __init__(
        self,
        app_name: str,
        app_version: str,
        data_dir: Path | str,
        config_dir: Path | str,
        callbacks: HostCallbacks | None = None,
    ):
        self._app_name = app_name
        self._app_version = app_version
        self._data_dir = Path(data_dir)
        self._config_dir = Path(config_dir)
        self._callbacks = callbacks or HostCallbacks()
        self._state: dict[str, Any] = {}
        self._lock = ReadWriteLock()

    def with_callbacks(self, callbacks: HostCallbacks) -> PluginContext:
        """Return a context with the same identity and a new callback table.

        The state store is not shared with the returned context.
        """
        return PluginContext(
            self._app_name, self._app_version, self._data_dir, self._config_dir, callbacks
        )

    @property
    def app_name(self) -> str:
        return self._app_name

    @property
    def app_version(self) -> str:
        return self._app_version

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    @property
    def callbacks(self) -> HostCallbacks:
        return self._callbacks

    # Logging

    def log(self, level: LogLevel | str, message: str) -> None:
        self._callbacks.log(LogLevel(level), message)

    def log_debug(self, message: str) -> None:
        self.log(LogLevel.DEBUG, message)

    def log_info(self, message: str) -> None:
        self.log(LogLevel.INFO, message)

    def log_warn(self, message: str) -> None:
        self.log(LogLevel.WARN, message)

    def log_error(self, message: str) -> None:
        self.log(LogLevel.ERROR, message)

    # Host features

    def notify(self, message: str) -> None:
        self._callbacks.notify(message)

    def get_selection(self) -> str | None:
        return self._callbacks.get_selection()

    def set_clipboard(self, text: str) -> None:
        """Copy text through the host.

        Raises:
            PluginError: If the host callback fails.
        """
        self._invoke("set_clipboard", self._callbacks.set_clipboard, text)

    def run_command(self, name: str, args: dict[str, Any] | None = None) -> None:
        """Run a host command.

        Raises:
            PluginError: If the host callback fails.
        """
        self._invoke("run_command", self._callbacks.run_command, name, dict(args or {}))

    def _invoke(self, what: str, callback: Callable[..., None], *args: Any) -> None:
        try:
            callback(*args)
        except PluginError:
            raise
        except Exception as e:
            raise PluginError(f"{what} failed: {e}") from e

    # Shared state

    def get_state(self, key: str) -> Any | None:
        """Return a copy of the value for *key*, or None when absent."""
        with self._lock.read():
            value = self._state.get(key)
        return copy.deepcopy(value)

    def has_state(self, key: str) -> bool:
        with self._lock.read():
            return key in self._state

    def set_state(self, key: str, value: Any) -> None:
        value = copy.deepcopy(value)
        with self._lock.write():
            self._state[key] = value

    def remove_state(self, key: str) -> Any | None:
        """Remove *key* and return its value, or None when absent."""
        with self._lock.write():
            return self._state.pop(key, None)

    def state_keys(self) -> list[str]:
        with self._lock.read():
            return sorted(self._state)

    def __repr__(self) -> str:
        return f"<PluginContext {self._app_name}@{self._app_version} state_keys={len(self._state)}>"


@dataclass
class PluginContextBuilder:
    """Collects identity, directories and callbacks, then builds a context.

    Directories default to ``plugins`` and ``config`` under the platform's
    user data directory for *app_name*.
    """

    app_name: str
    app_version: str
    _data_dir: Path | None = None
    _config_dir: Path | None = None
    _callbacks: HostCallbacks = field(default_factory=HostCallbacks)

    def data_dir(self, path: Path | str) -> PluginContextBuilder:
        self._data_dir = Path(path)
        return self

    def config_dir(self, path: Path | str) -> PluginContextBuilder:
        self._config_dir = Path(path)
        return self

    def on_log(self, callback: LogCallback) -> PluginContextBuilder:
        self._callbacks.log = callback
        return self

    def on_notify(self, callback: NotifyCallback) -> PluginContextBuilder:
        self._callbacks.notify = callback
        return self

    def on_get_selection(self, callback: SelectionCallback) -> PluginContextBuilder:
        self._callbacks.get_selection = callback
        return self

    def on_set_clipboard(self, callback: ClipboardCallback) -> PluginContextBuilder:
        self._callbacks.set_clipboard = callback
        return self

    def on_run_command(self, callback: RunCommandCallback) -> PluginContextBuilder:
        self._callbacks.run_command = callback
        return self

    def build(self) -> PluginContext:
        base_dir = None
        if self._data_dir is None or self._config_dir is None:
            base_dir = PlatformDirs(self.app_name, appauthor=False).user_data_path
        return PluginContext(
            app_name=self.app_name,
            app_version=self.app_version,
            data_dir=self._data_dir or base_dir / "plugins",
            config_dir=self._config_dir or base_dir / "config",
            callbacks=replace_callbacks(self._callbacks),
        )


def replace_callbacks(callbacks: HostCallbacks, **overrides: Any) -> HostCallbacks:
    """Copy a callback table, optionally swapping some entries."""
    values = {
        "log": callbacks.log,
        "notify": callbacks.notify,
        "get_selection": callbacks.get_selection,
        "set_clipboard": callbacks.set_clipboard,
        "run_command": callbacks.run_command,
    }
    values.update(overrides)
    return HostCallbacks(**values)
