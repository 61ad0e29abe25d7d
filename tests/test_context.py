"""Tests for termplug.context.

Covers:
- PluginContextBuilder callbacks and directory defaults
- Logging helpers and host feature delegation
- The shared state store and its reader/writer lock
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from termplug.context import (
    HostCallbacks,
    PluginContext,
    PluginContextBuilder,
    ReadWriteLock,
    replace_callbacks,
)
from termplug.errors import PluginError
from termplug.protocol import LogLevel


# ===========================================================================
# Fixtures
# ===========================================================================


@pytest.fixture
def callbacks() -> dict[str, MagicMock]:
    return {
        "log": MagicMock(),
        "notify": MagicMock(),
        "get_selection": MagicMock(return_value="selected text"),
        "set_clipboard": MagicMock(),
        "run_command": MagicMock(),
    }


@pytest.fixture
def ctx(tmp_path: Path, callbacks) -> PluginContext:
    return (
        PluginContextBuilder("editor", "2.3.0")
        .data_dir(tmp_path / "data")
        .config_dir(tmp_path / "config")
        .on_log(callbacks["log"])
        .on_notify(callbacks["notify"])
        .on_get_selection(callbacks["get_selection"])
        .on_set_clipboard(callbacks["set_clipboard"])
        .on_run_command(callbacks["run_command"])
        .build()
    )


# ===========================================================================
# Builder
# ===========================================================================


class TestPluginContextBuilder:

    def test_identity_and_dirs(self, ctx, tmp_path):
        assert ctx.app_name == "editor"
        assert ctx.app_version == "2.3.0"
        assert ctx.data_dir == tmp_path / "data"
        assert ctx.config_dir == tmp_path / "config"

    def test_platform_default_dirs(self, monkeypatch, tmp_path):
        monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg"))
        ctx = PluginContextBuilder("my-app", "1.0").build()
        assert ctx.data_dir.name == "plugins"
        assert ctx.config_dir.name == "config"
        assert ctx.data_dir.parent == ctx.config_dir.parent
        assert "my-app" in str(ctx.data_dir)

    def test_default_callbacks_are_harmless(self, tmp_path):
        ctx = PluginContextBuilder("app", "1.0").data_dir(tmp_path).config_dir(tmp_path).build()
        ctx.log_info("hello")
        ctx.notify("hi")
        ctx.set_clipboard("text")
        ctx.run_command("save")
        assert ctx.get_selection() is None

    def test_default_log_goes_to_plugins_logger(self, tmp_path, caplog):
        ctx = PluginContextBuilder("app", "1.0").data_dir(tmp_path).config_dir(tmp_path).build()
        with caplog.at_level(logging.DEBUG, logger="termplug.plugins"):
            ctx.log_warn("[demo] disk almost full")
            ctx.notify("saved")
        records = [(r.name, r.levelno, r.getMessage()) for r in caplog.records]
        assert ("termplug.plugins", logging.WARNING, "[demo] disk almost full") in records
        assert ("termplug.plugins", logging.INFO, "[notify] saved") in records

    def test_built_contexts_do_not_share_callback_tables(self, tmp_path):
        builder = PluginContextBuilder("app", "1.0").data_dir(tmp_path).config_dir(tmp_path)
        first = builder.build()
        second_notify = MagicMock()
        builder.on_notify(second_notify)
        second = builder.build()

        first.notify("a")
        second.notify("b")
        second_notify.assert_called_once_with("b")


# ===========================================================================
# Callbacks
# ===========================================================================


class TestContextCallbacks:

    @pytest.mark.parametrize(
        "method,level",
        [
            ("log_debug", LogLevel.DEBUG),
            ("log_info", LogLevel.INFO),
            ("log_warn", LogLevel.WARN),
            ("log_error", LogLevel.ERROR),
        ],
    )
    def test_log_helpers(self, ctx, callbacks, method, level):
        getattr(ctx, method)("message")
        callbacks["log"].assert_called_once_with(level, "message")

    def test_log_accepts_level_name(self, ctx, callbacks):
        ctx.log("warn", "x")
        callbacks["log"].assert_called_once_with(LogLevel.WARN, "x")

    def test_notify_and_selection(self, ctx, callbacks):
        ctx.notify("Saved")
        callbacks["notify"].assert_called_once_with("Saved")
        assert ctx.get_selection() == "selected text"

    def test_set_clipboard(self, ctx, callbacks):
        ctx.set_clipboard("copy me")
        callbacks["set_clipboard"].assert_called_once_with("copy me")

    def test_run_command_passes_args_copy(self, ctx, callbacks):
        args = {"force": True}
        ctx.run_command("save", args)
        callbacks["run_command"].assert_called_once_with("save", {"force": True})
        assert callbacks["run_command"].call_args.args[1] is not args

    def test_run_command_default_args(self, ctx, callbacks):
        ctx.run_command("quit")
        callbacks["run_command"].assert_called_once_with("quit", {})

    def test_callback_failure_wrapped(self, ctx, callbacks):
        callbacks["set_clipboard"].side_effect = RuntimeError("no display")
        with pytest.raises(PluginError, match="set_clipboard failed: no display"):
            ctx.set_clipboard("x")

    def test_plugin_error_passes_through(self, ctx, callbacks):
        callbacks["run_command"].side_effect = PluginError("unknown command")
        with pytest.raises(PluginError, match="^unknown command$"):
            ctx.run_command("nope")

    def test_with_callbacks(self, ctx):
        notify = MagicMock()
        other = ctx.with_callbacks(HostCallbacks(notify=notify))
        other.notify("x")
        notify.assert_called_once_with("x")
        assert other.app_name == ctx.app_name
        assert other.data_dir == ctx.data_dir

    def test_replace_callbacks(self):
        notify = MagicMock()
        table = replace_callbacks(HostCallbacks(), notify=notify)
        table.notify("x")
        notify.assert_called_once_with("x")


# ===========================================================================
# Shared state
# ===========================================================================


class TestSharedState:

    def test_set_get_remove(self, ctx):
        ctx.set_state("k", {"count": 1})
        assert ctx.get_state("k") == {"count": 1}
        assert ctx.has_state("k")
        assert ctx.remove_state("k") == {"count": 1}
        assert ctx.get_state("k") is None
        assert not ctx.has_state("k")

    def test_absent_key(self, ctx):
        assert ctx.get_state("missing") is None
        assert ctx.remove_state("missing") is None

    def test_values_are_copied(self, ctx):
        value = {"items": [1, 2]}
        ctx.set_state("k", value)
        value["items"].append(3)
        fetched = ctx.get_state("k")
        fetched["items"].append(4)
        assert ctx.get_state("k") == {"items": [1, 2]}

    def test_state_keys_sorted(self, ctx):
        ctx.set_state("b", 1)
        ctx.set_state("a", 2)
        assert ctx.state_keys() == ["a", "b"]

    def test_with_callbacks_does_not_share_state(self, ctx):
        ctx.set_state("k", 1)
        assert ctx.with_callbacks(HostCallbacks()).get_state("k") is None

    def test_concurrent_writers(self, ctx):
        def writer(n: int) -> None:
            for i in range(200):
                ctx.set_state(f"w{n}", i)
                ctx.get_state(f"w{n}")

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert ctx.state_keys() == [f"w{n}" for n in range(8)]
        assert all(ctx.get_state(f"w{n}") == 199 for n in range(8))


class TestReadWriteLock:

    def test_readers_share(self):
        lock = ReadWriteLock()
        inside = threading.Barrier(2, timeout=2)

        def reader() -> None:
            with lock.read():
                inside.wait()

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=3)
        assert not any(t.is_alive() for t in threads)

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        events: list[str] = []
        writer_in = threading.Event()

        def writer() -> None:
            with lock.write():
                writer_in.set()
                time.sleep(0.05)
                events.append("write-done")

        def reader() -> None:
            writer_in.wait()
            with lock.read():
                events.append("read")

        w = threading.Thread(target=writer)
        r = threading.Thread(target=reader)
        w.start()
        r.start()
        w.join()
        r.join()
        assert events == ["write-done", "read"]
