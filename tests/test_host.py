"""Tests for termplug.host.

Covers:
- Registration and loading from manifests
- Lifecycle management across plugins
- Dispatch ordering, handled short-circuit and failure isolation
- Applying responses through the context callbacks
- Enable / disable and automatic disabling
- Queries, listeners and statistics
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from termplug.capability import CapabilitySet
from termplug.config.settings import Settings
from termplug.context import PluginContextBuilder
from termplug.errors import (
    BackendNotAvailableError,
    InvalidStateError,
    ManifestError,
    PermissionDeniedError,
    PluginAlreadyLoadedError,
    PluginNotFoundError,
    ScriptError,
)
from termplug.host import DispatchResult, HostEvent, PluginHost, PluginHostConfig
from termplug.plugin import Backend, PluginBase, PluginCommand, PluginKeybinding, PluginState
from termplug.protocol import (
    CommandEvent,
    LifecycleEvent,
    LifecyclePhase,
    LogLevel,
    PluginResponse,
)
from termplug.protocol.response import InsertTextAction
from termplug.sandbox import ViolationType


class RecordingPlugin(PluginBase):
    """Native plugin that records the events it receives."""

    def __init__(self, plugin_id: str, response: PluginResponse | None = None, fail: bool = False):
        super().__init__()
        self.id = plugin_id
        self.name = plugin_id.title()
        self.version = "1.0.0"
        self.capabilities = CapabilitySet(commands=True)
        self.received: list = []
        self.response = response
        self.fail = fail

    def handle_event(self, event):
        self.received.append(event)
        if self.fail:
            raise RuntimeError(f"{self.id} exploded")
        return self.response

    def get_commands(self):
        return [PluginCommand(id=f"{self.id}:run", label="Run")]

    def get_keybindings(self):
        return [PluginKeybinding(keys="ctrl+r", command=f"{self.id}:run")]


LUA_ENTRY = """
local plugin = {{ id = "{plugin_id}", name = "{plugin_id}", version = "{version}",
                  capabilities = {{ "commands" }},
                  commands = {{ cmd = {{ label = "Command" }} }} }}

function plugin.on_event(event)
  if event.type == "command" and event.name == "save" then
    return {{ action = {{ type = "run_command", name = "save" }}, handled = true }}
  end
  if event.type == "command" and event.name == "peek" then
    local _ = os
    return nil
  end
end

return plugin
"""


def write_plugin(
    root: Path,
    plugin_id: str = "demo",
    version: str = "1.0.0",
    entry_id: str | None = None,
    backend: str = "script",
    dependencies: str = "",
    permissions: str = "",
) -> Path:
    """Write a manifest and Lua entry file; return the manifest path."""
    directory = root / plugin_id
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "plugin.lua").write_text(
        LUA_ENTRY.format(plugin_id=entry_id or plugin_id, version=version)
    )
    manifest = directory / "plugin.toml"
    manifest.write_text(
        f"""
[plugin]
id = "{plugin_id}"
name = "{plugin_id.title()}"
version = "{version}"

[capabilities]
commands = true

[backend]
type = "{backend}"
entry = "plugin.lua"

[permissions]
{permissions}

[dependencies]
{dependencies}
"""
    )
    return manifest


# ===========================================================================
# Fixtures
# ===========================================================================


@pytest.fixture
def callbacks() -> dict[str, MagicMock]:
    return {
        "log": MagicMock(),
        "notify": MagicMock(),
        "set_clipboard": MagicMock(),
        "run_command": MagicMock(),
    }


@pytest.fixture
def ctx(tmp_path: Path, callbacks):
    return (
        PluginContextBuilder("editor", "2.3.0")
        .data_dir(tmp_path / "data")
        .config_dir(tmp_path / "config")
        .on_log(callbacks["log"])
        .on_notify(callbacks["notify"])
        .on_set_clipboard(callbacks["set_clipboard"])
        .on_run_command(callbacks["run_command"])
        .build()
    )


@pytest.fixture
def host(ctx) -> PluginHost:
    return PluginHost(PluginHostConfig(), ctx)


# ===========================================================================
# Registration
# ===========================================================================


class TestRegistration:

    def test_register(self, host):
        registered = host.register(RecordingPlugin("a"))
        assert registered.id == "a"
        assert "a" in host
        assert len(host) == 1
        assert host.count() == 1
        assert host.get("a").id == "a"

    def test_duplicate_rejected(self, host):
        host.register(RecordingPlugin("a"))
        with pytest.raises(PluginAlreadyLoadedError):
            host.register(RecordingPlugin("a"))

    def test_disabled_by_config(self, ctx):
        host = PluginHost(PluginHostConfig(disabled_plugins=["a"]), ctx)
        with pytest.raises(PermissionDeniedError):
            host.register(RecordingPlugin("a"))

    def test_unknown_plugin(self, host):
        assert host.get("nope") is None
        with pytest.raises(PluginNotFoundError):
            host.init("nope")
        with pytest.raises(PluginNotFoundError):
            host.unload("nope")

    def test_plugin_ids_keep_registration_order(self, host):
        for plugin_id in ("c", "a", "b"):
            host.register(RecordingPlugin(plugin_id))
        assert host.plugin_ids() == ["c", "a", "b"]
        assert [info.id for info in host.list_plugins()] == ["c", "a", "b"]


# ===========================================================================
# Loading from manifests
# ===========================================================================


class TestLoadFromManifest:

    def test_end_to_end(self, host, tmp_path):
        plugin = host.load_from_manifest(write_plugin(tmp_path))
        assert plugin.id == "demo"
        assert plugin.backend is Backend.SCRIPT
        assert [c.id for c in plugin.get_commands()] == ["demo:cmd"]
        assert host.get_registered("demo").manifest.id == "demo"

    def test_load_bare_entry(self, host, tmp_path):
        write_plugin(tmp_path)
        plugin = host.load(tmp_path / "demo" / "plugin.lua")
        assert plugin.id == "demo"
        assert host.get_registered("demo").manifest is None

    def test_missing_manifest(self, host, tmp_path):
        with pytest.raises(OSError):
            host.load_from_manifest(tmp_path / "missing.toml")

    def test_invalid_manifest(self, host, tmp_path):
        path = tmp_path / "plugin.toml"
        path.write_text('[plugin]\nname = "x"\nversion = "1"\n[backend]\ntype = "script"\nentry = "p.lua"\n')
        with pytest.raises(ManifestError):
            host.load_from_manifest(path)
        assert host.count() == 0

    def test_unavailable_backend(self, host, tmp_path):
        with pytest.raises(BackendNotAvailableError):
            host.load_from_manifest(write_plugin(tmp_path, backend="wasm"))

    def test_backend_disabled_by_config(self, ctx, tmp_path):
        host = PluginHost(PluginHostConfig(enabled_backends=[]), ctx)
        with pytest.raises(BackendNotAvailableError):
            host.load_from_manifest(write_plugin(tmp_path))

    def test_disabled_plugin(self, ctx, tmp_path):
        host = PluginHost(PluginHostConfig(disabled_plugins=["demo"]), ctx)
        with pytest.raises(PermissionDeniedError):
            host.load_from_manifest(write_plugin(tmp_path))

    def test_already_loaded(self, host, tmp_path):
        manifest = write_plugin(tmp_path)
        host.load_from_manifest(manifest)
        with pytest.raises(PluginAlreadyLoadedError):
            host.load_from_manifest(manifest)

    def test_id_mismatch(self, host, tmp_path):
        with pytest.raises(ManifestError, match="declares id 'other'"):
            host.load_from_manifest(write_plugin(tmp_path, entry_id="other"))
        assert host.count() == 0

    def test_dependencies(self, host, tmp_path):
        dependent = write_plugin(tmp_path, "ui", dependencies='core = "^1.0"')
        with pytest.raises(ManifestError, match="Unsatisfied dependencies: core"):
            host.load_from_manifest(dependent)

        host.load_from_manifest(write_plugin(tmp_path, "core", version="1.4.0"))
        assert host.load_from_manifest(dependent).id == "ui"

    def test_dependency_version_out_of_range(self, host, tmp_path):
        host.load_from_manifest(write_plugin(tmp_path, "core", version="2.0.0"))
        with pytest.raises(ManifestError):
            host.load_from_manifest(write_plugin(tmp_path, "ui", dependencies='core = "^1.0"'))

    def test_permissions_widen_sandbox(self, host, tmp_path):
        manifest = write_plugin(tmp_path, permissions='filesystem = ["/srv/data/*"]')
        plugin = host.load_from_manifest(manifest)
        assert plugin.sandbox.is_path_allowed("/srv/data/a.csv")

    def test_restrictive_preset(self, ctx, tmp_path):
        host = PluginHost(PluginHostConfig(sandbox_preset="restrictive"), ctx)
        manifest = write_plugin(tmp_path, permissions='filesystem = ["/srv/data/*"]')
        plugin = host.load_from_manifest(manifest)
        assert plugin.sandbox.memory_limit == 1_048_576
        assert not plugin.sandbox.is_path_allowed("/srv/data/a.csv")

    def test_broken_entry(self, host, tmp_path):
        manifest = write_plugin(tmp_path)
        (tmp_path / "demo" / "plugin.lua").write_text("return {")
        with pytest.raises(ScriptError):
            host.load_from_manifest(manifest)
        assert host.count() == 0


# ===========================================================================
# Lifecycle
# ===========================================================================


class TestHostLifecycle:

    def test_init_all(self, host):
        a, b = RecordingPlugin("a"), RecordingPlugin("b")
        host.register(a)
        host.register(b)
        assert host.init_all() == {"a": True, "b": True}
        assert a.is_initialized() and b.is_initialized()
        assert a.context is host.context

    def test_init_is_idempotent(self, host):
        host.register(RecordingPlugin("a"))
        assert host.init("a") is True
        assert host.init("a") is True

    def test_init_failure_is_isolated(self, host):
        bad = RecordingPlugin("bad")
        bad.on_init = MagicMock(side_effect=RuntimeError("no"))
        host.register(bad)
        host.register(RecordingPlugin("good"))
        assert host.init_all() == {"bad": False, "good": True}
        assert host.get_registered("bad").last_error == "no"

    def test_init_after_shutdown_raises(self, host):
        plugin = RecordingPlugin("a")
        host.register(plugin)
        host.init("a")
        plugin.shutdown()
        with pytest.raises(InvalidStateError):
            host.init("a")

    def test_init_all_skips_disabled(self, host):
        host.register(RecordingPlugin("a"))
        host.disable("a")
        assert host.init_all() == {}

    def test_shutdown_all_reverse_order(self, host):
        order: list[str] = []
        for plugin_id in ("a", "b", "c"):
            plugin = RecordingPlugin(plugin_id)
            plugin.on_shutdown = lambda pid=plugin_id: order.append(pid)
            host.register(plugin)
        host.init_all()
        host.shutdown_all()
        assert order == ["c", "b", "a"]
        assert host.count() == 0

    def test_unload_uninitialized(self, host):
        plugin = RecordingPlugin("a")
        host.register(plugin)
        host.unload("a")
        assert plugin.state is PluginState.LOADED
        assert "a" not in host

    def test_shutdown_failure_is_isolated(self, host):
        plugin = RecordingPlugin("a")
        plugin.on_shutdown = MagicMock(side_effect=RuntimeError("stuck"))
        host.register(plugin)
        host.init("a")
        host.unload("a")
        assert "a" not in host
        assert plugin.state is PluginState.SHUT_DOWN


# ===========================================================================
# Dispatch
# ===========================================================================


class TestDispatch:

    def _host_with(self, host, *plugins):
        for plugin in plugins:
            host.register(plugin)
        host.init_all()
        return host

    def test_handled_stops_dispatch(self, host):
        a = RecordingPlugin("a")
        b = RecordingPlugin("b", PluginResponse.notify("mine").mark_handled())
        c = RecordingPlugin("c")
        self._host_with(host, a, b, c)

        result = host.dispatch(CommandEvent(name="save"))
        assert len(a.received) == 1
        assert len(b.received) == 1
        assert c.received == []
        assert result.handled is True
        assert result.handled_by == "b"
        assert result.delivered_to == ["a", "b"]
        assert result.response.action.message == "mine"

    def test_unhandled_reaches_everyone(self, host):
        a = RecordingPlugin("a", PluginResponse.notify("a"))
        b = RecordingPlugin("b")
        c = RecordingPlugin("c", PluginResponse.notify("c"))
        self._host_with(host, a, b, c)

        result = host.dispatch(CommandEvent(name="save"))
        assert result.handled is False
        assert result.response is None
        assert result.delivered_to == ["a", "b", "c"]
        assert [pid for pid, _ in result.responses] == ["a", "c"]

    def test_failure_does_not_abort_dispatch(self, host):
        a = RecordingPlugin("a", fail=True)
        b = RecordingPlugin("b", PluginResponse.notify("b").mark_handled())
        self._host_with(host, a, b)

        result = host.dispatch(CommandEvent(name="save"))
        assert result.errors == {"a": "a exploded"}
        assert result.handled_by == "b"
        registered = host.get_registered("a")
        assert registered.error_count == 1
        assert registered.last_error == "a exploded"

    def test_skips_uninitialized_and_disabled(self, host):
        a = RecordingPlugin("a")
        b = RecordingPlugin("b")
        c = RecordingPlugin("c")
        host.register(a)
        host.register(b)
        host.register(c)
        host.init("a")
        host.init("c")
        host.disable("c")

        result = host.dispatch(CommandEvent(name="x"))
        assert result.delivered_to == ["a"]
        assert b.received == []

    def test_send(self, host):
        plugin = RecordingPlugin("a", PluginResponse.notify("x"))
        host.register(plugin)
        with pytest.raises(InvalidStateError):
            host.send("a", CommandEvent(name="x"))
        host.init("a")
        assert host.send("a", CommandEvent(name="x")).action.message == "x"

    def test_send_to_disabled(self, host):
        host.register(RecordingPlugin("a"))
        host.init("a")
        host.disable("a")
        with pytest.raises(PermissionDeniedError):
            host.send("a", CommandEvent(name="x"))

    def test_send_failure_returns_none(self, host):
        host.register(RecordingPlugin("a", fail=True))
        host.init("a")
        assert host.send("a", CommandEvent(name="x")) is None

    def test_script_plugin_run_command(self, host, tmp_path, callbacks):
        host.load_from_manifest(write_plugin(tmp_path, "first"))
        late = RecordingPlugin("late")
        host.register(late)
        host.init_all()

        result = host.dispatch(CommandEvent(name="save"))
        assert result.handled_by == "first"
        assert late.received == []
        assert host.apply_response(result.response) is True
        callbacks["run_command"].assert_called_once_with("save", {})

    def test_script_violations_are_collected(self, host, tmp_path):
        host.load_from_manifest(write_plugin(tmp_path))
        host.init_all()
        host.dispatch(CommandEvent(name="peek"))
        violations = host.violations()
        assert [v.violation_type for v in violations] == [ViolationType.MODULE_ACCESS]
        assert violations[0].plugin_id == "demo"

    def test_dispatch_result_defaults(self):
        result = DispatchResult()
        assert result.handled is False
        assert result.response is None


# ===========================================================================
# Responses
# ===========================================================================


class TestApplyResponse:

    def test_notify(self, host, callbacks):
        assert host.apply_response(PluginResponse.notify("hi")) is True
        callbacks["notify"].assert_called_once_with("hi")

    def test_log(self, host, callbacks):
        assert host.apply_response(PluginResponse.log("error", "bad")) is True
        callbacks["log"].assert_called_once_with(LogLevel.ERROR, "bad")

    def test_set_clipboard(self, host, callbacks):
        response = PluginResponse.model_validate(
            {"action": {"type": "set_clipboard", "text": "copied"}}
        )
        assert host.apply_response(response) is True
        callbacks["set_clipboard"].assert_called_once_with("copied")

    def test_callback_failure(self, host, callbacks):
        callbacks["run_command"].side_effect = RuntimeError("nope")
        assert host.apply_response(PluginResponse.run_command("x")) is False

    def test_ui_actions_left_to_caller(self, host):
        response = PluginResponse(action=InsertTextAction(text="x"))
        assert host.apply_response(response) is False
        assert host.apply_response(PluginResponse.none()) is False


# ===========================================================================
# Enable / disable
# ===========================================================================


class TestEnableDisable:

    def test_lifecycle_events_delivered(self, host):
        plugin = RecordingPlugin("a")
        host.register(plugin)
        host.init("a")
        host.disable("a", reason="testing")
        host.enable("a")
        assert plugin.received == [
            LifecycleEvent(phase=LifecyclePhase.DISABLED),
            LifecycleEvent(phase=LifecyclePhase.ENABLED),
        ]
        assert host.is_enabled("a")

    def test_disable_is_idempotent(self, host):
        plugin = RecordingPlugin("a")
        host.register(plugin)
        host.init("a")
        host.disable("a")
        host.disable("a")
        assert len(plugin.received) == 1
        assert not host.is_enabled("a")

    def test_auto_disable_after_failures(self, ctx):
        host = PluginHost(PluginHostConfig(max_consecutive_failures=2), ctx)
        plugin = RecordingPlugin("a", fail=True)
        host.register(plugin)
        host.init("a")
        host.dispatch(CommandEvent(name="x"))
        assert host.is_enabled("a")
        host.dispatch(CommandEvent(name="x"))
        assert not host.is_enabled("a")
        host.dispatch(CommandEvent(name="x"))
        assert len(plugin.received) == 2

    def test_success_resets_failure_count(self, ctx):
        host = PluginHost(PluginHostConfig(max_consecutive_failures=2), ctx)
        plugin = RecordingPlugin("a", fail=True)
        host.register(plugin)
        host.init("a")
        host.dispatch(CommandEvent(name="x"))
        plugin.fail = False
        host.dispatch(CommandEvent(name="x"))
        plugin.fail = True
        host.dispatch(CommandEvent(name="x"))
        assert host.is_enabled("a")
        assert host.get_registered("a").consecutive_failures == 1

    def test_never_disables_by_default(self, host):
        host.register(RecordingPlugin("a", fail=True))
        host.init("a")
        for _ in range(10):
            host.dispatch(CommandEvent(name="x"))
        assert host.is_enabled("a")


# ===========================================================================
# Queries, listeners, statistics
# ===========================================================================


class TestQueries:

    def test_commands_and_keybindings(self, host):
        host.register(RecordingPlugin("a"))
        host.register(RecordingPlugin("b"))
        host.disable("b")
        assert [c.id for c in host.commands()] == ["a:run"]
        assert [k.command for k in host.keybindings()] == ["a:run"]

    def test_with_capability(self, host):
        plugin = RecordingPlugin("a")
        host.register(plugin)
        assert host.with_capability("commands") == [plugin]
        assert host.with_capability("theming") == []

    def test_listeners(self, host):
        seen: list[HostEvent] = []
        host.add_event_listener(seen.append)
        host.register(RecordingPlugin("a"))
        host.disable("a", reason="why not")
        host.unload("a")
        assert [e.event_type for e in seen] == [
            "plugin_registered",
            "plugin_disabled",
            "plugin_unregistered",
        ]
        assert seen[1].details == {"reason": "why not"}

        host.remove_event_listener(seen.append)
        host.register(RecordingPlugin("b"))
        assert len(seen) == 3

    def test_listener_errors_are_contained(self, host):
        host.add_event_listener(MagicMock(side_effect=RuntimeError("listener broke")))
        host.register(RecordingPlugin("a"))
        assert "a" in host

    def test_failure_event(self, host):
        seen: list[HostEvent] = []
        host.add_event_listener(seen.append)
        host.register(RecordingPlugin("a", fail=True))
        host.init("a")
        host.dispatch(CommandEvent(name="x"))
        failed = [e for e in seen if e.event_type == "plugin_failed"]
        assert failed[0].details == {"call": "on_event", "error": "a exploded"}

    def test_statistics(self, host):
        host.register(RecordingPlugin("a"))
        host.register(RecordingPlugin("b", fail=True))
        host.init_all()
        host.dispatch(CommandEvent(name="x"))
        stats = host.get_statistics()
        assert stats["total_plugins"] == 2
        assert stats["enabled_plugins"] == 2
        assert stats["initialized_plugins"] == 2
        assert stats["total_errors"] == 1
        assert stats["total_violations"] == 0

    def test_registered_to_dict(self, host):
        host.register(RecordingPlugin("a"))
        data = host.get_registered("a").to_dict()
        assert data["info"]["id"] == "a"
        assert data["enabled"] is True
        assert data["call_count"] == 0

    def test_repr(self, host):
        host.register(RecordingPlugin("a"))
        assert repr(host) == "<PluginHost plugins=1 enabled=1>"


# ===========================================================================
# Construction from settings
# ===========================================================================


class TestFromSettings:

    def test_from_settings(self, tmp_path):
        settings = Settings(
            _env_file=None,
            APP_NAME="editor",
            SANDBOX_PRESET="restrictive",
            DISABLED_PLUGINS=["x"],
            MAX_CONSECUTIVE_FAILURES=3,
            DATA_DIR=tmp_path / "data",
            CONFIG_DIR=tmp_path / "config",
        )
        host = PluginHost.from_settings(settings)
        assert host.context.app_name == "editor"
        assert host.context.data_dir == tmp_path / "data"
        assert host.config.sandbox_preset == "restrictive"
        assert host.config.disabled_plugins == ["x"]
        assert host.config.max_consecutive_failures == 3
        assert host.config.enabled_backends == [Backend.SCRIPT]

    def test_builder_callbacks_survive(self, tmp_path):
        notify = MagicMock()
        builder = PluginContextBuilder("ignored", "0").on_notify(notify)
        settings = Settings(_env_file=None, DATA_DIR=tmp_path, CONFIG_DIR=tmp_path)
        host = PluginHost.from_settings(settings, builder)
        host.context.notify("x")
        notify.assert_called_once_with("x")
        assert host.context.app_name == settings.APP_NAME
