"""
Plugin host for termplug.

The host owns the set of loaded plugins and is the only component the
embedding application talks to. It loads plugins from manifests, runs
their lifecycle, and dispatches events to them one at a time in
registration order.

Dispatch Rules:
    - plugins receive an event in the order they were registered
    - the first response with ``handled = True`` stops the dispatch
    - a plugin that raises is logged and treated as returning nothing;
      the rest of the dispatch continues
    - disabled or uninitialized plugins are skipped

Example:
    from termplug.host import PluginHost
    from termplug.protocol import CommandEvent

    host = PluginHost.from_settings()
    host.load_from_manifest("plugins/demo/plugin.toml")
    host.init_all()

    result = host.dispatch(CommandEvent(name="demo:greet"))
    if result.response is not None:
        host.apply_response(result.response)

    host.shutdown_all()
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from termplug.config.settings import Settings
from termplug.context import PluginContext, PluginContextBuilder
from termplug.errors import (
    BackendNotAvailableError,
    InvalidStateError,
    ManifestError,
    PermissionDeniedError,
    PluginAlreadyLoadedError,
    PluginError,
    PluginNotFoundError,
)
from termplug.manifest import Manifest
from termplug.plugin import Backend, Plugin, PluginCommand, PluginInfo, PluginKeybinding
from termplug.protocol.event import LifecycleEvent, LifecyclePhase, PluginEvent
from termplug.protocol.response import (
    LogAction,
    NotifyAction,
    PluginResponse,
    RunCommandAction,
    SetClipboardAction,
)
from termplug.runtime import backend_for_path, load_plugin
from termplug.sandbox import SandboxConfig, SandboxViolation

logger = logging.getLogger(__name__)


@dataclass
class PluginHostConfig:
    """Host policy.

    Attributes:
        sandbox_preset: Preset every plugin starts from.
        grant_manifest_permissions: Widen the preset with the manifest's
            requested permissions (never for the restrictive preset).
        enabled_backends: Backends the host accepts.
        disabled_plugins: Plugin ids that must not be registered.
        max_consecutive_failures: Auto-disable a plugin after this many
            failed calls in a row. 0 never disables.
    """

    sandbox_preset: str = "default"
    grant_manifest_permissions: bool = True
    enabled_backends: list[Backend] = field(default_factory=lambda: [Backend.SCRIPT])
    disabled_plugins: list[str] = field(default_factory=list)
    max_consecutive_failures: int = 0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> PluginHostConfig:
        settings = settings or Settings()
        return cls(
            sandbox_preset=settings.SANDBOX_PRESET,
            grant_manifest_permissions=settings.GRANT_MANIFEST_PERMISSIONS,
            enabled_backends=[Backend.parse(b) for b in settings.ENABLED_BACKENDS],
            disabled_plugins=list(settings.DISABLED_PLUGINS),
            max_consecutive_failures=settings.MAX_CONSECUTIVE_FAILURES,
        )

    def sandbox_for(self, manifest: Manifest) -> SandboxConfig:
        """Select the sandbox a manifest's plugin runs under."""
        return SandboxConfig.for_permissions(
            manifest.permissions,
            base=self.sandbox_preset,
            grant=self.grant_manifest_permissions,
        )


@dataclass
class RegisteredPlugin:
    """A plugin registered with the host.

    Attributes:
        plugin: The plugin object.
        manifest: Manifest it was loaded from, if any.
        registered_at: When the plugin was registered.
        enabled: Whether the plugin receives events.
        call_count: Number of calls made into the plugin.
        error_count: Number of failed calls.
        consecutive_failures: Failed calls since the last success.
        last_error: Message of the most recent failure.
    """

    plugin: Plugin
    manifest: Manifest | None = None
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    enabled: bool = True
    call_count: int = 0
    error_count: int = 0
    consecutive_failures: int = 0
    last_error: str | None = None

    @property
    def id(self) -> str:
        return self.plugin.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "info": PluginInfo.from_plugin(self.plugin).to_dict(),
            "registered_at": self.registered_at.isoformat(),
            "enabled": self.enabled,
            "call_count": self.call_count,
            "error_count": self.error_count,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }


@dataclass
class HostEvent:
    """A notification about the host's plugin set.

    Attributes:
        event_type: plugin_registered, plugin_unregistered, plugin_enabled,
            plugin_disabled or plugin_failed.
        plugin_id: The affected plugin.
        timestamp: When it happened.
        details: Extra information, e.g. the failing call.
    """

    event_type: str
    plugin_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    details: dict[str, Any] = field(default_factory=dict)


HostEventListener = Callable[[HostEvent], None]


@dataclass
class DispatchResult:
    """Outcome of delivering one event.

    Attributes:
        responses: ``(plugin_id, response)`` pairs in delivery order.
        handled_by: Id of the plugin that stopped the dispatch, if any.
        errors: Plugin id mapped to the error message of a failed call.
        delivered_to: Ids of the plugins that received the event.
    """

    responses: list[tuple[str, PluginResponse]] = field(default_factory=list)
    handled_by: str | None = None
    errors: dict[str, str] = field(default_factory=dict)
    delivered_to: list[str] = field(default_factory=list)

    @property
    def handled(self) -> bool:
        return self.handled_by is not None

    @property
    def response(self) -> PluginResponse | None:
        """The response that handled the event, if any."""
        for plugin_id, response in self.responses:
            if plugin_id == self.handled_by:
                return response
        return None


class PluginHost:
    """Registry and dispatcher for loaded plugins.

    Not thread-safe: load, dispatch and lifecycle calls must come from one
    thread. Only the context's state store may be used concurrently.
    """

    def __init__(
        self,
        config: PluginHostConfig | None = None,
        context: PluginContext | None = None,
    ):
        self._config = config or PluginHostConfig()
        self._context = context or PluginContextBuilder("tui-app", "0.1.0").build()
        self._plugins: dict[str, RegisteredPlugin] = {}
        self._event_listeners: list[HostEventListener] = []

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        builder: PluginContextBuilder | None = None,
    ) -> PluginHost:
        """Build a host from environment settings.

        Args:
            settings: Settings to use; read from the environment when omitted.
            builder: Builder carrying the application's callbacks. Its
                identity and directories are overridden by the settings.
        """
        settings = settings or Settings()
        builder = builder or PluginContextBuilder(settings.APP_NAME, settings.APP_VERSION)
        builder.app_name = settings.APP_NAME
        builder.app_version = settings.APP_VERSION
        if settings.DATA_DIR is not None:
            builder.data_dir(settings.DATA_DIR)
        if settings.CONFIG_DIR is not None:
            builder.config_dir(settings.CONFIG_DIR)
        return cls(PluginHostConfig.from_settings(settings), builder.build())

    @property
    def config(self) -> PluginHostConfig:
        return self._config

    @property
    def context(self) -> PluginContext:
        return self._context

    # Loading and registration

    def register(self, plugin: Plugin, manifest: Manifest | None = None) -> RegisteredPlugin:
        """Add an already constructed plugin.

        Raises:
            PluginAlreadyLoadedError: If the id is already registered.
            PermissionDeniedError: If the id is disabled by configuration.
        """
        if plugin.id in self._plugins:
            raise PluginAlreadyLoadedError(plugin.id)
        if plugin.id in self._config.disabled_plugins:
            raise PermissionDeniedError("plugin is disabled by configuration", plugin.id)

        registered = RegisteredPlugin(plugin=plugin, manifest=manifest)
        self._plugins[plugin.id] = registered
        logger.info(f"Registered plugin: {plugin.id} (backend: {plugin.backend.value})")
        self._emit_event(HostEvent(event_type="plugin_registered", plugin_id=plugin.id))
        return registered

    def load(self, path: Path | str) -> Plugin:
        """Load a bare entry file using the configured sandbox preset.

        The backend is chosen from the file extension.
        """
        backend = backend_for_path(path)
        self._check_backend(backend)
        plugin = load_plugin(path, SandboxConfig.preset(self._config.sandbox_preset), backend)
        self.register(plugin)
        return plugin

    def load_from_manifest(self, path: Path | str) -> Plugin:
        """Load a plugin described by a manifest file.

        Steps: parse and validate the manifest, resolve the backend, check
        dependencies against registered plugins, select the sandbox, load
        the entry file, register.

        Raises:
            OSError: If a file cannot be read.
            ManifestError: If the manifest is invalid, a dependency is
                unsatisfied, or the entry declares a different id.
            BackendNotAvailableError: If the backend is unavailable or
                disabled.
            PermissionDeniedError: If the plugin id is disabled.
            ScriptError: If the entry file fails to evaluate.
        """
        manifest = Manifest.load(path)
        manifest.validate()
        backend = manifest.backend()
        self._check_backend(backend, manifest.id)
        if manifest.id in self._config.disabled_plugins:
            raise PermissionDeniedError("plugin is disabled by configuration", manifest.id)
        if manifest.id in self._plugins:
            raise PluginAlreadyLoadedError(manifest.id)

        available = {pid: reg.plugin.version for pid, reg in self._plugins.items()}
        missing = manifest.check_dependencies(available)
        if missing:
            listed = ", ".join(f"{name} {req}" for name, req in missing)
            raise ManifestError(f"Unsatisfied dependencies: {listed}", manifest.id)

        sandbox = self._config.sandbox_for(manifest)
        plugin = load_plugin(manifest.entry_path(), sandbox, backend)
        if plugin.id != manifest.id:
            raise ManifestError(
                f"Entry declares id '{plugin.id}' but manifest declares '{manifest.id}'",
                manifest.id,
            )
        self.register(plugin, manifest)
        return plugin

    def _check_backend(self, backend: Backend, plugin_id: str | None = None) -> None:
        if not backend.is_available or backend not in self._config.enabled_backends:
            raise BackendNotAvailableError(backend.value, plugin_id)

    def unload(self, plugin_id: str) -> None:
        """Shut a plugin down (if initialized) and remove it.

        Raises:
            PluginNotFoundError: If the id is not registered.
        """
        registered = self._get(plugin_id)
        if registered.plugin.is_initialized():
            self._call(registered, "shutdown", registered.plugin.shutdown)
        del self._plugins[plugin_id]
        logger.info(f"Unregistered plugin: {plugin_id}")
        self._emit_event(HostEvent(event_type="plugin_unregistered", plugin_id=plugin_id))

    def shutdown_all(self) -> None:
        """Unload every plugin, most recently registered first."""
        for plugin_id in reversed(list(self._plugins)):
            self.unload(plugin_id)

    # Lifecycle

    def init(self, plugin_id: str) -> bool:
        """Initialize one plugin with the host context.

        Returns:
            True if the plugin is initialized afterwards.

        Raises:
            PluginNotFoundError: If the id is not registered.
            InvalidStateError: If the plugin was already shut down.
        """
        registered = self._get(plugin_id)
        plugin = registered.plugin
        if plugin.is_initialized():
            return True
        ok, _ = self._call(registered, "init", plugin.init, self._context, reraise_state=True)
        return ok

    def init_all(self) -> dict[str, bool]:
        """Initialize every enabled plugin that is not yet initialized."""
        results: dict[str, bool] = {}
        for plugin_id, registered in list(self._plugins.items()):
            if not registered.enabled:
                continue
            try:
                results[plugin_id] = self.init(plugin_id)
            except InvalidStateError as e:
                logger.error(f"Plugin {plugin_id} cannot be initialized: {e}")
                results[plugin_id] = False
        return results

    # Dispatch

    def dispatch(self, event: PluginEvent) -> DispatchResult:
        """Deliver an event to plugins in registration order.

        Stops at the first response marked handled.
        """
        result = DispatchResult()
        for plugin_id, registered in list(self._plugins.items()):
            if not registered.enabled or not registered.plugin.is_initialized():
                continue
            result.delivered_to.append(plugin_id)
            ok, response = self._call(registered, "on_event", registered.plugin.on_event, event)
            if not ok:
                result.errors[plugin_id] = registered.last_error or "failed"
                continue
            if response is None:
                continue
            result.responses.append((plugin_id, response))
            if response.handled:
                result.handled_by = plugin_id
                logger.debug(f"Event {event.event_type()} handled by {plugin_id}")
                break
        return result

    def send(self, plugin_id: str, event: PluginEvent) -> PluginResponse | None:
        """Deliver an event to a single plugin.

        Raises:
            PluginNotFoundError: If the id is not registered.
            PermissionDeniedError: If the plugin is disabled.
            InvalidStateError: If the plugin is not initialized.
        """
        registered = self._get(plugin_id)
        if not registered.enabled:
            raise PermissionDeniedError("plugin is disabled", plugin_id)
        _, response = self._call(
            registered, "on_event", registered.plugin.on_event, event, reraise_state=True
        )
        return response

    def apply_response(self, response: PluginResponse) -> bool:
        """Carry out a response's action through the context callbacks.

        Handles notify, run_command, set_clipboard and log. Other actions
        need application UI and are left to the caller.

        Returns:
            True if the host performed the action.
        """
        action = response.action
        if isinstance(action, NotifyAction):
            self._context.notify(action.message)
            return True
        if isinstance(action, LogAction):
            self._context.log(action.level, action.message)
            return True
        try:
            if isinstance(action, RunCommandAction):
                self._context.run_command(action.name, action.args)
                return True
            if isinstance(action, SetClipboardAction):
                self._context.set_clipboard(action.text)
                return True
        except PluginError as e:
            logger.error(f"Host could not perform {action.type}: {e}")
            return False
        return False

    # Enable / disable

    def enable(self, plugin_id: str) -> None:
        registered = self._get(plugin_id)
        if registered.enabled:
            return
        registered.enabled = True
        registered.consecutive_failures = 0
        self._notify_lifecycle(registered, LifecyclePhase.ENABLED)
        logger.info(f"Enabled plugin: {plugin_id}")
        self._emit_event(HostEvent(event_type="plugin_enabled", plugin_id=plugin_id))

    def disable(self, plugin_id: str, reason: str | None = None) -> None:
        registered = self._get(plugin_id)
        if not registered.enabled:
            return
        self._notify_lifecycle(registered, LifecyclePhase.DISABLED)
        registered.enabled = False
        logger.info(f"Disabled plugin: {plugin_id}")
        details = {"reason": reason} if reason else {}
        self._emit_event(HostEvent(event_type="plugin_disabled", plugin_id=plugin_id, details=details))

    def _notify_lifecycle(self, registered: RegisteredPlugin, phase: LifecyclePhase) -> None:
        if registered.plugin.is_initialized():
            self._call(
                registered, "on_event", registered.plugin.on_event, LifecycleEvent(phase=phase)
            )

    # Queries

    def get(self, plugin_id: str) -> Plugin | None:
        registered = self._plugins.get(plugin_id)
        return registered.plugin if registered else None

    def get_registered(self, plugin_id: str) -> RegisteredPlugin | None:
        return self._plugins.get(plugin_id)

    def is_enabled(self, plugin_id: str) -> bool:
        return self._get(plugin_id).enabled

    def list_plugins(self) -> list[PluginInfo]:
        return [PluginInfo.from_plugin(r.plugin) for r in self._plugins.values()]

    def plugin_ids(self) -> list[str]:
        return list(self._plugins)

    def count(self) -> int:
        return len(self._plugins)

    def with_capability(self, name: str) -> list[Plugin]:
        """Enabled plugins offering the named capability."""
        return [
            r.plugin
            for r in self._plugins.values()
            if r.enabled and r.plugin.capabilities.has(name)
        ]

    def commands(self) -> list[PluginCommand]:
        """Commands of all enabled plugins, in registration order."""
        commands: list[PluginCommand] = []
        for registered in self._plugins.values():
            if registered.enabled:
                _, found = self._call(registered, "get_commands", registered.plugin.get_commands)
                commands.extend(found or [])
        return commands

    def keybindings(self) -> list[PluginKeybinding]:
        bindings: list[PluginKeybinding] = []
        for registered in self._plugins.values():
            if registered.enabled:
                _, found = self._call(registered, "get_keybindings", registered.plugin.get_keybindings)
                bindings.extend(found or [])
        return bindings

    def violations(self) -> list[SandboxViolation]:
        """Sandbox violations recorded by all plugins that keep a policy."""
        found: list[SandboxViolation] = []
        for registered in self._plugins.values():
            policy = getattr(registered.plugin, "policy", None)
            if policy is not None:
                found.extend(policy.violations)
        return sorted(found, key=lambda v: v.timestamp)

    def __len__(self) -> int:
        return len(self._plugins)

    def __contains__(self, plugin_id: object) -> bool:
        return plugin_id in self._plugins

    def _get(self, plugin_id: str) -> RegisteredPlugin:
        registered = self._plugins.get(plugin_id)
        if registered is None:
            raise PluginNotFoundError(plugin_id)
        return registered

    # Call isolation

    def _call(
        self,
        registered: RegisteredPlugin,
        call: str,
        fn: Callable[..., Any],
        *args: Any,
        reraise_state: bool = False,
    ) -> tuple[bool, Any]:
        """Invoke a plugin method, isolating failures.

        Returns:
            ``(True, result)`` on success, ``(False, None)`` on failure.
        """
        registered.call_count += 1
        try:
            result = fn(*args)
        except InvalidStateError:
            if reraise_state:
                raise
            self._record_failure(registered, call, "invalid lifecycle state")
            return False, None
        except Exception as e:
            self._record_failure(registered, call, str(e))
            return False, None
        registered.consecutive_failures = 0
        return True, result

    def _record_failure(self, registered: RegisteredPlugin, call: str, message: str) -> None:
        registered.error_count += 1
        registered.consecutive_failures += 1
        registered.last_error = message
        logger.error(f"Plugin {registered.id} failed in {call}: {message}")
        self._emit_event(
            HostEvent(
                event_type="plugin_failed",
                plugin_id=registered.id,
                details={"call": call, "error": message},
            )
        )

        limit = self._config.max_consecutive_failures
        if limit and registered.enabled and registered.consecutive_failures >= limit:
            logger.warning(
                f"Disabling plugin {registered.id} after "
                f"{registered.consecutive_failures} consecutive failures"
            )
            registered.enabled = False
            self._emit_event(
                HostEvent(
                    event_type="plugin_disabled",
                    plugin_id=registered.id,
                    details={"reason": "too many consecutive failures"},
                )
            )

    # Listeners

    def add_event_listener(self, listener: HostEventListener) -> None:
        self._event_listeners.append(listener)

    def remove_event_listener(self, listener: HostEventListener) -> None:
        if listener in self._event_listeners:
            self._event_listeners.remove(listener)

    def _emit_event(self, event: HostEvent) -> None:
        for listener in self._event_listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener error: {e}")

    def get_statistics(self) -> dict[str, Any]:
        """Get host statistics.

        Returns:
            Dictionary with plugin counts, call totals and violations.
        """
        return {
            "total_plugins": len(self._plugins),
            "enabled_plugins": sum(1 for r in self._plugins.values() if r.enabled),
            "initialized_plugins": sum(
                1 for r in self._plugins.values() if r.plugin.is_initialized()
            ),
            "total_calls": sum(r.call_count for r in self._plugins.values()),
            "total_errors": sum(r.error_count for r in self._plugins.values()),
            "total_violations": len(self.violations()),
        }

    def __repr__(self) -> str:
        enabled = sum(1 for r in self._plugins.values() if r.enabled)
        return f"<PluginHost plugins={len(self._plugins)} enabled={enabled}>"
