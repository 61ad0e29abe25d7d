"""
Exception hierarchy for termplug.

Every failure the plugin runtime can report derives from PluginError so
hosts can isolate a misbehaving plugin with a single except clause.
Sandbox violations that abort a call carry their ViolationType so the
host can audit them without parsing messages.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from termplug.sandbox import ViolationType


class PluginError(Exception):
    """Base class for all plugin runtime errors.

    Attributes:
        message: Human-readable description.
        plugin_id: Identifier of the plugin involved, if known.
    """

    def __init__(self, message: str, plugin_id: str | None = None):
        self.message = message
        self.plugin_id = plugin_id
        if plugin_id:
            super().__init__(f"[{plugin_id}] {message}")
        else:
            super().__init__(message)


class ManifestError(PluginError):
    """Raised when a manifest is missing a required field or is malformed."""


class BackendNotAvailableError(PluginError):
    """Raised when a known backend is not built in or is disabled."""

    def __init__(self, backend: str, plugin_id: str | None = None):
        self.backend = backend
        super().__init__(f"Backend not available: {backend}", plugin_id)


class ScriptError(PluginError):
    """Raised when code inside the sandboxed interpreter fails.

    Attributes:
        call: The lifecycle call that failed ("load", "init", "on_event", ...).
    """

    def __init__(self, message: str, plugin_id: str | None = None, call: str = "load"):
        self.call = call
        super().__init__(f"{call} failed: {message}", plugin_id)


class SandboxViolationError(ScriptError):
    """Raised when a hard sandbox limit aborts a call."""

    def __init__(
        self,
        violation_type: ViolationType,
        message: str,
        plugin_id: str | None = None,
        call: str = "load",
    ):
        self.violation_type = violation_type
        super().__init__(message, plugin_id, call)


class PermissionDeniedError(PluginError):
    """Raised when the sandbox policy or host configuration refuses access."""


class InvalidStateError(PluginError):
    """Raised when a lifecycle call is made in the wrong plugin state."""


class ProtocolError(PluginError):
    """Raised when an event or response cannot be decoded."""


class PluginNotFoundError(PluginError):
    """Raised when a plugin id is not registered with the host."""

    def __init__(self, plugin_id: str):
        super().__init__(f"Plugin not found: {plugin_id}")
        self.plugin_id = plugin_id


class PluginAlreadyLoadedError(PluginError):
    """Raised when registering a plugin id that is already registered."""

    def __init__(self, plugin_id: str):
        super().__init__(f"Plugin already loaded: {plugin_id}")
        self.plugin_id = plugin_id
