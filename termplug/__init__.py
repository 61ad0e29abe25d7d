"""
termplug - sandboxed plugin runtime for terminal applications.

Plugins are described by a TOML manifest, run inside an embedded Lua
interpreter under resource limits and allow-lists, and talk to the host
through typed events and responses.

Example:
    from termplug import PluginHost, CommandEvent

    host = PluginHost.from_settings()
    host.load_from_manifest("plugins/demo/plugin.toml")
    host.init_all()
    result = host.dispatch(CommandEvent(name="demo:greet"))
"""

__version__ = "0.1.0"

from termplug.capability import Capability, CapabilitySet, PermissionSet  # noqa: E402
from termplug.context import HostCallbacks, PluginContext, PluginContextBuilder  # noqa: E402
from termplug.errors import (  # noqa: E402
    BackendNotAvailableError,
    InvalidStateError,
    ManifestError,
    PermissionDeniedError,
    PluginAlreadyLoadedError,
    PluginError,
    PluginNotFoundError,
    ProtocolError,
    SandboxViolationError,
    ScriptError,
)
from termplug.host import DispatchResult, PluginHost, PluginHostConfig  # noqa: E402
from termplug.manifest import Manifest  # noqa: E402
from termplug.plugin import (  # noqa: E402
    Backend,
    Plugin,
    PluginBase,
    PluginCommand,
    PluginInfo,
    PluginKeybinding,
    PluginState,
)
from termplug.protocol import (  # noqa: E402
    CommandEvent,
    PluginEvent,
    PluginResponse,
)
from termplug.sandbox import SandboxConfig, SandboxPolicy  # noqa: E402

__all__ = [
    "__version__",
    # Errors
    "PluginError",
    "ManifestError",
    "BackendNotAvailableError",
    "ScriptError",
    "SandboxViolationError",
    "PermissionDeniedError",
    "InvalidStateError",
    "ProtocolError",
    "PluginNotFoundError",
    "PluginAlreadyLoadedError",
    # Model
    "Manifest",
    "Capability",
    "CapabilitySet",
    "PermissionSet",
    "Backend",
    "Plugin",
    "PluginBase",
    "PluginState",
    "PluginInfo",
    "PluginCommand",
    "PluginKeybinding",
    # Runtime
    "SandboxConfig",
    "SandboxPolicy",
    "PluginContext",
    "PluginContextBuilder",
    "HostCallbacks",
    "CommandEvent",
    "PluginEvent",
    "PluginResponse",
    # Host
    "PluginHost",
    "PluginHostConfig",
    "DispatchResult",
]
