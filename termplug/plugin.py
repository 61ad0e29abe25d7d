"""
Plugin contract for termplug.

Every backend produces objects that satisfy the Plugin protocol: a fixed
identity (id, name, version), a backend tag, a capability set, and the
lifecycle calls init/on_event/shutdown. Hosts only ever talk to plugins
through this contract, so adding a backend never changes host code.

Lifecycle:
    LOADED -> INITIALIZED -> SHUT_DOWN

    - init() is valid only in LOADED
    - on_event() is valid only in INITIALIZED
    - shutdown() is valid in INITIALIZED, and a no-op in SHUT_DOWN

Example - a native Python plugin for tests or embedding:
    from termplug.plugin import PluginBase, PluginCommand
    from termplug.protocol import PluginResponse

    class EchoPlugin(PluginBase):
        id = "echo"
        name = "Echo"
        version = "1.0.0"

        def handle_event(self, event):
            if event.event_type() == "command":
                return PluginResponse.notify(event.name).mark_handled()
            return None
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from termplug.capability import CapabilitySet
from termplug.errors import InvalidStateError, PluginError

if TYPE_CHECKING:
    from termplug.context import PluginContext
    from termplug.protocol.event import PluginEvent
    from termplug.protocol.response import PluginResponse

logger = logging.getLogger(__name__)


class Backend(str, Enum):
    """Execution engines a plugin can declare.

    Only SCRIPT (an embedded Lua interpreter) is built in. WASM and
    NATIVE are recognized so manifests naming them fail with a clear
    "not available" error instead of "unknown backend".
    """

    SCRIPT = "script"
    WASM = "wasm"
    NATIVE = "native"

    @classmethod
    def parse(cls, value: str) -> Backend:
        """Resolve a backend name, case-insensitively.

        ``lua`` is accepted as an alias for ``script``.

        Raises:
            ValueError: If the name is not a known backend.
        """
        key = value.strip().lower()
        if key in _BACKEND_ALIASES:
            return _BACKEND_ALIASES[key]
        raise ValueError(f"Unknown backend: {value}")

    @classmethod
    def from_extension(cls, ext: str) -> Backend | None:
        """Guess the backend from an entry file extension."""
        return _EXTENSIONS.get(ext.lstrip(".").lower())

    @property
    def extension(self) -> str:
        """Primary file extension for entry files of this backend."""
        if self is Backend.SCRIPT:
            return "lua"
        if self is Backend.WASM:
            return "wasm"
        return "so"

    @property
    def is_available(self) -> bool:
        """Whether this runtime can execute plugins of this backend."""
        return self is Backend.SCRIPT


_BACKEND_ALIASES = {
    "script": Backend.SCRIPT,
    "lua": Backend.SCRIPT,
    "wasm": Backend.WASM,
    "native": Backend.NATIVE,
}

_EXTENSIONS = {
    "lua": Backend.SCRIPT,
    "wasm": Backend.WASM,
    "so": Backend.NATIVE,
    "dll": Backend.NATIVE,
    "dylib": Backend.NATIVE,
}


class PluginState(str, Enum):
    """States a plugin moves through.

    Attributes:
        LOADED: Constructed, not yet initialized.
        INITIALIZED: init() succeeded; events may be delivered.
        SHUT_DOWN: Terminal. The interpreter instance is not reused.
    """

    LOADED = "loaded"
    INITIALIZED = "initialized"
    SHUT_DOWN = "shut_down"


class ParamType(str, Enum):
    """Types a command parameter can take."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    PATH = "path"
    CHOICE = "choice"


@dataclass
class CommandParam:
    """A parameter accepted by a plugin command.

    Attributes:
        name: Parameter name.
        description: Help text shown by the host.
        param_type: Expected value type.
        required: Whether the host must supply a value.
        default: Default value when omitted.
        choices: Allowed values for CHOICE parameters.
    """

    name: str
    description: str = ""
    param_type: ParamType = ParamType.STRING
    required: bool = False
    default: Any = None
    choices: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "type": self.param_type.value,
            "required": self.required,
            "default": self.default,
            "choices": self.choices,
        }


@dataclass
class PluginCommand:
    """A command a plugin contributes to the host's command palette.

    Attributes:
        id: Fully qualified id, normally ``<plugin-id>:<command>``.
        label: Display name.
        description: Help text.
        keywords: Extra search terms.
        category: Palette grouping; defaults to the plugin's name.
        params: Parameters the command accepts.
    """

    id: str
    label: str
    description: str | None = None
    keywords: list[str] = field(default_factory=list)
    category: str | None = None
    params: list[CommandParam] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "description": self.description,
            "keywords": self.keywords,
            "category": self.category,
            "params": [p.to_dict() for p in self.params],
        }


@dataclass
class PluginKeybinding:
    """A default keybinding a plugin suggests for one of its commands.

    Resolution and conflict handling belong to the host's keybinding
    engine; this only names the key sequence and target command.
    """

    keys: str
    command: str
    context: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"keys": self.keys, "command": self.command, "context": self.context}


@runtime_checkable
class Plugin(Protocol):
    """Structural contract every backend's plugin objects satisfy."""

    @property
    def id(self) -> str: ...

    @property
    def name(self) -> str: ...

    @property
    def version(self) -> str: ...

    @property
    def description(self) -> str | None: ...

    @property
    def backend(self) -> Backend: ...

    @property
    def capabilities(self) -> CapabilitySet: ...

    @property
    def state(self) -> PluginState: ...

    def init(self, ctx: PluginContext) -> None: ...

    def on_event(self, event: PluginEvent) -> PluginResponse | None: ...

    def shutdown(self) -> None: ...

    def get_commands(self) -> list[PluginCommand]: ...

    def get_keybindings(self) -> list[PluginKeybinding]: ...

    def is_initialized(self) -> bool: ...


class PluginBase:
    """Optional base class implementing the lifecycle rules.

    Subclasses set the identity as class attributes and override the
    ``on_init``/``handle_event``/``on_shutdown`` hooks. State checks are
    done here so every implementation fails the same way on misuse.
    """

    id: str = ""
    name: str = ""
    version: str = "0.0.0"
    description: str | None = None
    backend: Backend = Backend.NATIVE
    capabilities: CapabilitySet = CapabilitySet()

    def __init__(self) -> None:
        self._state = PluginState.LOADED
        self._ctx: PluginContext | None = None
        self.capabilities = type(self).capabilities.model_copy(deep=True)

    @property
    def state(self) -> PluginState:
        return self._state

    @property
    def context(self) -> PluginContext | None:
        return self._ctx

    def is_initialized(self) -> bool:
        return self._state == PluginState.INITIALIZED

    def init(self, ctx: PluginContext) -> None:
        if self._state == PluginState.INITIALIZED:
            raise InvalidStateError("plugin already initialized", self.id)
        if self._state == PluginState.SHUT_DOWN:
            raise InvalidStateError("plugin was shut down; reload it instead", self.id)
        self._ctx = ctx
        self.on_init(ctx)
        self._state = PluginState.INITIALIZED
        logger.info(f"Plugin initialized: {self.id}")

    def on_event(self, event: PluginEvent) -> PluginResponse | None:
        if self._state != PluginState.INITIALIZED:
            raise InvalidStateError(
                f"cannot deliver event in state '{self._state.value}'", self.id
            )
        return self.handle_event(event)

    def shutdown(self) -> None:
        if self._state == PluginState.SHUT_DOWN:
            return
        if self._state == PluginState.LOADED:
            raise InvalidStateError("shutdown called before init", self.id)
        try:
            self.on_shutdown()
        finally:
            self._state = PluginState.SHUT_DOWN
            logger.info(f"Plugin shut down: {self.id}")

    def get_commands(self) -> list[PluginCommand]:
        return []

    def get_keybindings(self) -> list[PluginKeybinding]:
        return []

    # Hooks

    def on_init(self, ctx: PluginContext) -> None:
        pass

    def handle_event(self, event: PluginEvent) -> PluginResponse | None:
        return None

    def on_shutdown(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id}@{self.version} state={self._state.value}>"


@dataclass
class PluginInfo:
    """Read-only snapshot of a plugin for listings and audit output."""

    id: str
    name: str
    version: str
    description: str | None
    backend: Backend
    capabilities: list[str]
    state: PluginState
    commands: list[str] = field(default_factory=list)

    @classmethod
    def from_plugin(cls, plugin: Plugin) -> PluginInfo:
        try:
            commands = [c.id for c in plugin.get_commands()]
        except PluginError as e:
            logger.warning(f"Could not list commands for {plugin.id}: {e}")
            commands = []
        return cls(
            id=plugin.id,
            name=plugin.name,
            version=plugin.version,
            description=plugin.description,
            backend=plugin.backend,
            capabilities=plugin.capabilities.names(),
            state=plugin.state,
            commands=commands,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "backend": self.backend.value,
            "capabilities": self.capabilities,
            "state": self.state.value,
            "commands": self.commands,
        }
