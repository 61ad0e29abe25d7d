"""
Capabilities and permissions declared by plugins.

Capabilities describe what a plugin offers the host (commands,
keybindings, theming, file handling, custom tags). Permissions describe
what a plugin asks to touch (network hosts, filesystem globs, environment
variables, subprocesses).

Both are purely descriptive. Enforcement lives in termplug.sandbox, which
keeps "what is requested" separate from "what is allowed".
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Capability(str, Enum):
    """Built-in capability names.

    Anything not listed here is treated as a free-form custom tag.
    """

    COMMANDS = "commands"
    KEYBINDINGS = "keybindings"
    THEMING = "theming"
    FILE_HANDLER = "file_handler"
    TRANSFORMER = "transformer"
    SYNTAX_HIGHLIGHT = "syntax_highlight"
    COMPLETION = "completion"
    DIAGNOSTICS = "diagnostics"
    FORMATTER = "formatter"

    @classmethod
    def parse(cls, name: str) -> Capability | None:
        """Return the built-in capability for *name*, or None for custom tags."""
        try:
            return cls(name.strip().lower())
        except ValueError:
            return None


class CapabilitySet(BaseModel):
    """Features a plugin offers to the host.

    Attributes:
        commands: Adds entries to the command palette.
        keybindings: Adds keybindings.
        theming: Adds theme colors or style hints.
        transformer: Transforms data passed through the host.
        file_extensions: File extensions this plugin handles.
        custom: Free-form custom tags in declaration order.
    """

    model_config = ConfigDict(extra="forbid")

    commands: bool = False
    keybindings: bool = False
    theming: bool = False
    transformer: bool = False
    file_extensions: list[str] = Field(default_factory=list)
    custom: list[str] = Field(default_factory=list)

    @classmethod
    def from_names(cls, names: list[str]) -> CapabilitySet:
        """Build a set from a flat list of capability names.

        Used for entry files that declare ``capabilities = { "commands" }``.
        Names that are not boolean flags become custom tags.
        """
        caps = cls()
        for raw in names:
            name = str(raw).strip()
            if not name:
                continue
            builtin = Capability.parse(name)
            if builtin is Capability.COMMANDS:
                caps.commands = True
            elif builtin is Capability.KEYBINDINGS:
                caps.keybindings = True
            elif builtin is Capability.THEMING:
                caps.theming = True
            elif builtin is Capability.TRANSFORMER:
                caps.transformer = True
            elif name not in caps.custom:
                caps.custom.append(name)
        return caps

    def has_any(self) -> bool:
        """Check if any capability is enabled."""
        return (
            self.commands
            or self.keybindings
            or self.theming
            or self.transformer
            or bool(self.file_extensions)
            or bool(self.custom)
        )

    def has(self, name: str) -> bool:
        """Check whether a capability name is enabled."""
        return name in self.names()

    def names(self) -> list[str]:
        """Return enabled capability names in a fixed, deterministic order.

        Order: commands, keybindings, theming, transformer, file_handler,
        then custom tags in declaration order.
        """
        names: list[str] = []
        if self.commands:
            names.append(Capability.COMMANDS.value)
        if self.keybindings:
            names.append(Capability.KEYBINDINGS.value)
        if self.theming:
            names.append(Capability.THEMING.value)
        if self.transformer:
            names.append(Capability.TRANSFORMER.value)
        if self.file_extensions:
            names.append(Capability.FILE_HANDLER.value)
        names.extend(self.custom)
        return names


class PermissionSet(BaseModel):
    """Resources a plugin requests access to.

    Attributes:
        network: Whether network access is requested.
        network_hosts: Hosts the plugin wants to reach.
        filesystem: Glob patterns of paths the plugin wants to read.
        env_vars: Environment variables the plugin wants to read.
        subprocess: Whether spawning processes is requested.
    """

    model_config = ConfigDict(extra="forbid")

    network: bool = False
    network_hosts: list[str] = Field(default_factory=list)
    filesystem: list[str] = Field(default_factory=list)
    env_vars: list[str] = Field(default_factory=list)
    subprocess: bool = False

    def has_any(self) -> bool:
        """Check if any permission is requested."""
        return (
            self.network
            or self.subprocess
            or bool(self.filesystem)
            or bool(self.env_vars)
        )

    def summary(self) -> list[str]:
        """Return human-readable lines describing the requested permissions."""
        perms: list[str] = []
        if self.network:
            if self.network_hosts:
                perms.append(f"network ({len(self.network_hosts)} hosts)")
            else:
                perms.append("network (no hosts listed)")
        if self.filesystem:
            perms.append(f"filesystem ({len(self.filesystem)} paths)")
        if self.env_vars:
            perms.append(f"env_vars ({len(self.env_vars)} vars)")
        if self.subprocess:
            perms.append("subprocess")
        return perms
