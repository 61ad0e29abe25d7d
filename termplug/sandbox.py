"""
Sandbox configuration and policy evaluation for termplug.

A SandboxConfig holds the limits and allow-lists a plugin runs under.
It does not depend on any particular backend: runtimes read the limits
when building their interpreter, and ask the policy before performing any
access-checked host operation on a plugin's behalf.

Security Measures:
    - Memory limit (enforced by the interpreter allocator)
    - Instruction limit and wall-clock timeout per call
    - Filesystem allow-list (glob patterns)
    - Network host allow-list, gated by allow_network
    - Interpreter module allow-list

Every allow-list is fail-closed: an empty list denies everything.

Example:
    from termplug.sandbox import SandboxConfig, SandboxPolicy

    config = SandboxConfig.restrictive().allow_path("/tmp/notes/*")
    policy = SandboxPolicy(config, plugin_id="notes")

    if not policy.check_path("/etc/passwd"):
        print(policy.violations[-1].description)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePath
from typing import Any

from termplug.capability import PermissionSet

logger = logging.getLogger(__name__)

DEFAULT_MODULES = frozenset({"string", "table", "math", "utf8"})
MINIMAL_MODULES = frozenset({"string", "math"})
ALL_MODULES = frozenset(
    {"string", "table", "math", "utf8", "os", "io", "package", "coroutine", "debug"}
)

PRESETS = ("default", "permissive", "restrictive")


def glob_match(pattern: str, text: str) -> bool:
    """Match *text* against a simple glob.

    Supported forms: ``*`` or ``**`` (anything), ``prefix*``, ``*suffix``
    and ``*substring*``. Anything else must be equal.
    """
    if pattern in ("*", "**"):
        return True
    if len(pattern) >= 2 and pattern.startswith("*") and pattern.endswith("*"):
        return pattern[1:-1] in text
    if pattern.startswith("*"):
        return text.endswith(pattern[1:])
    if pattern.endswith("*"):
        return text.startswith(pattern[:-1])
    return pattern == text


def _normalize_path(path: str | os.PathLike[str]) -> str:
    return os.path.normpath(os.path.expanduser(os.fspath(path)))


@dataclass
class SandboxConfig:
    """Limits and allow-lists for one plugin.

    Attributes:
        memory_limit: Maximum interpreter memory in bytes.
        instruction_limit: Maximum VM instructions per call.
        timeout_ms: Maximum wall-clock duration of one call.
        allowed_paths: Glob patterns of readable paths.
        allow_network: Master switch for network access.
        allowed_hosts: Host patterns reachable when the network is allowed.
        allowed_modules: Interpreter modules left in place.
    """

    memory_limit: int = 10 * 1024 * 1024
    instruction_limit: int = 1_000_000
    timeout_ms: int = 5000
    allowed_paths: list[str] = field(default_factory=list)
    allow_network: bool = False
    allowed_hosts: list[str] = field(default_factory=list)
    allowed_modules: set[str] = field(default_factory=lambda: set(DEFAULT_MODULES))

    # Presets

    @classmethod
    def default(cls) -> SandboxConfig:
        """Conservative limits for ordinary third-party plugins."""
        return cls()

    @classmethod
    def permissive(cls) -> SandboxConfig:
        """Generous limits for trusted plugins."""
        return cls(
            memory_limit=100 * 1024 * 1024,
            instruction_limit=10_000_000,
            timeout_ms=30_000,
            allowed_paths=["**"],
            allow_network=True,
            allowed_hosts=["*"],
            allowed_modules=set(ALL_MODULES),
        )

    @classmethod
    def restrictive(cls) -> SandboxConfig:
        """Maximum isolation for untrusted plugins."""
        return cls(
            memory_limit=1024 * 1024,
            instruction_limit=100_000,
            timeout_ms=1000,
            allowed_modules=set(MINIMAL_MODULES),
        )

    @classmethod
    def preset(cls, name: str) -> SandboxConfig:
        """Build a preset by name.

        Raises:
            ValueError: If the name is not a known preset.
        """
        key = name.strip().lower()
        if key == "default":
            return cls.default()
        if key == "permissive":
            return cls.permissive()
        if key == "restrictive":
            return cls.restrictive()
        raise ValueError(f"Unknown sandbox preset: {name} (expected one of {', '.join(PRESETS)})")

    @classmethod
    def for_permissions(
        cls,
        permissions: PermissionSet,
        base: SandboxConfig | str = "default",
        grant: bool = True,
    ) -> SandboxConfig:
        """Select the sandbox for a plugin's requested permissions.

        Starts from *base* and, when *grant* is set, widens the allow-lists
        with what the manifest requests. A restrictive base is never
        widened.

        Args:
            permissions: The manifest's permission section.
            base: A preset name or a config to copy.
            grant: Whether requested permissions are granted.
        """
        restrictive = isinstance(base, str) and base.strip().lower() == "restrictive"
        config = cls.preset(base) if isinstance(base, str) else base.copy()
        if not grant or restrictive:
            return config

        for pattern in permissions.filesystem:
            expanded = os.path.expanduser(pattern)
            if expanded not in config.allowed_paths:
                config.allowed_paths.append(expanded)
        if permissions.network:
            config.allow_network = True
            if "*" not in config.allowed_hosts:
                for host in permissions.network_hosts:
                    if host not in config.allowed_hosts:
                        config.allowed_hosts.append(host)
        return config

    # Builders

    def copy(self) -> SandboxConfig:
        return replace(
            self,
            allowed_paths=list(self.allowed_paths),
            allowed_hosts=list(self.allowed_hosts),
            allowed_modules=set(self.allowed_modules),
        )

    def with_memory_limit(self, limit: int) -> SandboxConfig:
        config = self.copy()
        config.memory_limit = limit
        return config

    def with_instruction_limit(self, limit: int) -> SandboxConfig:
        config = self.copy()
        config.instruction_limit = limit
        return config

    def with_timeout(self, timeout_ms: int) -> SandboxConfig:
        config = self.copy()
        config.timeout_ms = timeout_ms
        return config

    def allow_path(self, pattern: str) -> SandboxConfig:
        config = self.copy()
        config.allowed_paths.append(pattern)
        return config

    def with_network(self) -> SandboxConfig:
        config = self.copy()
        config.allow_network = True
        return config

    def allow_host(self, pattern: str) -> SandboxConfig:
        config = self.copy()
        config.allowed_hosts.append(pattern)
        return config

    def allow_module(self, name: str) -> SandboxConfig:
        config = self.copy()
        config.allowed_modules.add(name)
        return config

    # Evaluation

    def is_path_allowed(self, path: str | os.PathLike[str]) -> bool:
        """Check a path against ``allowed_paths``.

        The path is normalized first so ``..`` segments cannot walk out of
        an allowed prefix.
        """
        if not self.allowed_paths:
            return False
        text = _normalize_path(path)
        return any(glob_match(pattern, text) for pattern in self.allowed_paths)

    def is_host_allowed(self, host: str) -> bool:
        """Check a host against ``allowed_hosts``.

        Requires ``allow_network``. A literal ``*`` entry allows every host.
        """
        if not self.allow_network or not self.allowed_hosts:
            return False
        host = host.strip().lower()
        return any(glob_match(pattern.lower(), host) for pattern in self.allowed_hosts)

    def is_module_allowed(self, name: str) -> bool:
        return name in self.allowed_modules or "*" in self.allowed_modules

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary.

        Returns:
            Dictionary representation with modules sorted.
        """
        return {
            "memory_limit": self.memory_limit,
            "instruction_limit": self.instruction_limit,
            "timeout_ms": self.timeout_ms,
            "allowed_paths": list(self.allowed_paths),
            "allow_network": self.allow_network,
            "allowed_hosts": list(self.allowed_hosts),
            "allowed_modules": sorted(self.allowed_modules),
        }


class ViolationType(str, Enum):
    """Categories of sandbox boundary breaches."""

    MEMORY_LIMIT = "memory_limit"
    INSTRUCTION_LIMIT = "instruction_limit"
    TIMEOUT = "timeout"
    FILE_ACCESS = "file_access"
    NETWORK_ACCESS = "network_access"
    MODULE_ACCESS = "module_access"

    def __str__(self) -> str:
        return self.value


@dataclass
class SandboxViolation:
    """A recorded sandbox violation.

    Attributes:
        violation_type: Category of the breach.
        description: What was attempted.
        plugin_id: Plugin that caused it, if known.
        timestamp: When it was recorded.
    """

    violation_type: ViolationType
    description: str
    plugin_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "violation_type": self.violation_type.value,
            "description": self.description,
            "plugin_id": self.plugin_id,
            "timestamp": self.timestamp.isoformat(),
        }


class SandboxPolicy:
    """Evaluates a SandboxConfig and keeps an audit trail of denials.

    The ``is_*_allowed`` methods are pure queries. The ``check_*``
    methods answer the same question and record a SandboxViolation when
    the answer is no, so runtimes call ``check_*`` right before acting.

    Example:
        policy = SandboxPolicy(SandboxConfig.default(), plugin_id="demo")
        policy.check_module("os")          # False, recorded
        policy.get_stats()["total_violations"]  # 1
    """

    def __init__(self, config: SandboxConfig | None = None, plugin_id: str | None = None):
        self._config = config or SandboxConfig.default()
        self._plugin_id = plugin_id
        self._violations: list[SandboxViolation] = []

    @property
    def config(self) -> SandboxConfig:
        return self._config

    @property
    def plugin_id(self) -> str | None:
        return self._plugin_id

    @plugin_id.setter
    def plugin_id(self, value: str | None) -> None:
        self._plugin_id = value

    @property
    def violations(self) -> list[SandboxViolation]:
        """Get recorded violations, oldest first."""
        return list(self._violations)

    def is_path_allowed(self, path: str | os.PathLike[str]) -> bool:
        return self._config.is_path_allowed(path)

    def is_host_allowed(self, host: str) -> bool:
        return self._config.is_host_allowed(host)

    def is_module_allowed(self, name: str) -> bool:
        return self._config.is_module_allowed(name)

    def check_path(self, path: str | os.PathLike[str]) -> bool:
        if self.is_path_allowed(path):
            return True
        self.record(ViolationType.FILE_ACCESS, f"Access to '{PurePath(path)}' is not allowed")
        return False

    def check_host(self, host: str) -> bool:
        if self.is_host_allowed(host):
            return True
        self.record(ViolationType.NETWORK_ACCESS, f"Connection to '{host}' is not allowed")
        return False

    def check_module(self, name: str) -> bool:
        if self.is_module_allowed(name):
            return True
        self.record(ViolationType.MODULE_ACCESS, f"Module '{name}' is not allowed")
        return False

    def record(self, violation_type: ViolationType, description: str) -> SandboxViolation:
        """Record a violation and log it."""
        violation = SandboxViolation(
            violation_type=violation_type,
            description=description,
            plugin_id=self._plugin_id,
        )
        self._violations.append(violation)
        logger.warning(
            f"Sandbox violation ({violation_type.value}) by "
            f"{self._plugin_id or 'unknown plugin'}: {description}"
        )
        return violation

    def get_stats(self) -> dict[str, Any]:
        """Get violation statistics.

        Returns:
            Dictionary with total and per-type counts.
        """
        counts: dict[str, int] = {}
        for violation in self._violations:
            vtype = violation.violation_type.value
            counts[vtype] = counts.get(vtype, 0) + 1
        return {
            "plugin_id": self._plugin_id,
            "total_violations": len(self._violations),
            "violations_by_type": counts,
        }

    def clear(self) -> None:
        """Clear recorded violations."""
        self._violations.clear()

    def __repr__(self) -> str:
        return (
            f"<SandboxPolicy plugin={self._plugin_id} "
            f"violations={len(self._violations)}>"
        )
