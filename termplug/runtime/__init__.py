"""
Backend runtimes.

Backend selection is a pure function of the declared backend type (or,
for bare entry files, the file extension). Only the script backend is
built in; WASM and native plugins are recognized but refused.

Example:
    from termplug.runtime import load_plugin
    from termplug.sandbox import SandboxConfig

    plugin = load_plugin("plugins/demo/plugin.lua", SandboxConfig.restrictive())
"""

from __future__ import annotations

import logging
from pathlib import Path

from termplug.errors import BackendNotAvailableError, ManifestError
from termplug.plugin import Backend, Plugin
from termplug.runtime.lua import LuaPlugin
from termplug.sandbox import SandboxConfig

logger = logging.getLogger(__name__)


def backend_for_path(path: Path | str) -> Backend:
    """Pick a backend from an entry file's extension.

    Raises:
        ManifestError: If the extension maps to no known backend.
    """
    backend = Backend.from_extension(Path(path).suffix)
    if backend is None:
        raise ManifestError(f"Cannot determine backend for {Path(path).name}")
    return backend


def load_plugin(
    path: Path | str,
    sandbox: SandboxConfig | None = None,
    backend: Backend | None = None,
) -> Plugin:
    """Load a plugin entry file with the given backend.

    Args:
        path: Entry file.
        sandbox: Limits and allow-lists; defaults to the default preset.
        backend: Backend to use; guessed from the extension when omitted.

    Raises:
        BackendNotAvailableError: If the backend is not built in.
        ManifestError: If the backend cannot be determined or the entry
            does not declare an id.
        ScriptError: If the entry fails to evaluate.
    """
    backend = backend or backend_for_path(path)
    if not backend.is_available:
        raise BackendNotAvailableError(backend.value)
    logger.debug(f"Loading {path} with backend {backend.value}")
    return LuaPlugin.load(path, sandbox or SandboxConfig.default())


__all__ = ["LuaPlugin", "backend_for_path", "load_plugin"]
