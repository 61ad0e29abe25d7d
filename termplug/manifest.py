"""
Plugin manifest parsing and validation.

A manifest is a TOML file shipped next to the plugin's entry file:

    [plugin]
    id = "word-count"
    name = "Word Count"
    version = "1.0.0"
    description = "Counts words in the selection"

    [capabilities]
    commands = true

    [backend]
    type = "script"
    entry = "plugin.lua"

    [permissions]
    filesystem = ["~/notes/*"]

    [dependencies]
    markdown-tools = ">=1.2"

Parsing only checks shape. validate() checks the semantic rules (non-empty
identity, known backend, relative entry path) and must pass before a
manifest is used to load anything.

Example:
    manifest = Manifest.load(Path("plugins/word-count/plugin.toml"))
    manifest.validate()
    entry = manifest.entry_path(manifest.source_path.parent)
"""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path, PurePath
from typing import Any

from packaging import version as pkg_version
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from termplug.capability import CapabilitySet, PermissionSet
from termplug.errors import ManifestError
from termplug.plugin import Backend

logger = logging.getLogger(__name__)


class ManifestPlugin(BaseModel):
    """The ``[plugin]`` section: identity and descriptive metadata."""

    model_config = ConfigDict(extra="forbid")

    id: str = ""
    name: str = ""
    version: str = ""
    description: str | None = None
    author: str | None = None
    license: str | None = None
    homepage: str | None = None
    repository: str | None = None


class ManifestBackend(BaseModel):
    """The ``[backend]`` section: engine type and entry file."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    backend_type: str = Field(default="", alias="type")
    entry: str = ""


class Manifest(BaseModel):
    """A parsed plugin manifest.

    Attributes:
        plugin: Identity and metadata.
        capabilities: What the plugin offers.
        backend_decl: The ``[backend]`` section as written.
        permissions: What the plugin requests.
        dependencies: Other plugin ids mapped to version ranges.
        source_path: File the manifest was loaded from, if any.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    plugin: ManifestPlugin = Field(default_factory=ManifestPlugin)
    capabilities: CapabilitySet = Field(default_factory=CapabilitySet)
    backend_decl: ManifestBackend = Field(default_factory=ManifestBackend, alias="backend")
    permissions: PermissionSet = Field(default_factory=PermissionSet)
    dependencies: dict[str, str] = Field(default_factory=dict)
    source_path: Path | None = Field(default=None, exclude=True)

    @classmethod
    def parse(cls, content: str, source_path: Path | None = None) -> Manifest:
        """Parse manifest text.

        Raises:
            ManifestError: If the text is not valid TOML, uses the reserved
                ``extends`` key, or does not match the manifest schema.
        """
        try:
            data = tomllib.loads(content)
        except tomllib.TOMLDecodeError as e:
            raise ManifestError(f"Invalid manifest TOML: {e}") from e

        plugin_section = data.get("plugin")
        if "extends" in data or (isinstance(plugin_section, dict) and "extends" in plugin_section):
            raise ManifestError("Manifest inheritance ('extends') is not supported")

        data.pop("source_path", None)
        try:
            return cls.model_validate({**data, "source_path": source_path})
        except ValidationError as e:
            raise ManifestError(f"Invalid manifest: {_first_error(e)}") from e

    @classmethod
    def load(cls, path: Path | str) -> Manifest:
        """Read and parse a manifest file.

        Raises:
            OSError: If the file cannot be read.
            ManifestError: If the content is invalid.
        """
        path = Path(path)
        content = path.read_text(encoding="utf-8")
        return cls.parse(content, source_path=path)

    @property
    def id(self) -> str:
        return self.plugin.id

    @property
    def name(self) -> str:
        return self.plugin.name

    @property
    def version(self) -> str:
        return self.plugin.version

    def backend(self) -> Backend:
        """Resolve the declared backend type.

        Raises:
            ManifestError: If the type is not a known backend.
        """
        try:
            return Backend.parse(self.backend_decl.backend_type)
        except ValueError as e:
            raise ManifestError(str(e), self.plugin.id or None) from e

    def validate(self) -> None:
        """Check required fields and the backend type.

        Raises:
            ManifestError: On the first rule that fails.
        """
        if not self.plugin.id.strip():
            raise ManifestError("Missing plugin.id")
        if not self.plugin.name.strip():
            raise ManifestError("Missing plugin.name", self.plugin.id)
        if not self.plugin.version.strip():
            raise ManifestError("Missing plugin.version", self.plugin.id)
        if not self.backend_decl.entry.strip():
            raise ManifestError("Missing backend.entry", self.plugin.id)
        if PurePath(self.backend_decl.entry).is_absolute():
            raise ManifestError(
                f"backend.entry must be relative to the manifest: {self.backend_decl.entry}",
                self.plugin.id,
            )
        self.backend()

    def entry_path(self, manifest_dir: Path | str | None = None) -> Path:
        """Resolve the entry file relative to the manifest's directory.

        Args:
            manifest_dir: Directory holding the manifest. Defaults to the
                directory of ``source_path``.
        """
        if PurePath(self.backend_decl.entry).is_absolute():
            raise ManifestError("backend.entry must be relative", self.plugin.id)
        if manifest_dir is None:
            if self.source_path is None:
                raise ManifestError("No manifest directory to resolve entry against", self.plugin.id)
            manifest_dir = self.source_path.parent
        return Path(manifest_dir) / self.backend_decl.entry

    def check_dependencies(self, available: dict[str, str]) -> list[tuple[str, str]]:
        """Return the dependencies not satisfied by *available*.

        Args:
            available: Plugin id mapped to the version that is loaded.

        Returns:
            ``(name, range)`` pairs for each missing or out-of-range
            dependency, in declaration order.
        """
        unsatisfied = []
        for name, requirement in self.dependencies.items():
            found = available.get(name)
            if found is None or not version_satisfies(found, requirement):
                unsatisfied.append((name, requirement))
        return unsatisfied

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def __repr__(self) -> str:
        return f"<Manifest {self.plugin.id}@{self.plugin.version} backend={self.backend_decl.backend_type}>"


def version_satisfies(found: str, requirement: str) -> bool:
    """Check *found* against a version range.

    Accepts PEP 440 specifiers (``>=1.0,<2``), ``*``, caret ranges
    (``^1.2``) and bare versions, which are read as caret ranges.
    """
    requirement = requirement.strip()
    if requirement in ("", "*"):
        return True
    try:
        spec = SpecifierSet(_caret_to_specifier(requirement))
        return pkg_version.parse(found) in spec
    except (InvalidSpecifier, pkg_version.InvalidVersion) as e:
        logger.debug(f"Unusable version range {requirement!r} for {found!r}: {e}")
        return False


def _caret_to_specifier(requirement: str) -> str:
    bare = requirement[1:] if requirement.startswith("^") else requirement
    if bare[:1].isdigit() and not requirement.startswith(("=", ">", "<", "!", "~")):
        parts = [int(p) for p in bare.split(".") if p.isdigit()]
        if not parts:
            return requirement
        if parts[0] > 0 or len(parts) == 1:
            upper = f"{parts[0] + 1}"
        else:
            upper = f"0.{parts[1] + 1}"
        return f">={bare},<{upper}"
    return requirement


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg', 'invalid value')}" if loc else err.get("msg", "invalid value")
