"""
Events sent from the host to plugins.

Every event is a pydantic model with a literal ``type`` discriminator, so
the whole family forms a closed tagged union. On the wire an event is a
plain dict:

    {"type": "command", "name": "save", "args": {}}
    {"type": "file_opened", "path": "/a/b/file.rs", "file_type": "rs"}

Unknown discriminators and malformed fields raise ProtocolError; there is
no fallback variant.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from pathlib import PurePath
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from termplug.errors import ProtocolError

logger = logging.getLogger(__name__)


class LifecyclePhase(str, Enum):
    STARTING = "starting"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    ENABLED = "enabled"
    DISABLED = "disabled"


class SelectionType(str, Enum):
    TEXT = "text"
    LINE = "line"
    BLOCK = "block"
    ITEM = "item"
    MULTI = "multi"


class Position(BaseModel):
    """Zero-based line and column in a document."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    line: int = Field(ge=0)
    column: int = Field(ge=0)


class _Event(BaseModel):
    model_config = ConfigDict(extra="forbid")

    def event_type(self) -> str:
        """Return the wire discriminator for this event."""
        return self.type  # type: ignore[attr-defined]

    def to_dict(self) -> dict[str, Any]:
        return encode_event(self)  # type: ignore[arg-type]


class LifecycleEvent(_Event):
    """Host lifecycle transition."""

    type: Literal["lifecycle"] = "lifecycle"
    phase: LifecyclePhase


class KeyEvent(_Event):
    """A key press the host forwards to plugins.

    Attributes:
        code: Key name, e.g. ``"s"`` or ``"enter"``.
        modifiers: Modifier names, e.g. ``["ctrl", "shift"]``.
        raw: Raw terminal sequence, if available.
    """

    type: Literal["key"] = "key"
    code: str
    modifiers: list[str] = Field(default_factory=list)
    raw: str | None = None

    def _has(self, modifier: str) -> bool:
        return any(m.lower() == modifier for m in self.modifiers)

    def has_ctrl(self) -> bool:
        return self._has("ctrl")

    def has_alt(self) -> bool:
        return self._has("alt")

    def has_shift(self) -> bool:
        return self._has("shift")


class CommandEvent(_Event):
    """A command invocation routed to a plugin."""

    type: Literal["command"] = "command"
    name: str
    args: dict[str, Any] = Field(default_factory=dict)

    def get_str(self, key: str) -> str | None:
        value = self.args.get(key)
        return value if isinstance(value, str) else None

    def get_int(self, key: str) -> int | None:
        value = self.args.get(key)
        if isinstance(value, bool) or not isinstance(value, int):
            return None
        return value

    def get_bool(self, key: str) -> bool | None:
        value = self.args.get(key)
        return value if isinstance(value, bool) else None


class SelectionChangedEvent(_Event):
    type: Literal["selection_changed"] = "selection_changed"
    selection: str
    selection_type: SelectionType = SelectionType.TEXT
    start: Position | None = None
    end: Position | None = None


class FileEvent(BaseModel):
    """Common fields of file events.

    ``file_type`` is derived from the path's extension when not given:

        FileEvent(path="/a/b/file.rs").file_type == "rs"
    """

    model_config = ConfigDict(extra="forbid")

    path: str
    file_type: str | None = None
    language: str | None = None

    @model_validator(mode="after")
    def _derive_file_type(self) -> FileEvent:
        if self.file_type is None:
            suffix = PurePath(self.path).suffix
            if suffix:
                self.file_type = suffix[1:]
        return self

    def with_language(self, language: str):
        return self.model_copy(update={"language": language})

    def opened(self) -> FileOpenedEvent:
        return FileOpenedEvent(path=self.path, file_type=self.file_type, language=self.language)

    def saved(self) -> FileSavedEvent:
        return FileSavedEvent(path=self.path, file_type=self.file_type, language=self.language)


class FileOpenedEvent(FileEvent, _Event):
    type: Literal["file_opened"] = "file_opened"


class FileSavedEvent(FileEvent, _Event):
    type: Literal["file_saved"] = "file_saved"


class ThemeChangedEvent(_Event):
    type: Literal["theme_changed"] = "theme_changed"
    theme: str
    is_dark: bool = True


class TimerEvent(_Event):
    """A timer registered through a SetTimer action fired."""

    type: Literal["timer"] = "timer"
    id: str
    elapsed_ms: int = Field(default=0, ge=0)


class CustomEvent(_Event):
    """Application-specific event; also carries results of RequestData."""

    type: Literal["custom"] = "custom"
    name: str
    payload: Any = None


PluginEvent = Annotated[
    Union[
        LifecycleEvent,
        KeyEvent,
        CommandEvent,
        SelectionChangedEvent,
        FileOpenedEvent,
        FileSavedEvent,
        ThemeChangedEvent,
        TimerEvent,
        CustomEvent,
    ],
    Field(discriminator="type"),
]

EVENT_TYPES = (
    "lifecycle",
    "key",
    "command",
    "selection_changed",
    "file_opened",
    "file_saved",
    "theme_changed",
    "timer",
    "custom",
)

_EVENT_ADAPTER: TypeAdapter[PluginEvent] = TypeAdapter(PluginEvent)


def encode_event(event: PluginEvent) -> dict[str, Any]:
    """Convert an event to its wire dict.

    Optional fields that are unset are omitted.
    """
    data = event.model_dump(mode="json")
    return {key: value for key, value in data.items() if value is not None}


def decode_event(data: dict[str, Any]) -> PluginEvent:
    """Build an event from its wire dict.

    Raises:
        ProtocolError: If the discriminator is missing or unknown, or a
            field does not match the variant.
    """
    if not isinstance(data, dict):
        raise ProtocolError(f"Event must be an object, got {type(data).__name__}")
    try:
        return _EVENT_ADAPTER.validate_python(data)
    except ValidationError as e:
        logger.debug(f"Rejected event payload {data!r}: {e}")
        raise ProtocolError(f"Invalid event: {e.errors()[0]['msg']}") from e


def event_to_json(event: PluginEvent) -> str:
    return json.dumps(encode_event(event))


def event_from_json(text: str) -> PluginEvent:
    """Decode an event from JSON text.

    Raises:
        ProtocolError: If the text is not JSON or not a valid event.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Event is not valid JSON: {e}") from e
    return decode_event(data)
