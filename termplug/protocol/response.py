"""
Responses returned from plugins to the host.

A PluginResponse wraps one ResponseAction (a tagged union keyed by
``type``), a ``handled`` flag that stops further dispatch of the event,
and an optional free-form payload:

    {"action": {"type": "notify", "message": "Saved", "level": "success",
                "duration_ms": 3000},
     "handled": true}

The host decides whether and how to carry out an action. Plugins never
act on the host directly.

Example:
    response = PluginResponse.success("Saved").mark_handled()
    PluginResponse.from_dict(response.to_dict()) == response
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from termplug.errors import ProtocolError
from termplug.protocol.event import Position

logger = logging.getLogger(__name__)

NOTIFY_DURATION_MS = 3000


class NotifyLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def logging_level(self) -> int:
        return _LOGGING_LEVELS[self]


_LOGGING_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class _Action(BaseModel):
    model_config = ConfigDict(extra="forbid")

    def action_type(self) -> str:
        return self.type  # type: ignore[attr-defined]


class NoneAction(_Action):
    type: Literal["none"] = "none"


class NotifyAction(_Action):
    type: Literal["notify"] = "notify"
    message: str
    level: NotifyLevel = NotifyLevel.INFO
    duration_ms: int = Field(default=0, ge=0)


class PromptAction(_Action):
    """Ask the user for input; the answer arrives later as a custom event
    named after ``callback``."""

    type: Literal["prompt"] = "prompt"
    title: str
    message: str | None = None
    input_type: Literal["text", "password", "text_area", "confirm", "select"] = "text"
    options: list[str] = Field(default_factory=list)
    default_value: str | None = None
    callback: str


class RunCommandAction(_Action):
    type: Literal["run_command"] = "run_command"
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class SetClipboardAction(_Action):
    type: Literal["set_clipboard"] = "set_clipboard"
    text: str


class OpenFileAction(_Action):
    type: Literal["open_file"] = "open_file"
    path: str
    position: Position | None = None


class InsertTextAction(_Action):
    type: Literal["insert_text"] = "insert_text"
    text: str


class ReplaceSelectionAction(_Action):
    type: Literal["replace_selection"] = "replace_selection"
    text: str


class LogAction(_Action):
    type: Literal["log"] = "log"
    level: LogLevel = LogLevel.INFO
    message: str


class SetTimerAction(_Action):
    type: Literal["set_timer"] = "set_timer"
    id: str
    interval_ms: int = Field(gt=0)
    repeat: bool = False


class CancelTimerAction(_Action):
    type: Literal["cancel_timer"] = "cancel_timer"
    id: str


class RequestDataAction(_Action):
    type: Literal["request_data"] = "request_data"
    data_type: str
    callback: str


class ReturnDataAction(_Action):
    type: Literal["return_data"] = "return_data"
    data: Any = None


class CustomAction(_Action):
    type: Literal["custom"] = "custom"
    name: str
    data: Any = None


ResponseAction = Annotated[
    Union[
        NoneAction,
        NotifyAction,
        PromptAction,
        RunCommandAction,
        SetClipboardAction,
        OpenFileAction,
        InsertTextAction,
        ReplaceSelectionAction,
        LogAction,
        SetTimerAction,
        CancelTimerAction,
        RequestDataAction,
        ReturnDataAction,
        CustomAction,
    ],
    Field(discriminator="type"),
]

ACTION_TYPES = (
    "none",
    "notify",
    "prompt",
    "run_command",
    "set_clipboard",
    "open_file",
    "insert_text",
    "replace_selection",
    "log",
    "set_timer",
    "cancel_timer",
    "request_data",
    "return_data",
    "custom",
)

_ACTION_ADAPTER: TypeAdapter[ResponseAction] = TypeAdapter(ResponseAction)


class PluginResponse(BaseModel):
    """What a plugin asks the host to do after an event.

    Attributes:
        action: The requested action.
        handled: True stops the event from reaching later plugins.
        payload: Extra data for the host, passed through untouched.
    """

    model_config = ConfigDict(extra="forbid")

    action: ResponseAction = Field(default_factory=NoneAction)
    handled: bool = False
    payload: Any = None

    # Constructors

    @classmethod
    def none(cls) -> PluginResponse:
        return cls()

    @classmethod
    def notify(cls, message: str) -> PluginResponse:
        return cls.notify_with_level(message, NotifyLevel.INFO)

    @classmethod
    def notify_with_level(cls, message: str, level: NotifyLevel | str) -> PluginResponse:
        return cls(
            action=NotifyAction(
                message=message,
                level=NotifyLevel(level),
                duration_ms=NOTIFY_DURATION_MS,
            )
        )

    @classmethod
    def error(cls, message: str) -> PluginResponse:
        return cls.notify_with_level(message, NotifyLevel.ERROR)

    @classmethod
    def success(cls, message: str) -> PluginResponse:
        return cls.notify_with_level(message, NotifyLevel.SUCCESS)

    @classmethod
    def log(cls, level: LogLevel | str, message: str) -> PluginResponse:
        return cls(action=LogAction(level=LogLevel(level), message=message))

    @classmethod
    def run_command(cls, name: str, args: dict[str, Any] | None = None) -> PluginResponse:
        """Ask the host to run a command. Marked handled."""
        return cls(action=RunCommandAction(name=name, args=args or {}), handled=True)

    # Modifiers

    def mark_handled(self) -> PluginResponse:
        return self.model_copy(update={"handled": True})

    def with_payload(self, payload: Any) -> PluginResponse:
        return self.model_copy(update={"payload": payload})

    @property
    def action_type(self) -> str:
        return self.action.action_type()

    # Wire format

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire dict.

        ``payload`` is omitted when unset, as are unset optional action
        fields.
        """
        action = self.action.model_dump(mode="json")
        data: dict[str, Any] = {
            "action": {k: v for k, v in action.items() if v is not None},
            "handled": self.handled,
        }
        if self.payload is not None:
            data["payload"] = self.model_dump(mode="json", include={"payload"})["payload"]
        return data

    @classmethod
    def from_dict(cls, data: Any) -> PluginResponse:
        """Build a response from its wire dict.

        Raises:
            ProtocolError: If the shape or the action discriminator is
                invalid.
        """
        if not isinstance(data, dict):
            raise ProtocolError(f"Response must be an object, got {type(data).__name__}")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            logger.debug(f"Rejected response payload {data!r}: {e}")
            raise ProtocolError(f"Invalid response: {e.errors()[0]['msg']}") from e

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str) -> PluginResponse:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Response is not valid JSON: {e}") from e
        return cls.from_dict(data)


def decode_action(data: Any) -> ResponseAction:
    """Build a single action from its wire dict.

    Raises:
        ProtocolError: If the discriminator is missing or unknown.
    """
    if not isinstance(data, dict):
        raise ProtocolError(f"Action must be an object, got {type(data).__name__}")
    try:
        return _ACTION_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid action: {e.errors()[0]['msg']}") from e
