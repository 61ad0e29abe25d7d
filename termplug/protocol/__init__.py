"""
Host/plugin message protocol.

Events flow host -> plugin; responses flow plugin -> host. Both are
closed tagged unions with a ``type`` discriminator so they can cross the
interpreter boundary as plain data.
"""

from termplug.protocol.event import (
    EVENT_TYPES,
    CommandEvent,
    CustomEvent,
    FileEvent,
    FileOpenedEvent,
    FileSavedEvent,
    KeyEvent,
    LifecycleEvent,
    LifecyclePhase,
    PluginEvent,
    Position,
    SelectionChangedEvent,
    SelectionType,
    ThemeChangedEvent,
    TimerEvent,
    decode_event,
    encode_event,
    event_from_json,
    event_to_json,
)
from termplug.protocol.response import (
    ACTION_TYPES,
    CancelTimerAction,
    CustomAction,
    InsertTextAction,
    LogAction,
    LogLevel,
    NoneAction,
    NotifyAction,
    NotifyLevel,
    OpenFileAction,
    PluginResponse,
    PromptAction,
    ReplaceSelectionAction,
    RequestDataAction,
    ResponseAction,
    ReturnDataAction,
    RunCommandAction,
    SetClipboardAction,
    SetTimerAction,
    decode_action,
)

__all__ = [
    # Events
    "EVENT_TYPES",
    "PluginEvent",
    "LifecycleEvent",
    "LifecyclePhase",
    "KeyEvent",
    "CommandEvent",
    "SelectionChangedEvent",
    "SelectionType",
    "Position",
    "FileEvent",
    "FileOpenedEvent",
    "FileSavedEvent",
    "ThemeChangedEvent",
    "TimerEvent",
    "CustomEvent",
    "encode_event",
    "decode_event",
    "event_to_json",
    "event_from_json",
    # Responses
    "ACTION_TYPES",
    "PluginResponse",
    "ResponseAction",
    "NoneAction",
    "NotifyAction",
    "NotifyLevel",
    "PromptAction",
    "RunCommandAction",
    "SetClipboardAction",
    "OpenFileAction",
    "InsertTextAction",
    "ReplaceSelectionAction",
    "LogAction",
    "LogLevel",
    "SetTimerAction",
    "CancelTimerAction",
    "RequestDataAction",
    "ReturnDataAction",
    "CustomAction",
    "decode_action",
]
