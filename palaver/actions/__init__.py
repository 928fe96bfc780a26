"""Actions: side-effecting tools the model can call."""

from palaver.actions.base import Action, ActionResult, ToolContext
from palaver.actions.builtin import (
    CheckEvents,
    CreateAlarm,
    CreateEvent,
    CreateNotification,
    MakeNote,
    StartTimer,
    register_builtin_actions,
)
from palaver.actions.registry import ActionRegistry

__all__ = [
    "Action",
    "ActionRegistry",
    "ActionResult",
    "CheckEvents",
    "CreateAlarm",
    "CreateEvent",
    "CreateNotification",
    "MakeNote",
    "StartTimer",
    "ToolContext",
    "register_builtin_actions",
]
