"""Built-in actions: notes, timers, alarms, calendar events, notifications.

All state lives in files under ``data_dir``.  Every action validates its
arguments through a pydantic model and reports problems as a failed
ActionResult rather than raising.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from dateutil import parser as dateutil_parser
from pydantic import BaseModel, Field, field_validator

from palaver.actions.base import Action, ActionResult, ToolContext
from palaver.actions.files import JsonListFile, TextFile
from palaver.actions.registry import ActionRegistry
from palaver.config import Settings
from palaver.utils import estimate_tokens, new_record_id, utcnow

logger = logging.getLogger(__name__)

# Limits
NOTES_MAX_TOKENS = 100_000
TIMER_MAX_SECONDS = 24 * 60 * 60
CHECK_EVENTS_MAX_RESULTS = 100
EVENT_RETENTION = timedelta(hours=24)

_ISO_DATETIME_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2}(\.\d{1,3})?)?Z?([+-]\d{2}:\d{2})?$"
)
_CLOCK_TIME_RE = re.compile(r"^(?:[01]\d|2[0-3]):[0-5]\d$")


def _parse_datetime(value: str) -> datetime:
    """Parse a date/datetime string into a UTC-aware datetime (naive = UTC)."""
    try:
        dt = dateutil_parser.isoparse(value)
    except ValueError:
        try:
            dt = dateutil_parser.parse(value)
        except (ValueError, OverflowError) as exc:
            raise ValueError(f"Cannot parse date: {value!r}") from exc
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _non_blank(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be empty")
    return value


# ---------------------------------------------------------------------------
# make_note
# ---------------------------------------------------------------------------


class MakeNoteParams(BaseModel):
    note: str

    strip_note = field_validator("note")(_non_blank)


class MakeNote(Action):
    """Append a timestamped line to the notes file.

    When the notes would exceed NOTES_MAX_TOKENS, the whole existing corpus
    is archived to archived_notes.json and the notes file starts over.
    """

    name = "make_note"
    description = (
        "Save a short note about the user (preferences, facts, reminders) so it "
        "can be recalled in future conversations."
    )
    parameters = {
        "type": "object",
        "properties": {
            "note": {"type": "string", "description": "The note text to remember"},
        },
        "required": ["note"],
    }
    Params = MakeNoteParams

    def __init__(self, data_dir: Path) -> None:
        self._notes = TextFile(data_dir / "notes.txt")
        self._archive = JsonListFile(data_dir / "archived_notes.json")

    async def perform(self, params: MakeNoteParams, context: ToolContext) -> ActionResult:
        line = f"[{utcnow().isoformat()}] {params.note}\n"
        async with self._notes.lock:
            existing = await self._notes.read()
            archived = False
            if existing and estimate_tokens(existing + line) > NOTES_MAX_TOKENS:
                await self._archive.append({"archived_at": utcnow().isoformat(), "notes": existing})
                existing = ""
                archived = True
                logger.info("Notes exceeded %d tokens, archived and cleared", NOTES_MAX_TOKENS)
            await self._notes.write(existing + line)

        message = "Note saved."
        if archived:
            message = "Note saved. Previous notes were archived because the notes file was full."
        return ActionResult.ok(message, {"note": params.note, "archived_previous": archived})


# ---------------------------------------------------------------------------
# start_timer
# ---------------------------------------------------------------------------


class StartTimerParams(BaseModel):
    duration_seconds: int = Field(ge=1, le=TIMER_MAX_SECONDS)
    label: str = "Timer"


class StartTimer(Action):
    name = "start_timer"
    description = "Start a countdown timer that notifies the user when it finishes."
    parameters = {
        "type": "object",
        "properties": {
            "duration_seconds": {
                "type": "integer",
                "description": f"Timer length in seconds (1 to {TIMER_MAX_SECONDS})",
            },
            "label": {"type": "string", "description": "Optional label shown when the timer ends"},
        },
        "required": ["duration_seconds"],
    }
    Params = StartTimerParams

    def __init__(self, data_dir: Path) -> None:
        self._timers = JsonListFile(data_dir / "timers.json")

    async def perform(self, params: StartTimerParams, context: ToolContext) -> ActionResult:
        started = utcnow()
        timer = {
            "id": new_record_id("timer"),
            "label": params.label.strip() or "Timer",
            "duration_seconds": params.duration_seconds,
            "started_at": started.isoformat(),
            "ends_at": (started + timedelta(seconds=params.duration_seconds)).isoformat(),
            "chat_id": context.chat_id,
        }
        await self._timers.append(timer)
        return ActionResult.ok(
            f"Timer '{timer['label']}' started for {params.duration_seconds} seconds.", timer
        )


# ---------------------------------------------------------------------------
# create_alarm
# ---------------------------------------------------------------------------


class CreateAlarmParams(BaseModel):
    time: str
    label: str = "Alarm"

    @field_validator("time")
    @classmethod
    def _valid_time(cls, value: str) -> str:
        value = value.strip()
        if not (_CLOCK_TIME_RE.match(value) or _ISO_DATETIME_RE.match(value)):
            raise ValueError("time must be HH:MM (24-hour) or an ISO 8601 datetime")
        return value


class CreateAlarm(Action):
    name = "create_alarm"
    description = "Set an alarm for a time of day (HH:MM, 24-hour) or a specific ISO 8601 datetime."
    parameters = {
        "type": "object",
        "properties": {
            "time": {
                "type": "string",
                "description": "Alarm time: 'HH:MM' (24-hour) or ISO 8601 like '2025-01-31T07:30:00Z'",
            },
            "label": {"type": "string", "description": "Optional alarm label"},
        },
        "required": ["time"],
    }
    Params = CreateAlarmParams

    def __init__(self, data_dir: Path) -> None:
        self._alarms = JsonListFile(data_dir / "alarms.json")

    async def perform(self, params: CreateAlarmParams, context: ToolContext) -> ActionResult:
        alarm = {
            "id": new_record_id("alarm"),
            "time": params.time,
            "label": params.label.strip() or "Alarm",
            "chat_id": context.chat_id,
            "created_at": utcnow().isoformat(),
            "triggered": False,
        }
        await self._alarms.append(alarm)
        return ActionResult.ok(f"Alarm '{alarm['label']}' set for {params.time}.", alarm)


# ---------------------------------------------------------------------------
# create_event / check_events
# ---------------------------------------------------------------------------


class CreateEventParams(BaseModel):
    date: str
    title: str
    type_tag: str | None = None
    importance: int | None = Field(default=None, ge=1, le=5)
    reminder: bool = False

    strip_title = field_validator("title")(_non_blank)

    @field_validator("date")
    @classmethod
    def _valid_date(cls, value: str) -> str:
        return _parse_datetime(value.strip()).isoformat()


class CheckEventsParams(BaseModel):
    date: str | None = None
    type_tag: str | None = None
    query: str | None = None

    @field_validator("date")
    @classmethod
    def _valid_date(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _parse_datetime(value.strip()).date().isoformat()


class EventStore:
    """Active events plus the finished-events archive."""

    def __init__(self, data_dir: Path) -> None:
        self.active = JsonListFile(data_dir / "events.json")
        self.finished = JsonListFile(data_dir / "finished_events.json")

    async def add(self, event: dict[str, Any]) -> int:
        """Append ``event`` and move stale events to the archive.

        Returns the number of events archived.
        """
        async with self.active.lock:
            events = await self.active.load()
            events.append(event)
            cutoff = utcnow() - EVENT_RETENTION
            keep: list[dict[str, Any]] = []
            stale: list[dict[str, Any]] = []
            for item in events:
                try:
                    when = _parse_datetime(item["date"])
                except (KeyError, ValueError):
                    keep.append(item)
                    continue
                (stale if when < cutoff else keep).append(item)
            if stale:
                finished = await self.finished.load()
                finished.extend(stale)
                await self.finished.save(finished)
                logger.info("Archived %d finished events", len(stale))
            await self.active.save(keep)
        return len(stale)


class CreateEvent(Action):
    name = "create_event"
    description = "Add an event to the user's calendar."
    parameters = {
        "type": "object",
        "properties": {
            "date": {"type": "string", "description": "Event date/time, ISO 8601 preferred"},
            "title": {"type": "string", "description": "Short event title"},
            "type_tag": {"type": "string", "description": "Optional category, e.g. 'work', 'birthday'"},
            "importance": {"type": "integer", "description": "Optional importance 1 (low) to 5 (high)"},
            "reminder": {"type": "boolean", "description": "Whether to remind the user"},
        },
        "required": ["date", "title"],
    }
    Params = CreateEventParams

    def __init__(self, events: EventStore) -> None:
        self._events = events

    async def perform(self, params: CreateEventParams, context: ToolContext) -> ActionResult:
        event = {
            "id": new_record_id("event"),
            "date": params.date,
            "title": params.title,
            "type_tag": params.type_tag,
            "importance": params.importance,
            "reminder": params.reminder,
            "chat_id": context.chat_id,
            "created_at": utcnow().isoformat(),
        }
        await self._events.add(event)
        return ActionResult.ok(f"Event '{params.title}' created for {params.date}.", event)


class CheckEvents(Action):
    name = "check_events"
    description = (
        "Look up the user's upcoming calendar events, optionally filtered by day, "
        "category or a title search."
    )
    parameters = {
        "type": "object",
        "properties": {
            "date": {"type": "string", "description": "Only events on this day (YYYY-MM-DD)"},
            "type_tag": {"type": "string", "description": "Only events with this category"},
            "query": {"type": "string", "description": "Case-insensitive text to match in titles"},
        },
    }
    Params = CheckEventsParams

    def __init__(self, events: EventStore) -> None:
        self._events = events

    async def perform(self, params: CheckEventsParams, context: ToolContext) -> ActionResult:
        events = await self._events.active.load()
        matches = [e for e in events if self._matches(e, params)]
        if len(matches) > CHECK_EVENTS_MAX_RESULTS:
            return ActionResult.fail(
                f"{len(matches)} events match; more than {CHECK_EVENTS_MAX_RESULTS}. "
                "Narrow the search with a date, type_tag or query."
            )
        matches.sort(key=lambda e: e.get("date", ""))
        return ActionResult.ok(f"Found {len(matches)} event(s).", {"events": matches, "count": len(matches)})

    @staticmethod
    def _matches(event: dict[str, Any], params: CheckEventsParams) -> bool:
        if params.date is not None:
            try:
                if _parse_datetime(event.get("date", "")).date().isoformat() != params.date:
                    return False
            except ValueError:
                return False
        if params.type_tag is not None and (event.get("type_tag") or "").lower() != params.type_tag.lower():
            return False
        if params.query and params.query.lower() not in (event.get("title") or "").lower():
            return False
        return True


# ---------------------------------------------------------------------------
# create_notification
# ---------------------------------------------------------------------------


class CreateNotificationParams(BaseModel):
    title: str
    body: str

    strip_text = field_validator("title", "body")(_non_blank)


class CreateNotification(Action):
    """No side effect here; the boundary displays the returned data."""

    name = "create_notification"
    description = "Show the user a desktop notification with a title and body."
    parameters = {
        "type": "object",
        "properties": {
            "title": {"type": "string", "description": "Notification title"},
            "body": {"type": "string", "description": "Notification body text"},
        },
        "required": ["title", "body"],
    }
    Params = CreateNotificationParams

    async def perform(self, params: CreateNotificationParams, context: ToolContext) -> ActionResult:
        return ActionResult.ok(
            "Notification shown.",
            {"title": params.title, "body": params.body, "chat_id": context.chat_id},
        )


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_actions(registry: ActionRegistry, settings: Settings) -> None:
    """Register every built-in action against ``settings.data_dir``."""
    data_dir = Path(settings.data_dir)
    events = EventStore(data_dir)
    for action in (
        MakeNote(data_dir),
        StartTimer(data_dir),
        CreateAlarm(data_dir),
        CreateEvent(events),
        CheckEvents(events),
        CreateNotification(),
    ):
        registry.register(action)
    logger.info("Registered %d built-in tools (data_dir=%s)", len(registry), data_dir)
