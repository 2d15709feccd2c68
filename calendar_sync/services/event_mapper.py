"""Pure translation between local tasks/routines and Google event payloads.

Nothing here performs I/O. Outbound helpers return a request body (or None
when the entity must never leave the device), inbound helpers return a dict of
task fields. Anything that cannot be represented raises ``MappingError``.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calendar_sync.errors import MappingError
from calendar_sync.schemas import EventTime, ExternalEvent

ROUTINE_MARKER = "[Routine] "
TASK_ID_PROPERTY = "calendarSyncTaskId"
ROUTINE_ID_PROPERTY = "calendarSyncRoutineId"
OCCURRENCE_PROPERTY = "calendarSyncOccurrence"

DEFAULT_START = time(9, 0)
DEFAULT_DURATION_MINUTES = 60
END_OF_DAY = "23:59"

FREQUENCY_DAYS = {
    "daily": (0, 1, 2, 3, 4, 5, 6),
    "weekdays": (0, 1, 2, 3, 4),
    "weekends": (5, 6),
}


def resolve_timezone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def _parse_time(value) -> time | None:
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    try:
        return time.fromisoformat(str(value).strip()[:5])
    except ValueError as exc:
        raise MappingError(f"Invalid time value: {value!r}") from exc


def _parse_date(value) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError as exc:
        raise MappingError(f"Invalid date value: {value!r}") from exc


def _all_day_body(day: date) -> dict:
    # PATCH keeps the other field unless it is nulled.
    return {
        "start": {"date": day.isoformat(), "dateTime": None},
        "end": {"date": (day + timedelta(days=1)).isoformat(), "dateTime": None},
    }


def _timed_body(start_dt: datetime, end_dt: datetime, timezone_name: str) -> dict:
    return {
        "start": {"dateTime": start_dt.isoformat(), "timeZone": timezone_name, "date": None},
        "end": {"dateTime": end_dt.isoformat(), "timeZone": timezone_name, "date": None},
    }


def _window(day: date, start: time, end: time | None, tzinfo: ZoneInfo, duration_minutes: int) -> tuple[datetime, datetime]:
    start_dt = datetime.combine(day, start, tzinfo=tzinfo)
    if end is None:
        return start_dt, start_dt + timedelta(minutes=duration_minutes)
    end_dt = datetime.combine(day, end, tzinfo=tzinfo)
    if end_dt <= start_dt:
        end_dt += timedelta(days=1)
    return start_dt, end_dt


def task_to_event(task: dict, timezone_name: str) -> dict | None:
    if task.get("is_private"):
        return None
    title = str(task.get("title") or "").strip()
    if not title:
        raise MappingError(f"Task {task.get('id')} has an empty title")
    day = _parse_date(task.get("scheduled_date"))
    if day is None:
        raise MappingError(f"Task {task.get('id')} has no scheduled date")

    body = {
        "summary": title,
        "description": task.get("description") or "",
        "extendedProperties": {"private": {TASK_ID_PROPERTY: str(task.get("id"))}},
    }
    if task.get("is_all_day"):
        body.update(_all_day_body(day))
        return body

    start = _parse_time(task.get("scheduled_start"))
    end = _parse_time(task.get("scheduled_end"))
    if start is None:
        start, end = DEFAULT_START, None
    start_dt, end_dt = _window(day, start, end, resolve_timezone(timezone_name), DEFAULT_DURATION_MINUTES)
    body.update(_timed_body(start_dt, end_dt, timezone_name))
    return body


def routine_days(routine: dict) -> set[int]:
    explicit = routine.get("days_of_week") or []
    if explicit:
        return {int(day) for day in explicit}
    return set(FREQUENCY_DAYS.get(str(routine.get("frequency") or "daily"), FREQUENCY_DAYS["daily"]))


def routine_occurrence_dates(routine: dict, start_day: date, days: int) -> list[date]:
    weekdays = routine_days(routine)
    candidates = (start_day + timedelta(days=offset) for offset in range(days))
    return [day for day in candidates if day.weekday() in weekdays]


def routine_to_event(routine: dict, occurrence: date, timezone_name: str) -> dict | None:
    if routine.get("is_private"):
        return None
    title = str(routine.get("title") or "").strip()
    if not title:
        raise MappingError(f"Routine {routine.get('id')} has an empty title")
    start = _parse_time(routine.get("scheduled_time")) or DEFAULT_START
    duration = int(routine.get("duration_minutes") or DEFAULT_DURATION_MINUTES)
    start_dt, end_dt = _window(occurrence, start, None, resolve_timezone(timezone_name), duration)
    body = {
        "summary": f"{ROUTINE_MARKER}{title}",
        "description": routine.get("description") or "",
        "extendedProperties": {
            "private": {
                ROUTINE_ID_PROPERTY: str(routine.get("id")),
                OCCURRENCE_PROPERTY: occurrence.isoformat(),
            }
        },
    }
    body.update(_timed_body(start_dt, end_dt, timezone_name))
    return body


def has_routine_marker(title: str | None) -> bool:
    return str(title or "").lstrip().startswith(ROUTINE_MARKER.strip())


def strip_routine_marker(title: str | None) -> str:
    clean = str(title or "").strip()
    marker = ROUTINE_MARKER.strip()
    if clean.startswith(marker):
        clean = clean[len(marker):].strip()
    return clean


def is_self_authored_routine(event: ExternalEvent) -> bool:
    return ROUTINE_ID_PROPERTY in event.private_properties or has_routine_marker(event.title)


def linked_task_id(event: ExternalEvent) -> str | None:
    return event.private_properties.get(TASK_ID_PROPERTY) or None


def _local_datetime(value: EventTime, tzinfo: ZoneInfo) -> datetime:
    dt = value.date_time
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=resolve_timezone(value.time_zone) if value.time_zone else tzinfo)
    return dt.astimezone(tzinfo)


def event_to_task_fields(event: ExternalEvent, timezone_name: str) -> dict:
    title = (event.title or "").strip()
    if not title:
        raise MappingError(f"Event {event.id} has an empty title")
    if event.start is None or (event.start.date_time is None and event.start.day is None):
        raise MappingError(f"Event {event.id} has no start")

    fields = {"title": title, "description": event.description}
    if event.start.is_all_day:
        fields.update(
            scheduled_date=event.start.day.isoformat(),
            scheduled_start=None,
            scheduled_end=None,
            is_all_day=1,
        )
        return fields

    tzinfo = resolve_timezone(timezone_name)
    start_local = _local_datetime(event.start, tzinfo)
    scheduled_end = None
    if event.end is not None and event.end.date_time is not None:
        end_local = _local_datetime(event.end, tzinfo)
        scheduled_end = end_local.strftime("%H:%M") if end_local.date() == start_local.date() else END_OF_DAY
    fields.update(
        scheduled_date=start_local.date().isoformat(),
        scheduled_start=start_local.strftime("%H:%M"),
        scheduled_end=scheduled_end,
        is_all_day=0,
    )
    return fields


def event_updated_at(event: ExternalEvent) -> datetime | None:
    if event.updated is None:
        return None
    if event.updated.tzinfo is None:
        return event.updated.replace(tzinfo=timezone.utc)
    return event.updated.astimezone(timezone.utc)
