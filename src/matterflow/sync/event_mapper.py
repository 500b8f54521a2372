"""Mapping between local calendar events and Google Calendar resources.

All-day events are sent as ``{"date": "YYYY-MM-DD"}`` boundaries with the
provider's exclusive end date (last local day + 1). Timed events are sent as
RFC3339 UTC instants; naive datetimes are treated as UTC. Local identifiers
travel in ``extendedProperties.private`` so remote-origin changes can be
correlated without a lookup table.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

from matterflow.core.errors import RecordValidationError
from matterflow.sync.models import CalendarEvent, EventType, RemoteEvent

logger = logging.getLogger(__name__)

PRIVATE_MATTERFLOW_ID = "matterflow_id"
PRIVATE_MATTER_ID = "matter_id"
PRIVATE_TASK_ID = "task_id"
PRIVATE_EVENT_TYPE = "event_type"


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise RecordValidationError(f"Invalid RFC3339 datetime: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def _calendar_date(value: datetime) -> date:
    # All-day rows store midnight UTC; naive values are read as UTC too.
    return _utc(value).date()


def _midnight_utc(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=UTC)


def to_remote(event: CalendarEvent) -> dict[str, Any]:
    """Build a Google Calendar event resource for a local event.

    Raises
    ------
    RecordValidationError
        When a boundary is missing or the end precedes the start.
    """
    if event.start_at is None or event.end_at is None:
        raise RecordValidationError(f"Event {event.id} is missing a start or end boundary")

    body: dict[str, Any] = {
        "summary": event.title,
        "extendedProperties": {
            "private": {
                PRIVATE_MATTERFLOW_ID: str(event.id),
                PRIVATE_MATTER_ID: str(event.matter_id) if event.matter_id else "",
                PRIVATE_TASK_ID: str(event.task_id) if event.task_id else "",
                PRIVATE_EVENT_TYPE: event.event_type.value,
            }
        },
    }
    if event.description:
        body["description"] = event.description
    if event.location:
        body["location"] = event.location

    if event.all_day:
        start_day = _calendar_date(event.start_at)
        last_day = _calendar_date(event.end_at)
        if last_day < start_day:
            raise RecordValidationError(f"Event {event.id} ends before it starts")
        body["start"] = {"date": start_day.isoformat()}
        body["end"] = {"date": (last_day + timedelta(days=1)).isoformat()}
    else:
        if _utc(event.end_at) < _utc(event.start_at):
            raise RecordValidationError(f"Event {event.id} ends before it starts")
        body["start"] = {"dateTime": google_rfc3339(event.start_at)}
        body["end"] = {"dateTime": google_rfc3339(event.end_at)}
    return body


def _parse_boundary(payload: Any, field_name: str) -> tuple[datetime, bool]:
    if not isinstance(payload, dict):
        raise RecordValidationError(f"Event resource has no {field_name} boundary")
    date_time_value = payload.get("dateTime")
    if isinstance(date_time_value, str) and date_time_value.strip():
        return parse_google_datetime(date_time_value), False
    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            return _midnight_utc(date.fromisoformat(date_value.strip())), True
        except ValueError as exc:
            raise RecordValidationError(f"Invalid {field_name} date: {date_value!r}") from exc
    raise RecordValidationError(f"Event resource has an empty {field_name} boundary")


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _optional_uuid(value: Any, key: str) -> uuid.UUID | None:
    text = _optional_text(value)
    if text is None:
        return None
    try:
        return uuid.UUID(text)
    except ValueError:
        logger.debug("Ignoring non-UUID private property %s=%r", key, text)
        return None


def _event_type(value: Any) -> EventType:
    try:
        return EventType(_optional_text(value) or EventType.MANUAL.value)
    except ValueError:
        return EventType.MANUAL


def from_remote(resource: dict[str, Any]) -> RemoteEvent:
    """Map a Google Calendar event resource to a ``RemoteEvent``.

    Cancelled resources may omit everything except the id and status; their
    boundaries are left unset.
    """
    if not isinstance(resource, dict):
        raise RecordValidationError("Event resource must be a JSON object")
    provider_event_id = _optional_text(resource.get("id"))
    if provider_event_id is None:
        raise RecordValidationError("Event resource is missing an id")

    status = resource.get("status")
    cancelled = isinstance(status, str) and status.lower() == "cancelled"

    extended = resource.get("extendedProperties")
    private = extended.get("private") if isinstance(extended, dict) else None
    private = private if isinstance(private, dict) else {}

    updated_raw = _optional_text(resource.get("updated"))
    updated_at = parse_google_datetime(updated_raw) if updated_raw else None

    start_at: datetime | None = None
    end_at: datetime | None = None
    all_day = False
    if not cancelled:
        start_at, all_day = _parse_boundary(resource.get("start"), "start")
        end_at, end_all_day = _parse_boundary(resource.get("end"), "end")
        if all_day != end_all_day:
            raise RecordValidationError(
                f"Event {provider_event_id} mixes date and dateTime boundaries"
            )
        if all_day:
            # Provider end is exclusive; never earlier than the start day.
            end_at = max(start_at, end_at - timedelta(days=1))
        elif end_at < start_at:
            raise RecordValidationError(f"Event {provider_event_id} ends before it starts")

    return RemoteEvent(
        provider_event_id=provider_event_id,
        etag=_optional_text(resource.get("etag")),
        updated_at=updated_at,
        cancelled=cancelled,
        title=_optional_text(resource.get("summary")) or "",
        description=_optional_text(resource.get("description")),
        location=_optional_text(resource.get("location")),
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        matterflow_id=_optional_uuid(private.get(PRIVATE_MATTERFLOW_ID), PRIVATE_MATTERFLOW_ID),
        matter_id=_optional_uuid(private.get(PRIVATE_MATTER_ID), PRIVATE_MATTER_ID),
        task_id=_optional_uuid(private.get(PRIVATE_TASK_ID), PRIVATE_TASK_ID),
        event_type=_event_type(private.get(PRIVATE_EVENT_TYPE)),
    )
