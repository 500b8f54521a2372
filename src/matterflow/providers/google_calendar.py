"""Google Calendar v3 adapter.

Works with raw event resources (dicts); mapping to local records lives in
``matterflow.sync.event_mapper``. Every non-2xx outcome is raised as a
classified ``SyncError``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from urllib.parse import quote

from matterflow.core.errors import CursorInvalidatedError, RecordValidationError
from matterflow.providers.google_auth import GoogleSession, classify_response, json_payload
from matterflow.sync.event_mapper import google_rfc3339

logger = logging.getLogger(__name__)

PROVIDER = "google_calendar"
MAX_RESULTS_PER_PAGE = 250


@dataclass
class EventPage:
    items: list[dict[str, Any]] = field(default_factory=list)
    next_page_token: str | None = None
    next_sync_token: str | None = None


class GoogleCalendarClient:
    def __init__(self, session: GoogleSession, *, base_url: str) -> None:
        self._session = session
        self._base_url = base_url.rstrip("/")

    def _events_url(self, calendar_id: str, event_id: str | None = None) -> str:
        url = f"{self._base_url}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is not None:
            normalized_event_id = event_id.strip()
            if not normalized_event_id:
                raise ValueError("event_id must be a non-empty string")
            url = f"{url}/{quote(normalized_event_id, safe='')}"
        return url

    async def list_page(
        self,
        calendar_id: str,
        *,
        sync_token: str | None = None,
        time_min: datetime | None = None,
        page_token: str | None = None,
    ) -> EventPage:
        """Fetch one page of ``events.list``.

        With a ``sync_token`` the page is incremental; otherwise ``time_min``
        bounds a full listing. A 410 response means the cursor is gone.
        """
        params: dict[str, Any] = {
            "showDeleted": True,
            "singleEvents": True,
            "maxResults": MAX_RESULTS_PER_PAGE,
        }
        if sync_token is not None:
            params["syncToken"] = sync_token
        elif time_min is not None:
            params["timeMin"] = google_rfc3339(time_min)
        if page_token is not None:
            params["pageToken"] = page_token

        response = await self._session.request(
            "GET",
            self._events_url(calendar_id),
            provider=PROVIDER,
            operation="events.list",
            params=params,
        )
        if response.status_code == 410:
            raise CursorInvalidatedError(
                f"Sync cursor expired for calendar '{calendar_id}'; full resync required",
                status_code=410,
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise classify_response(response, operation="events.list")

        payload = json_payload(response, operation="events.list")
        items = payload.get("items", [])
        if not isinstance(items, list):
            raise RecordValidationError("events.list response has a non-list items field")

        next_page_token = payload.get("nextPageToken")
        next_sync_token = payload.get("nextSyncToken")
        return EventPage(
            items=[item for item in items if isinstance(item, dict)],
            next_page_token=next_page_token if isinstance(next_page_token, str) else None,
            next_sync_token=(
                next_sync_token.strip()
                if isinstance(next_sync_token, str) and next_sync_token.strip()
                else None
            ),
        )

    async def iter_pages(
        self,
        calendar_id: str,
        *,
        sync_token: str | None = None,
        time_min: datetime | None = None,
    ) -> AsyncIterator[EventPage]:
        """Lazily yield every page of one listing pass.

        The iterator keeps no resumable state of its own: after a failure the
        only restart point is a new pass from the last committed cursor.
        """
        page_token: str | None = None
        while True:
            page = await self.list_page(
                calendar_id,
                sync_token=sync_token,
                time_min=time_min,
                page_token=page_token,
            )
            yield page
            if page.next_page_token is None:
                return
            page_token = page.next_page_token

    async def get_calendar(self, calendar_id: str) -> dict[str, Any]:
        """Fetch calendar metadata; used to verify a credential can reach it."""
        response = await self._session.request(
            "GET",
            f"{self._base_url}/calendars/{quote(calendar_id, safe='')}",
            provider=PROVIDER,
            operation="calendars.get",
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise classify_response(response, operation="calendars.get")
        return json_payload(response, operation="calendars.get")

    async def insert(self, calendar_id: str, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._session.request(
            "POST",
            self._events_url(calendar_id),
            provider=PROVIDER,
            operation="events.insert",
            json_body=body,
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise classify_response(response, operation="events.insert")
        return self._require_event(json_payload(response, operation="events.insert"))

    async def update(
        self, calendar_id: str, event_id: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        """Full replace (PUT) of an existing event."""
        response = await self._session.request(
            "PUT",
            self._events_url(calendar_id, event_id),
            provider=PROVIDER,
            operation="events.update",
            json_body=body,
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise classify_response(response, operation="events.update")
        return self._require_event(json_payload(response, operation="events.update"))

    async def delete(self, calendar_id: str, event_id: str) -> bool:
        """Delete an event. Returns False when it was already gone."""
        response = await self._session.request(
            "DELETE",
            self._events_url(calendar_id, event_id),
            provider=PROVIDER,
            operation="events.delete",
        )
        if response.status_code in (404, 410):
            logger.debug("events.delete: '%s' already gone; treating as success", event_id)
            return False
        if response.status_code < 200 or response.status_code >= 300:
            raise classify_response(response, operation="events.delete")
        return True

    async def find_by_private_property(
        self, calendar_id: str, key: str, value: str
    ) -> dict[str, Any] | None:
        """Return the first live event tagged with a private extended property."""
        response = await self._session.request(
            "GET",
            self._events_url(calendar_id),
            provider=PROVIDER,
            operation="events.list",
            params={
                "privateExtendedProperty": f"{key}={value}",
                "showDeleted": False,
                "maxResults": 1,
            },
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise classify_response(response, operation="events.list")
        items = json_payload(response, operation="events.list").get("items")
        if not isinstance(items, list):
            return None
        for item in items:
            if isinstance(item, dict) and item.get("status") != "cancelled":
                return item
        return None

    @staticmethod
    def _require_event(payload: dict[str, Any]) -> dict[str, Any]:
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id.strip():
            raise RecordValidationError("Google Calendar response is missing an event id")
        return payload
