"""Push side of calendar sync: write local events to the provider.

The local row holds the only local-to-remote mapping (``provider_event_id``).
It is set right after a successful create and cleared only when the remote
resource is confirmed gone. A crash between the remote create and the local
write can leave an orphaned remote copy; the pre-create lookup by the
``matterflow_id`` private property adopts such a copy instead of creating a
second one.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from matterflow.core.errors import (
    AuthenticationError,
    RemoteNotFoundError,
    SyncError,
    build_error_entry,
    sanitize_error_message,
)
from matterflow.core.metrics import metrics
from matterflow.storage.base import DuplicateRecordError, EventStore
from matterflow.sync.event_mapper import PRIVATE_MATTERFLOW_ID, parse_google_datetime, to_remote
from matterflow.sync.models import CalendarEvent, PushResult, SyncStatus

if TYPE_CHECKING:
    from matterflow.providers.google_calendar import GoogleCalendarClient

logger = logging.getLogger(__name__)

DEFAULT_PUSH_BATCH_LIMIT = 50


class PushWriter:
    def __init__(
        self,
        calendar: GoogleCalendarClient,
        events: EventStore,
        calendar_id: str,
        *,
        precreate_lookup: bool = True,
        batch_limit: int = DEFAULT_PUSH_BATCH_LIMIT,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._calendar = calendar
        self._events = events
        self._calendar_id = calendar_id
        self._precreate_lookup = precreate_lookup
        self._batch_limit = batch_limit
        self._clock = clock

    async def push(self, event: CalendarEvent) -> CalendarEvent:
        """Create or fully update the remote copy of *event* and persist the mapping."""
        if event.is_deleted:
            return await self.delete(event)

        body = to_remote(event)
        if event.provider_event_id is None:
            return await self._create(event, body, lookup=self._precreate_lookup)

        try:
            resource = await self._calendar.update(
                self._calendar_id, event.provider_event_id, body
            )
        except RemoteNotFoundError:
            logger.info(
                "Remote event %s for %s is gone; recreating", event.provider_event_id, event.id
            )
            cleared = event.model_copy(
                update={"provider_event_id": None, "provider_etag": None}
            )
            await self._events.update(cleared)
            return await self._create(cleared, body, lookup=False)
        return await self._persist(event, resource)

    async def delete(self, event: CalendarEvent) -> CalendarEvent:
        """Delete the remote copy; an already-missing remote counts as success."""
        if event.provider_event_id is not None:
            try:
                await self._calendar.delete(self._calendar_id, event.provider_event_id)
            except RemoteNotFoundError:
                logger.debug("Remote event %s already gone", event.provider_event_id)
        cleared = event.model_copy(
            update={
                "provider_event_id": None,
                "provider_etag": None,
                "sync_status": SyncStatus.SYNCED,
                "sync_error": None,
                "last_synced_at": self._clock(),
            }
        )
        await self._events.update(cleared)
        return cleared

    async def push_pending(self, matter_id: uuid.UUID) -> PushResult:
        """Push every pending, failed or deleted-with-remote event of a matter.

        Per-item failures mark the row ``error`` and are recorded; an
        ``AuthenticationError`` propagates since every later call would fail too.
        """
        pending = await self._events.list_pending(matter_id, self._batch_limit)
        return await self._push_all(pending, matter_id)

    async def push_unassigned(self, practice_id: uuid.UUID) -> PushResult:
        """Push a practice's events that belong to no matter."""
        pending = await self._events.list_pending_unassigned(practice_id, self._batch_limit)
        return await self._push_all(pending, None)

    async def _push_all(
        self, pending: list[CalendarEvent], matter_id: uuid.UUID | None
    ) -> PushResult:
        result = PushResult()
        for event in pending:
            operation = "delete" if event.is_deleted else "push"
            try:
                await self.push(event)
            except AuthenticationError:
                raise
            except (SyncError, DuplicateRecordError) as exc:
                logger.warning("Failed to %s event %s: %s", operation, event.id, exc)
                # push may already have written the row (a cleared provider id)
                current = await self._events.get(event.id) or event
                await self._events.update(
                    current.model_copy(
                        update={
                            "sync_status": SyncStatus.ERROR,
                            "sync_error": sanitize_error_message(exc),
                        }
                    )
                )
                result.errors.append(
                    build_error_entry(
                        exc,
                        practice_id=event.practice_id,
                        matter_id=matter_id,
                        event_id=event.id,
                        operation=operation,
                    )
                )
                metrics.record_item(operation, "error")
                continue
            result.synced += 1
            metrics.record_item(operation, "synced")
        return result

    async def _create(
        self, event: CalendarEvent, body: dict[str, Any], *, lookup: bool
    ) -> CalendarEvent:
        if lookup:
            existing = await self._calendar.find_by_private_property(
                self._calendar_id, PRIVATE_MATTERFLOW_ID, str(event.id)
            )
            if existing is not None:
                logger.info("Adopting existing remote event %s for %s", existing["id"], event.id)
                resource = await self._calendar.update(self._calendar_id, existing["id"], body)
                return await self._persist(event, resource)

        resource = await self._calendar.insert(self._calendar_id, body)
        return await self._persist(event, resource)

    async def _persist(self, event: CalendarEvent, resource: dict[str, Any]) -> CalendarEvent:
        updated_raw = resource.get("updated")
        synced = event.model_copy(
            update={
                "provider_event_id": resource["id"],
                "provider_etag": resource.get("etag"),
                "provider_updated_at": (
                    parse_google_datetime(updated_raw) if isinstance(updated_raw, str) else None
                ),
                "sync_status": SyncStatus.SYNCED,
                "sync_error": None,
                "last_synced_at": self._clock(),
            }
        )
        await self._events.update(synced)
        return synced
