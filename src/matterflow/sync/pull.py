"""Pull side of calendar sync: fetch remote changes and apply them locally."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from matterflow.core.errors import (
    AuthenticationError,
    CursorInvalidatedError,
    RecordValidationError,
    SyncError,
    TransientSyncError,
    build_error_entry,
)
from matterflow.core.metrics import metrics
from matterflow.storage.base import DuplicateRecordError, EventStore
from matterflow.sync.cursors import SyncCursorManager
from matterflow.sync.event_mapper import from_remote
from matterflow.sync.models import (
    ApplyResult,
    CalendarEvent,
    EventType,
    PullResult,
    RemoteEvent,
    SyncStatus,
)

if TYPE_CHECKING:
    from matterflow.providers.google_calendar import GoogleCalendarClient

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 30


class PullReconciler:
    """Runs one incremental (or bounded full) listing pass per call.

    The cursor is committed only after every page of the pass succeeded; a
    failed pass leaves the previous cursor in place so the next run restarts
    from it.
    """

    def __init__(
        self,
        calendar: GoogleCalendarClient,
        cursors: SyncCursorManager,
        *,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._calendar = calendar
        self._cursors = cursors
        self._lookback_days = lookback_days
        self._clock = clock

    async def pull(self, practice_id: uuid.UUID, calendar_id: str) -> PullResult:
        cursor = await self._cursors.get(practice_id, calendar_id)
        full_resync = False
        try:
            result, next_token = await self._run_pass(
                practice_id, calendar_id, cursor.sync_token if cursor else None
            )
        except CursorInvalidatedError:
            if cursor is None:
                raise TransientSyncError(
                    f"Full listing of calendar '{calendar_id}' was rejected as expired"
                ) from None
            logger.warning(
                "Sync cursor for calendar %s is no longer valid; running bounded full resync",
                calendar_id,
            )
            await self._cursors.invalidate(practice_id, calendar_id)
            full_resync = True
            try:
                result, next_token = await self._run_pass(practice_id, calendar_id, None)
            except CursorInvalidatedError as exc:
                raise TransientSyncError(str(exc), status_code=exc.status_code) from exc

        result.full_resync = full_resync
        result.cursor = await self._cursors.commit(practice_id, calendar_id, next_token)
        metrics.record_item("pull", "synced", len(result.events))
        metrics.record_item("pull", "skipped", len(result.errors))
        logger.info(
            "Pulled %d event(s) over %d page(s) for calendar %s (full_resync=%s)",
            len(result.events),
            result.pages,
            calendar_id,
            full_resync,
        )
        return result

    async def _run_pass(
        self, practice_id: uuid.UUID, calendar_id: str, sync_token: str | None
    ) -> tuple[PullResult, str]:
        time_min = None
        if sync_token is None:
            time_min = self._clock() - timedelta(days=self._lookback_days)

        result = PullResult()
        next_token: str | None = None
        try:
            async for page in self._calendar.iter_pages(
                calendar_id, sync_token=sync_token, time_min=time_min
            ):
                result.pages += 1
                for item in page.items:
                    try:
                        result.events.append(from_remote(item))
                    except RecordValidationError as exc:
                        logger.warning("Skipping malformed remote event: %s", exc)
                        result.errors.append(
                            build_error_entry(
                                exc,
                                practice_id=practice_id,
                                event_id=item.get("id"),
                                operation="pull",
                            )
                        )
                if page.next_sync_token is not None:
                    next_token = page.next_sync_token
        except (AuthenticationError, TransientSyncError, CursorInvalidatedError):
            raise
        except SyncError as exc:
            raise TransientSyncError(
                f"Pull of calendar '{calendar_id}' aborted: {exc.message}",
                status_code=exc.status_code,
            ) from exc

        if next_token is None:
            raise TransientSyncError(
                f"Listing of calendar '{calendar_id}' ended without a nextSyncToken"
            )
        return result, next_token


class EventReconciler:
    """Applies pulled remote events to the local event store."""

    def __init__(
        self,
        events: EventStore,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._events = events
        self._clock = clock

    async def apply(
        self, practice_id: uuid.UUID, remote_events: Iterable[RemoteEvent]
    ) -> ApplyResult:
        result = ApplyResult()
        for remote in remote_events:
            try:
                outcome = await self._apply_one(practice_id, remote)
            except (RecordValidationError, DuplicateRecordError) as exc:
                logger.warning("Skipping remote event %s: %s", remote.provider_event_id, exc)
                result.skipped += 1
                result.errors.append(
                    build_error_entry(
                        exc,
                        practice_id=practice_id,
                        matter_id=remote.matter_id,
                        event_id=remote.provider_event_id,
                        operation="apply",
                    )
                )
                continue
            setattr(result, outcome, getattr(result, outcome) + 1)

        metrics.record_item("apply", "synced", result.synced)
        metrics.record_item("apply", "skipped", result.skipped)
        return result

    async def _find_local(self, remote: RemoteEvent) -> CalendarEvent | None:
        local = await self._events.get_by_provider_id(remote.provider_event_id)
        if local is None and remote.matterflow_id is not None:
            local = await self._events.get(remote.matterflow_id)
        return local

    async def _apply_one(self, practice_id: uuid.UUID, remote: RemoteEvent) -> str:
        """Apply one remote event; returns the ``ApplyResult`` counter to bump."""
        local = await self._find_local(remote)
        now = self._clock()

        if remote.cancelled:
            if local is None or (local.provider_event_id is None and local.is_deleted):
                return "skipped"
            await self._events.update(
                local.model_copy(
                    update={
                        "deleted_at": local.deleted_at or now,
                        "provider_event_id": None,
                        "provider_etag": None,
                        "sync_status": SyncStatus.SYNCED,
                        "sync_error": None,
                        "last_synced_at": now,
                    }
                )
            )
            return "deleted"

        if local is not None:
            if local.is_deleted:
                # Local deletes win; the push side removes the remote copy.
                return "skipped"
            if (
                local.provider_updated_at is not None
                and remote.updated_at is not None
                and remote.updated_at <= local.provider_updated_at
            ):
                return "skipped"
            await self._events.update(
                local.model_copy(
                    update={
                        "title": remote.title,
                        "description": remote.description,
                        "location": remote.location,
                        "start_at": remote.start_at,
                        "end_at": remote.end_at,
                        "all_day": remote.all_day,
                        "provider_event_id": remote.provider_event_id,
                        "provider_etag": remote.etag,
                        "provider_updated_at": remote.updated_at,
                        "sync_status": SyncStatus.SYNCED,
                        "sync_error": None,
                        "last_synced_at": now,
                    }
                )
            )
            return "updated"

        if remote.matterflow_id is not None:
            # Created here, then deleted locally; do not resurrect.
            return "skipped"

        await self._events.insert(
            CalendarEvent(
                practice_id=practice_id,
                matter_id=remote.matter_id,
                task_id=remote.task_id,
                title=remote.title or "(untitled)",
                description=remote.description,
                location=remote.location,
                start_at=remote.start_at,
                end_at=remote.end_at,
                all_day=remote.all_day,
                event_type=EventType.MANUAL,
                provider_event_id=remote.provider_event_id,
                provider_etag=remote.etag,
                provider_updated_at=remote.updated_at,
                sync_status=SyncStatus.SYNCED,
                last_synced_at=now,
            )
        )
        return "inserted"
