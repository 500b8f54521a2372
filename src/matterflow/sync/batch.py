"""Scheduled batch synchronization across practices and matters.

Per practice: open token-scoped clients, pull once (the cursor is committed
before any push), apply events that belong to no processed matter, then for
each eligible matter apply its pulled events and push its pending local
events. A full run then pushes the practice's local events that belong to
no matter. Every matter's outcome is captured independently; one matter's
exception never aborts the rest. An authentication failure skips the
remainder of its practice, and pulled events left unapplied force a bounded
full resync on the next run.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from opentelemetry import trace

from matterflow.config import ConfigError, Settings
from matterflow.core.errors import (
    AuthenticationError,
    RecordValidationError,
    build_error_entry,
)
from matterflow.core.logging import practice_context
from matterflow.core.metrics import metrics
from matterflow.core.rate_limit import RateLimiter, RateLimiterOptions
from matterflow.providers.google_auth import GoogleClients, open_google_clients
from matterflow.storage.base import CursorStore, EventStore, PracticeDirectory
from matterflow.sync.cursors import SyncCursorManager
from matterflow.sync.models import (
    BatchErrorEntry,
    BatchSummary,
    Matter,
    MatterSyncResult,
    Practice,
    RemoteEvent,
)
from matterflow.sync.pull import EventReconciler, PullReconciler
from matterflow.sync.push import PushWriter

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str | None, Settings], AbstractAsyncContextManager[GoogleClients]]


class PulledEventsNotApplied(RuntimeError):
    """Raised when a matter's pulled events could not be written locally."""


@dataclass
class PracticeRun:
    """State shared by every matter of one practice within a batch."""

    practice: Practice
    clients: GoogleClients
    cursors: SyncCursorManager
    reconciler: EventReconciler
    pusher: PushWriter
    summary: BatchSummary
    events_by_matter: dict[uuid.UUID, list[RemoteEvent]] = field(default_factory=dict)
    cursor_needs_resync: bool = False


class BatchOrchestrator:
    def __init__(
        self,
        settings: Settings,
        directory: PracticeDirectory,
        cursor_store: CursorStore,
        event_store: EventStore,
        *,
        client_factory: ClientFactory = open_google_clients,
        rate_limiter: RateLimiter | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._settings = settings
        self._directory = directory
        self._cursor_store = cursor_store
        self._event_store = event_store
        self._client_factory = client_factory
        provider_rule = settings.rate_limits.provider
        self._rate_limiter = rate_limiter or RateLimiter(
            RateLimiterOptions(
                max_requests=provider_rule.max_requests, window_ms=provider_rule.window_ms
            )
        )
        self._sleep = sleep
        self._clock = clock
        self._tracer = trace.get_tracer("matterflow")

    async def run(self, matter_id: uuid.UUID | None = None) -> BatchSummary:
        """Run one batch; restrict it to a single matter when *matter_id* is given."""
        summary = BatchSummary(started_at=self._clock())
        with metrics.track_batch(), self._tracer.start_as_current_span("matterflow.batch") as span:
            work = await self._plan(matter_id, summary)
            for practice, matters in work:
                await self._run_practice(practice, matters, summary)
            span.set_attribute("practices_processed", summary.practices_processed)
            span.set_attribute("matters_processed", summary.matters_processed)
            span.set_attribute("errors", len(summary.errors))

        summary.finished_at = self._clock()
        logger.info(
            "Batch finished: %d practice(s), %d matter(s), %d synced, %d skipped, %d error(s)",
            summary.practices_processed,
            summary.matters_processed,
            summary.total_synced,
            summary.total_skipped,
            len(summary.errors),
        )
        return summary

    async def _plan(
        self, matter_id: uuid.UUID | None, summary: BatchSummary
    ) -> list[tuple[Practice, list[Matter] | None]]:
        if matter_id is None:
            return [(practice, None) for practice in await self._directory.list_practices()]

        matter = await self._directory.get_matter(matter_id)
        practice = None
        if matter is not None:
            practice = await self._directory.get_practice(matter.practice_id)
        if matter is None or not matter.eligible_for_sync:
            self._record_error(
                summary,
                RecordValidationError(f"Matter {matter_id} not found or not eligible for sync"),
                matter_id=matter_id,
                operation="plan",
            )
            return []
        if practice is None or not practice.google_refresh_token:
            self._record_error(
                summary,
                AuthenticationError("Practice has no Google refresh token"),
                practice_id=matter.practice_id,
                matter_id=matter_id,
                operation="plan",
            )
            return []
        return [(practice, [matter])]

    async def _run_practice(
        self,
        practice: Practice,
        matters: list[Matter] | None,
        summary: BatchSummary,
    ) -> None:
        with (
            practice_context(practice.id),
            self._tracer.start_as_current_span("matterflow.batch.practice") as span,
        ):
            span.set_attribute("practice_id", str(practice.id))
            summary.practices_processed += 1
            full_run = matters is None
            try:
                if matters is None:
                    matters = await self._directory.list_matters(practice.id)
                async with self._client_factory(
                    practice.google_refresh_token, self._settings
                ) as clients:
                    run = self._start_practice_run(practice, clients, summary)
                    if not await self._pull(run, matters):
                        return
                    completed = await self._run_matters(run, matters)
                    if completed and full_run:
                        await self._push_unassigned(run)
                    if run.cursor_needs_resync:
                        await run.cursors.invalidate(practice.id, practice.google_calendar_id)
            except ConfigError:
                raise
            except Exception as exc:
                logger.exception("Practice %s sync failed", practice.id)
                self._record_error(summary, exc, practice_id=practice.id, operation="practice")

    def _start_practice_run(
        self, practice: Practice, clients: GoogleClients, summary: BatchSummary
    ) -> PracticeRun:
        sync = self._settings.sync
        return PracticeRun(
            practice=practice,
            clients=clients,
            cursors=SyncCursorManager(self._cursor_store, clock=self._clock),
            reconciler=EventReconciler(self._event_store, clock=self._clock),
            pusher=PushWriter(
                clients.calendar,
                self._event_store,
                practice.google_calendar_id,
                precreate_lookup=sync.precreate_lookup,
                batch_limit=sync.push_batch_limit,
                clock=self._clock,
            ),
            summary=summary,
        )

    async def _pull(self, run: PracticeRun, matters: list[Matter]) -> bool:
        """Pull and apply unassigned events; returns False when the practice must be skipped."""
        practice = run.practice
        pull = PullReconciler(
            run.clients.calendar,
            run.cursors,
            lookback_days=self._settings.sync.lookback_days,
            clock=self._clock,
        )
        try:
            pulled = await pull.pull(practice.id, practice.google_calendar_id)
        except Exception as exc:
            logger.warning("Pull failed for practice %s; skipping its matters: %s", practice.id, exc)
            self._record_error(run.summary, exc, practice_id=practice.id, operation="pull")
            return False

        for entry in pulled.errors:
            self._record_entry(run.summary, entry)
        run.summary.total_skipped += len(pulled.errors)

        matter_ids = {matter.id for matter in matters}
        grouped: dict[uuid.UUID, list[RemoteEvent]] = defaultdict(list)
        unassigned: list[RemoteEvent] = []
        for event in pulled.events:
            if event.matter_id is not None and event.matter_id in matter_ids:
                grouped[event.matter_id].append(event)
            else:
                unassigned.append(event)
        run.events_by_matter = dict(grouped)

        if unassigned:
            try:
                applied = await run.reconciler.apply(practice.id, unassigned)
            except Exception as exc:
                logger.warning("Applying unassigned events failed for %s: %s", practice.id, exc)
                self._record_error(run.summary, exc, practice_id=practice.id, operation="apply")
                run.cursor_needs_resync = True
            else:
                run.summary.total_synced += applied.synced
                run.summary.total_skipped += applied.skipped
                for entry in applied.errors:
                    self._record_entry(run.summary, entry)
        return True

    async def _run_matters(self, run: PracticeRun, matters: list[Matter]) -> bool:
        """Sync each matter in turn; returns False when a rejected credential stopped the loop."""
        delay = self._settings.sync.inter_item_delay_seconds
        for index, matter in enumerate(matters):
            if index and delay > 0:
                await self._sleep(delay)
            await self._rate_limiter.acquire(f"practice:{run.practice.id}")
            run.summary.matters_processed += 1

            with self._tracer.start_as_current_span("matterflow.batch.matter") as span:
                span.set_attribute("matter_id", str(matter.id))
                try:
                    result = await self.sync_matter(run, matter)
                except AuthenticationError as exc:
                    span.record_exception(exc)
                    logger.warning(
                        "Credential rejected for practice %s; skipping remaining matters",
                        run.practice.id,
                    )
                    self._record_error(
                        run.summary,
                        exc,
                        practice_id=run.practice.id,
                        matter_id=matter.id,
                        operation="matter",
                    )
                    if any(run.events_by_matter.get(m.id) for m in matters[index + 1 :]):
                        run.cursor_needs_resync = True
                    return False
                except Exception as exc:
                    span.record_exception(exc)
                    logger.warning("Matter %s sync failed: %s", matter.id, exc)
                    not_applied = isinstance(exc, PulledEventsNotApplied)
                    self._record_error(
                        run.summary,
                        (exc.__cause__ or exc) if not_applied else exc,
                        practice_id=run.practice.id,
                        matter_id=matter.id,
                        operation="apply" if not_applied else "matter",
                    )
                    continue

            run.summary.results.append(result)
            run.summary.total_synced += result.synced
            run.summary.total_skipped += result.skipped
        return True

    async def _push_unassigned(self, run: PracticeRun) -> None:
        """Push the practice's pending events that belong to no matter."""
        practice = run.practice
        await self._rate_limiter.acquire(f"practice:{practice.id}")
        try:
            pushed = await run.pusher.push_unassigned(practice.id)
        except Exception as exc:
            logger.warning("Pushing unassigned events failed for %s: %s", practice.id, exc)
            self._record_error(run.summary, exc, practice_id=practice.id, operation="push")
            return
        for entry in pushed.errors:
            self._record_entry(run.summary, entry)
        run.summary.total_synced += pushed.synced
        run.summary.total_skipped += pushed.skipped

    async def sync_matter(self, run: PracticeRun, matter: Matter) -> MatterSyncResult:
        """Apply a matter's pulled events, then push its pending local events."""
        events = run.events_by_matter.get(matter.id, [])
        try:
            applied = await run.reconciler.apply(run.practice.id, events)
        except Exception as exc:
            # Re-apply via a bounded full resync on the next run.
            run.cursor_needs_resync = True
            raise PulledEventsNotApplied(f"Pulled events for matter {matter.id} not applied") from exc

        pushed = await run.pusher.push_pending(matter.id)
        for entry in [*applied.errors, *pushed.errors]:
            self._record_entry(run.summary, entry)

        errors = len(applied.errors) + len(pushed.errors)
        return MatterSyncResult(
            matter_id=str(matter.id),
            title=matter.title,
            synced=applied.synced + pushed.synced,
            skipped=applied.skipped + pushed.skipped,
            error=f"{errors} item(s) failed" if errors else None,
        )

    def _record_error(self, summary: BatchSummary, exc: BaseException, **ids: Any) -> None:
        self._record_entry(summary, build_error_entry(exc, **ids))

    def _record_entry(self, summary: BatchSummary, entry: dict[str, Any]) -> None:
        summary.errors.append(BatchErrorEntry.model_validate(entry))
        metrics.record_error(entry["kind"], entry.get("operation") or "unknown")


__all__ = ["BatchOrchestrator", "PracticeRun", "PulledEventsNotApplied"]
