"""Incremental-sync cursor lifecycle.

A cursor is used in full or not at all: it is replaced atomically after a
fully successful pull pass and deleted outright when the provider reports it
invalid.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from matterflow.storage.base import CursorStore
from matterflow.sync.models import SyncCursor

logger = logging.getLogger(__name__)


class SyncCursorManager:
    def __init__(
        self,
        store: CursorStore,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._store = store
        self._clock = clock

    async def get(self, practice_id: uuid.UUID, calendar_id: str) -> SyncCursor | None:
        return await self._store.get(practice_id, calendar_id)

    async def commit(
        self, practice_id: uuid.UUID, calendar_id: str, new_cursor: str
    ) -> SyncCursor:
        """Replace the stored cursor and stamp ``last_synced_at``."""
        cursor = SyncCursor(
            practice_id=practice_id,
            calendar_id=calendar_id,
            sync_token=new_cursor,
            last_synced_at=self._clock(),
        )
        committed = await self._store.put(cursor)
        logger.debug("Committed sync cursor for calendar %s", calendar_id)
        return committed

    async def invalidate(self, practice_id: uuid.UUID, calendar_id: str) -> None:
        await self._store.delete(practice_id, calendar_id)
        logger.info("Invalidated sync cursor for calendar %s", calendar_id)
