"""Persistence protocols used by the sync components.

Stores expose get / commit / insert / update primitives only; all sync
decisions live in ``matterflow.sync``.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Protocol

from matterflow.sync.models import (
    CalendarEvent,
    Document,
    Matter,
    MatterFolderRecord,
    Practice,
    SyncCursor,
)


class DuplicateRecordError(Exception):
    """Raised when an insert violates a uniqueness constraint."""

    def __init__(self, table: str, detail: str | None = None) -> None:
        self.table = table
        self.detail = detail
        super().__init__(f"Duplicate record in {table}" + (f": {detail}" if detail else ""))


class CursorStore(Protocol):
    async def get(self, practice_id: uuid.UUID, calendar_id: str) -> SyncCursor | None: ...

    async def put(self, cursor: SyncCursor) -> SyncCursor:
        """Atomically replace the cursor for its (practice, calendar) key."""
        ...

    async def delete(self, practice_id: uuid.UUID, calendar_id: str) -> None: ...


class EventStore(Protocol):
    async def get(self, event_id: uuid.UUID) -> CalendarEvent | None:
        """Return the row by local id, including soft-deleted rows."""
        ...

    async def get_by_provider_id(self, provider_event_id: str) -> CalendarEvent | None: ...

    async def insert(self, event: CalendarEvent) -> CalendarEvent:
        """Insert a new row; raises ``DuplicateRecordError`` on a provider id clash."""
        ...

    async def update(self, event: CalendarEvent) -> CalendarEvent: ...

    async def list_pending(self, matter_id: uuid.UUID, limit: int) -> list[CalendarEvent]:
        """Return events needing a push: pending/error rows and soft-deleted rows
        that still carry a provider id, oldest first."""
        ...

    async def list_pending_unassigned(
        self, practice_id: uuid.UUID, limit: int
    ) -> list[CalendarEvent]:
        """Like ``list_pending`` for a practice's events with no matter."""
        ...


class FolderStore(Protocol):
    async def get(self, matter_id: uuid.UUID) -> MatterFolderRecord | None: ...

    async def insert_claim(self, record: MatterFolderRecord) -> MatterFolderRecord:
        """Insert a ``provisioning`` row; raises ``DuplicateRecordError`` if one exists."""
        ...

    async def take_over_claim(
        self,
        matter_id: uuid.UUID,
        expected_token: uuid.UUID | None,
        new_token: uuid.UUID,
        claimed_at: datetime,
    ) -> bool:
        """Compare-and-set the claim token; True when this caller now owns the claim."""
        ...

    async def save(
        self,
        record: MatterFolderRecord,
        *,
        expected_claim_token: uuid.UUID | None = None,
    ) -> bool:
        """Persist the full record in one write.

        With ``expected_claim_token`` the write only applies while the caller
        still owns the claim; returns whether a row was written.
        """
        ...


class DocumentStore(Protocol):
    async def latest_version(self, matter_id: uuid.UUID, folder_path: str, title: str) -> int:
        """Return the highest stored version for the slot, or 0."""
        ...

    async def insert(self, document: Document) -> Document:
        """Insert a version; raises ``DuplicateRecordError`` when it already exists."""
        ...

    async def get(self, document_id: uuid.UUID) -> Document | None: ...

    async def set_status(self, document_id: uuid.UUID, status: str) -> bool:
        """Update a document's status; returns whether a row was written."""
        ...


class PracticeDirectory(Protocol):
    async def list_practices(self) -> list[Practice]:
        """Practices with a non-null provider credential."""
        ...

    async def list_matters(self, practice_id: uuid.UUID) -> list[Matter]:
        """Matters eligible for batch sync within a practice."""
        ...

    async def get_matter(self, matter_id: uuid.UUID) -> Matter | None: ...

    async def get_practice(self, practice_id: uuid.UUID) -> Practice | None: ...
