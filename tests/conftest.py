"""Shared fixtures for the sync engine test suite.

Provides in-memory implementations of every store protocol plus fake
Google Calendar / Drive clients that keep remote state in dicts, so sync
components can be exercised end to end without a database or network.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

import pytest

from matterflow.config import GoogleSettings, Settings, SyncSettings
from matterflow.core.errors import (
    CursorInvalidatedError,
    RemoteNotFoundError,
    TransientSyncError,
)
from matterflow.providers.google_calendar import EventPage
from matterflow.providers.google_drive import FOLDER_MIME, DriveFile
from matterflow.storage.base import DuplicateRecordError
from matterflow.sync.models import (
    CalendarEvent,
    Document,
    FolderStatus,
    Matter,
    MatterFolderRecord,
    Practice,
    SyncCursor,
    SyncStatus,
)

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=UTC)


# ---------------------------------------------------------------------------
# In-memory stores
# ---------------------------------------------------------------------------


class InMemoryCursorStore:
    def __init__(self) -> None:
        self.cursors: dict[tuple[uuid.UUID, str], SyncCursor] = {}
        self.deleted: list[tuple[uuid.UUID, str]] = []

    async def get(self, practice_id: uuid.UUID, calendar_id: str) -> SyncCursor | None:
        return self.cursors.get((practice_id, calendar_id))

    async def put(self, cursor: SyncCursor) -> SyncCursor:
        self.cursors[(cursor.practice_id, cursor.calendar_id)] = cursor
        return cursor

    async def delete(self, practice_id: uuid.UUID, calendar_id: str) -> None:
        self.cursors.pop((practice_id, calendar_id), None)
        self.deleted.append((practice_id, calendar_id))


class InMemoryEventStore:
    def __init__(self) -> None:
        self.rows: dict[uuid.UUID, CalendarEvent] = {}

    def _check_provider_id(self, event: CalendarEvent) -> None:
        if event.provider_event_id is None:
            return
        for row in self.rows.values():
            if row.id != event.id and row.provider_event_id == event.provider_event_id:
                raise DuplicateRecordError("calendar_events", event.provider_event_id)

    async def get(self, event_id: uuid.UUID) -> CalendarEvent | None:
        return self.rows.get(event_id)

    async def get_by_provider_id(self, provider_event_id: str) -> CalendarEvent | None:
        for row in self.rows.values():
            if row.provider_event_id == provider_event_id:
                return row
        return None

    async def insert(self, event: CalendarEvent) -> CalendarEvent:
        if event.id in self.rows:
            raise DuplicateRecordError("calendar_events", str(event.id))
        self._check_provider_id(event)
        self.rows[event.id] = event
        return event

    async def update(self, event: CalendarEvent) -> CalendarEvent:
        self._check_provider_id(event)
        self.rows[event.id] = event
        return event

    @staticmethod
    def _needs_push(row: CalendarEvent) -> bool:
        if row.deleted_at is not None:
            return row.provider_event_id is not None
        return row.sync_status in (SyncStatus.PENDING, SyncStatus.ERROR)

    async def list_pending(self, matter_id: uuid.UUID, limit: int) -> list[CalendarEvent]:
        pending = [
            row
            for row in self.rows.values()
            if row.matter_id == matter_id and self._needs_push(row)
        ]
        return pending[:limit]

    async def list_pending_unassigned(
        self, practice_id: uuid.UUID, limit: int
    ) -> list[CalendarEvent]:
        pending = [
            row
            for row in self.rows.values()
            if row.practice_id == practice_id and row.matter_id is None and self._needs_push(row)
        ]
        return pending[:limit]


class InMemoryFolderStore:
    def __init__(self) -> None:
        self.records: dict[uuid.UUID, MatterFolderRecord] = {}
        self.saves = 0

    async def get(self, matter_id: uuid.UUID) -> MatterFolderRecord | None:
        return self.records.get(matter_id)

    async def insert_claim(self, record: MatterFolderRecord) -> MatterFolderRecord:
        if record.matter_id in self.records:
            raise DuplicateRecordError("matter_folders", str(record.matter_id))
        self.records[record.matter_id] = record
        return record

    async def take_over_claim(
        self,
        matter_id: uuid.UUID,
        expected_token: uuid.UUID | None,
        new_token: uuid.UUID,
        claimed_at: datetime,
    ) -> bool:
        current = self.records.get(matter_id)
        if (
            current is None
            or current.status != FolderStatus.PROVISIONING
            or current.claim_token != expected_token
        ):
            return False
        self.records[matter_id] = current.model_copy(
            update={"claim_token": new_token, "claimed_at": claimed_at}
        )
        return True

    async def save(
        self,
        record: MatterFolderRecord,
        *,
        expected_claim_token: uuid.UUID | None = None,
    ) -> bool:
        current = self.records.get(record.matter_id)
        if current is None:
            return False
        if expected_claim_token is not None and current.claim_token != expected_claim_token:
            return False
        self.records[record.matter_id] = record
        self.saves += 1
        return True


class InMemoryDocumentStore:
    def __init__(self) -> None:
        self.documents: list[Document] = []

    async def latest_version(self, matter_id: uuid.UUID, folder_path: str, title: str) -> int:
        versions = [
            doc.version
            for doc in self.documents
            if doc.matter_id == matter_id and doc.folder_path == folder_path and doc.title == title
        ]
        return max(versions, default=0)

    async def insert(self, document: Document) -> Document:
        for existing in self.documents:
            if (
                existing.matter_id == document.matter_id
                and existing.folder_path == document.folder_path
                and existing.title == document.title
                and existing.version == document.version
            ):
                raise DuplicateRecordError("documents", document.title)
        stored = document.model_copy(update={"created_at": NOW})
        self.documents.append(stored)
        return stored

    async def get(self, document_id: uuid.UUID) -> Document | None:
        return next((doc for doc in self.documents if doc.id == document_id), None)

    async def set_status(self, document_id: uuid.UUID, status: str) -> bool:
        for index, doc in enumerate(self.documents):
            if doc.id == document_id:
                self.documents[index] = doc.model_copy(update={"status": status})
                return True
        return False


class InMemoryDirectory:
    def __init__(self) -> None:
        self.practices: list[Practice] = []
        self.matters: list[Matter] = []

    async def list_practices(self) -> list[Practice]:
        return [p for p in self.practices if p.google_refresh_token]

    async def get_practice(self, practice_id: uuid.UUID) -> Practice | None:
        return next((p for p in self.practices if p.id == practice_id), None)

    async def list_matters(self, practice_id: uuid.UUID) -> list[Matter]:
        return [m for m in self.matters if m.practice_id == practice_id and m.eligible_for_sync]

    async def get_matter(self, matter_id: uuid.UUID) -> Matter | None:
        return next((m for m in self.matters if m.id == matter_id), None)


# ---------------------------------------------------------------------------
# Fake provider clients
# ---------------------------------------------------------------------------


class FakeCalendar:
    """In-memory stand-in for ``GoogleCalendarClient``.

    Listing is scripted: ``listings[sync_token]`` holds the pages returned
    for that token, where an exception entry is raised in place of a page;
    ``None`` is the bounded full listing.
    Writes operate on ``events``.
    """

    def __init__(self) -> None:
        self.events: dict[str, dict[str, Any]] = {}
        self.listings: dict[str | None, list[EventPage | Exception] | Exception] = {}
        self.list_calls: list[dict[str, Any]] = []
        self.calls: list[tuple[str, str | None]] = []
        self.failures: dict[str, Exception] = {}
        self._counter = 0

    def _maybe_fail(self, operation: str) -> None:
        exc = self.failures.get(operation)
        if exc is not None:
            raise exc

    async def iter_pages(
        self,
        calendar_id: str,
        *,
        sync_token: str | None = None,
        time_min: datetime | None = None,
    ) -> AsyncIterator[EventPage]:
        self.list_calls.append(
            {"calendar_id": calendar_id, "sync_token": sync_token, "time_min": time_min}
        )
        scripted = self.listings.get(sync_token)
        if scripted is None:
            raise CursorInvalidatedError("no listing scripted", status_code=410)
        if isinstance(scripted, Exception):
            raise scripted
        for page in scripted:
            if isinstance(page, Exception):
                raise page
            yield page

    async def get_calendar(self, calendar_id: str) -> dict[str, Any]:
        self.calls.append(("get_calendar", calendar_id))
        self._maybe_fail("get_calendar")
        return {"id": calendar_id, "summary": "Practice calendar", "timeZone": "America/Chicago"}

    async def insert(self, calendar_id: str, body: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("insert", None))
        self._maybe_fail("insert")
        self._counter += 1
        event_id = f"g-{self._counter}"
        resource = {
            **body,
            "id": event_id,
            "etag": f'"etag-{self._counter}"',
            "updated": "2026-03-02T09:30:00Z",
            "status": "confirmed",
        }
        self.events[event_id] = resource
        return resource

    async def update(
        self, calendar_id: str, event_id: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        self.calls.append(("update", event_id))
        self._maybe_fail("update")
        if event_id not in self.events:
            raise RemoteNotFoundError(f"events.update failed (404): {event_id}", status_code=404)
        self._counter += 1
        resource = {
            **body,
            "id": event_id,
            "etag": f'"etag-{self._counter}"',
            "updated": "2026-03-02T09:31:00Z",
            "status": "confirmed",
        }
        self.events[event_id] = resource
        return resource

    async def delete(self, calendar_id: str, event_id: str) -> bool:
        self.calls.append(("delete", event_id))
        self._maybe_fail("delete")
        return self.events.pop(event_id, None) is not None

    async def find_by_private_property(
        self, calendar_id: str, key: str, value: str
    ) -> dict[str, Any] | None:
        self.calls.append(("find", value))
        for resource in self.events.values():
            private = resource.get("extendedProperties", {}).get("private", {})
            if private.get(key) == value:
                return resource
        return None


class FakeDrive:
    """In-memory stand-in for ``GoogleDriveClient``."""

    def __init__(self) -> None:
        self.folders: dict[str, tuple[str, str | None]] = {}
        self.uploads: list[dict[str, Any]] = []
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.fail_on_create: set[str] = set()
        self.delete_failure: Exception | None = None
        self._counter = 0

    @staticmethod
    def _folder(folder_id: str, name: str) -> DriveFile:
        return DriveFile(
            id=folder_id,
            name=name,
            web_view_link=f"https://drive.google.com/drive/folders/{folder_id}",
            mime_type=FOLDER_MIME,
        )

    async def find_folder(self, name: str, parent_id: str | None = None) -> DriveFile | None:
        for folder_id, (folder_name, parent) in self.folders.items():
            if folder_name == name and parent == parent_id:
                return self._folder(folder_id, folder_name)
        return None

    async def create_folder(self, name: str, parent_id: str | None = None) -> DriveFile:
        if name in self.fail_on_create:
            raise TransientSyncError(f"files.create failed (503): {name}", status_code=503)
        # Yield so concurrent provisioners interleave.
        await asyncio.sleep(0)
        self._counter += 1
        folder_id = f"folder-{self._counter}"
        self.folders[folder_id] = (name, parent_id)
        self.created.append(name)
        return self._folder(folder_id, name)

    async def get_or_create_folder(self, name: str, parent_id: str | None = None) -> DriveFile:
        existing = await self.find_folder(name, parent_id)
        if existing is not None:
            return existing
        return await self.create_folder(name, parent_id)

    async def upload_file(
        self,
        *,
        name: str,
        content: bytes,
        mime_type: str,
        parent_id: str,
        description: str | None = None,
    ) -> DriveFile:
        self._counter += 1
        file_id = f"file-{self._counter}"
        self.uploads.append(
            {
                "id": file_id,
                "name": name,
                "content": content,
                "mime_type": mime_type,
                "parent_id": parent_id,
                "description": description,
            }
        )
        return DriveFile(
            id=file_id,
            name=name,
            web_view_link=f"https://drive.google.com/file/d/{file_id}/view",
            size=len(content),
            mime_type=mime_type,
        )

    async def delete_file(self, file_id: str) -> bool:
        if self.delete_failure is not None:
            raise self.delete_failure
        remaining = [upload for upload in self.uploads if upload["id"] != file_id]
        if len(remaining) == len(self.uploads):
            return False
        self.uploads = remaining
        self.deleted.append(file_id)
        return True


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def remote_resource(
    event_id: str,
    *,
    summary: str = "Remote meeting",
    start: str = "2026-03-03T15:00:00Z",
    end: str = "2026-03-03T16:00:00Z",
    updated: str = "2026-03-02T08:00:00Z",
    status: str = "confirmed",
    private: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Build a Google Calendar event resource."""
    resource: dict[str, Any] = {
        "id": event_id,
        "etag": f'"{event_id}-etag"',
        "status": status,
        "summary": summary,
        "updated": updated,
        "start": {"dateTime": start},
        "end": {"dateTime": end},
    }
    if private is not None:
        resource["extendedProperties"] = {"private": private}
    return resource


def local_event(practice_id: uuid.UUID, **overrides: Any) -> CalendarEvent:
    """Build a pending, timed local event."""
    values: dict[str, Any] = {
        "practice_id": practice_id,
        "title": "Client call",
        "start_at": datetime(2026, 3, 4, 14, 0, tzinfo=UTC),
        "end_at": datetime(2026, 3, 4, 14, 30, tzinfo=UTC),
    }
    values.update(overrides)
    return CalendarEvent(**values)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    """A fixed clock returning ``NOW``."""
    return lambda: NOW


@pytest.fixture
def settings() -> Settings:
    return Settings(
        cron_secret="cron-secret",
        google=GoogleSettings(client_id="client-id", client_secret="client-secret"),
        sync=SyncSettings(inter_item_delay_seconds=0, retry_backoff_seconds=0),
    )


@pytest.fixture
def cursor_store() -> InMemoryCursorStore:
    return InMemoryCursorStore()


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def folder_store() -> InMemoryFolderStore:
    return InMemoryFolderStore()


@pytest.fixture
def document_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def directory() -> InMemoryDirectory:
    return InMemoryDirectory()


@pytest.fixture
def fake_calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def fake_drive() -> FakeDrive:
    return FakeDrive()


@pytest.fixture
def practice_id() -> uuid.UUID:
    return uuid.UUID("11111111-1111-4111-8111-111111111111")
