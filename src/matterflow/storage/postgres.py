"""asyncpg-backed implementations of the storage protocols."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

import asyncpg

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

logger = logging.getLogger(__name__)


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value returned as text by asyncpg."""
    if not isinstance(val, str):
        return val
    return json.loads(val)


def _rows_affected(status: str) -> int:
    # asyncpg returns command tags like "UPDATE 1"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class PostgresCursorStore:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, practice_id: uuid.UUID, calendar_id: str) -> SyncCursor | None:
        row = await self._pool.fetchrow(
            """
            SELECT practice_id, calendar_id, sync_token, last_synced_at
            FROM calendar_sync_cursors
            WHERE practice_id = $1 AND calendar_id = $2
            """,
            practice_id,
            calendar_id,
        )
        return SyncCursor.model_validate(dict(row)) if row is not None else None

    async def put(self, cursor: SyncCursor) -> SyncCursor:
        await self._pool.execute(
            """
            INSERT INTO calendar_sync_cursors (practice_id, calendar_id, sync_token, last_synced_at)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (practice_id, calendar_id) DO UPDATE
            SET sync_token = EXCLUDED.sync_token,
                last_synced_at = EXCLUDED.last_synced_at
            """,
            cursor.practice_id,
            cursor.calendar_id,
            cursor.sync_token,
            cursor.last_synced_at,
        )
        return cursor

    async def delete(self, practice_id: uuid.UUID, calendar_id: str) -> None:
        await self._pool.execute(
            "DELETE FROM calendar_sync_cursors WHERE practice_id = $1 AND calendar_id = $2",
            practice_id,
            calendar_id,
        )


_EVENT_COLUMNS = (
    "id",
    "practice_id",
    "matter_id",
    "task_id",
    "title",
    "description",
    "location",
    "start_at",
    "end_at",
    "all_day",
    "event_type",
    "provider_event_id",
    "provider_etag",
    "provider_updated_at",
    "sync_status",
    "sync_error",
    "last_synced_at",
    "deleted_at",
)
_EVENT_SELECT = f"SELECT {', '.join(_EVENT_COLUMNS)} FROM calendar_events"


def _event_values(event: CalendarEvent) -> list[Any]:
    data = event.model_dump()
    data["event_type"] = event.event_type.value
    data["sync_status"] = event.sync_status.value
    return [data[column] for column in _EVENT_COLUMNS]


class PostgresEventStore:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, event_id: uuid.UUID) -> CalendarEvent | None:
        row = await self._pool.fetchrow(f"{_EVENT_SELECT} WHERE id = $1", event_id)
        return CalendarEvent.model_validate(dict(row)) if row is not None else None

    async def get_by_provider_id(self, provider_event_id: str) -> CalendarEvent | None:
        row = await self._pool.fetchrow(
            f"{_EVENT_SELECT} WHERE provider_event_id = $1", provider_event_id
        )
        return CalendarEvent.model_validate(dict(row)) if row is not None else None

    async def insert(self, event: CalendarEvent) -> CalendarEvent:
        placeholders = ", ".join(f"${i}" for i in range(1, len(_EVENT_COLUMNS) + 1))
        try:
            await self._pool.execute(
                f"INSERT INTO calendar_events ({', '.join(_EVENT_COLUMNS)}) "
                f"VALUES ({placeholders})",
                *_event_values(event),
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateRecordError("calendar_events", exc.detail) from exc
        return event

    async def update(self, event: CalendarEvent) -> CalendarEvent:
        assignments = ", ".join(
            f"{column} = ${i}" for i, column in enumerate(_EVENT_COLUMNS[1:], start=2)
        )
        try:
            await self._pool.execute(
                f"UPDATE calendar_events SET {assignments}, updated_at = now() WHERE id = $1",
                *_event_values(event),
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateRecordError("calendar_events", exc.detail) from exc
        return event

    async def list_pending(self, matter_id: uuid.UUID, limit: int) -> list[CalendarEvent]:
        return await self._list_pending("matter_id = $1", matter_id, limit)

    async def list_pending_unassigned(
        self, practice_id: uuid.UUID, limit: int
    ) -> list[CalendarEvent]:
        return await self._list_pending(
            "practice_id = $1 AND matter_id IS NULL", practice_id, limit
        )

    async def _list_pending(self, scope: str, key: uuid.UUID, limit: int) -> list[CalendarEvent]:
        rows = await self._pool.fetch(
            f"""
            {_EVENT_SELECT}
            WHERE {scope}
              AND (
                (deleted_at IS NULL AND sync_status IN ($2, $3))
                OR (deleted_at IS NOT NULL AND provider_event_id IS NOT NULL)
              )
            ORDER BY created_at
            LIMIT $4
            """,
            key,
            SyncStatus.PENDING.value,
            SyncStatus.ERROR.value,
            limit,
        )
        return [CalendarEvent.model_validate(dict(row)) for row in rows]


class PostgresFolderStore:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, matter_id: uuid.UUID) -> MatterFolderRecord | None:
        row = await self._pool.fetchrow(
            """
            SELECT matter_id, client_folder_id, root_folder_id, root_folder_link, folder_structure,
                   structure_version, status, claim_token, claimed_at
            FROM matter_folders
            WHERE matter_id = $1
            """,
            matter_id,
        )
        if row is None:
            return None
        data = dict(row)
        data["folder_structure"] = decode_jsonb(data["folder_structure"]) or {}
        return MatterFolderRecord.model_validate(data)

    async def insert_claim(self, record: MatterFolderRecord) -> MatterFolderRecord:
        try:
            await self._pool.execute(
                """
                INSERT INTO matter_folders (matter_id, status, claim_token, claimed_at)
                VALUES ($1, $2, $3, $4)
                """,
                record.matter_id,
                FolderStatus.PROVISIONING.value,
                record.claim_token,
                record.claimed_at,
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateRecordError("matter_folders", exc.detail) from exc
        return record

    async def take_over_claim(
        self,
        matter_id: uuid.UUID,
        expected_token: uuid.UUID | None,
        new_token: uuid.UUID,
        claimed_at: datetime,
    ) -> bool:
        status = await self._pool.execute(
            """
            UPDATE matter_folders
            SET claim_token = $3, claimed_at = $4, updated_at = now()
            WHERE matter_id = $1
              AND status = 'provisioning'
              AND claim_token IS NOT DISTINCT FROM $2
            """,
            matter_id,
            expected_token,
            new_token,
            claimed_at,
        )
        return _rows_affected(status) == 1

    async def save(
        self,
        record: MatterFolderRecord,
        *,
        expected_claim_token: uuid.UUID | None = None,
    ) -> bool:
        query = """
            UPDATE matter_folders
            SET client_folder_id = $2,
                root_folder_id = $3,
                root_folder_link = $4,
                folder_structure = $5::jsonb,
                structure_version = $6,
                status = $7,
                claim_token = $8,
                claimed_at = $9,
                updated_at = now()
            WHERE matter_id = $1
        """
        args: list[Any] = [
            record.matter_id,
            record.client_folder_id,
            record.root_folder_id,
            record.root_folder_link,
            json.dumps(record.folder_structure),
            record.structure_version,
            record.status.value,
            record.claim_token,
            record.claimed_at,
        ]
        if expected_claim_token is not None:
            query += " AND claim_token = $10"
            args.append(expected_claim_token)
        status = await self._pool.execute(query, *args)
        return _rows_affected(status) == 1


class PostgresDocumentStore:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def latest_version(self, matter_id: uuid.UUID, folder_path: str, title: str) -> int:
        value = await self._pool.fetchval(
            """
            SELECT COALESCE(MAX(version), 0) FROM documents
            WHERE matter_id = $1 AND folder_path = $2 AND title = $3
            """,
            matter_id,
            folder_path,
            title,
        )
        return int(value or 0)

    async def insert(self, document: Document) -> Document:
        created_at = document.created_at or datetime.now(UTC)
        try:
            await self._pool.execute(
                """
                INSERT INTO documents (
                    id, matter_id, task_id, title, provider_file_id, web_view_link,
                    folder_path, version, status, mime_type, size_bytes, description, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                """,
                document.id,
                document.matter_id,
                document.task_id,
                document.title,
                document.provider_file_id,
                document.web_view_link,
                document.folder_path,
                document.version,
                document.status,
                document.mime_type,
                document.size_bytes,
                document.description,
                created_at,
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateRecordError("documents", exc.detail) from exc
        return document.model_copy(update={"created_at": created_at})

    async def get(self, document_id: uuid.UUID) -> Document | None:
        row = await self._pool.fetchrow(
            """
            SELECT id, matter_id, task_id, title, provider_file_id, web_view_link,
                   folder_path, version, status, mime_type, size_bytes, description, created_at
            FROM documents
            WHERE id = $1
            """,
            document_id,
        )
        return Document.model_validate(dict(row)) if row is not None else None

    async def set_status(self, document_id: uuid.UUID, status: str) -> bool:
        result = await self._pool.execute(
            "UPDATE documents SET status = $2 WHERE id = $1", document_id, status
        )
        return _rows_affected(result) == 1


class PostgresPracticeDirectory:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def list_practices(self) -> list[Practice]:
        rows = await self._pool.fetch(
            """
            SELECT id, name, google_refresh_token, google_calendar_id
            FROM practices
            WHERE google_refresh_token IS NOT NULL
            ORDER BY created_at
            """
        )
        return [Practice.model_validate(dict(row)) for row in rows]

    async def get_practice(self, practice_id: uuid.UUID) -> Practice | None:
        row = await self._pool.fetchrow(
            "SELECT id, name, google_refresh_token, google_calendar_id FROM practices WHERE id = $1",
            practice_id,
        )
        return Practice.model_validate(dict(row)) if row is not None else None

    async def list_matters(self, practice_id: uuid.UUID) -> list[Matter]:
        rows = await self._pool.fetch(
            """
            SELECT id, practice_id, title, client_id, client_name, stage
            FROM matters
            WHERE practice_id = $1
              AND client_id IS NOT NULL
              AND (stage IS NULL OR stage NOT IN ('Completed', 'Archived'))
            ORDER BY created_at
            """,
            practice_id,
        )
        return [Matter.model_validate(dict(row)) for row in rows]

    async def get_matter(self, matter_id: uuid.UUID) -> Matter | None:
        row = await self._pool.fetchrow(
            "SELECT id, practice_id, title, client_id, client_name, stage FROM matters WHERE id = $1",
            matter_id,
        )
        return Matter.model_validate(dict(row)) if row is not None else None
