"""Tests for the asyncpg-backed stores against a mocked pool."""

from __future__ import annotations

import json
import uuid
from typing import Any
from unittest.mock import AsyncMock

import asyncpg
import pytest

from matterflow.storage import (
    DuplicateRecordError,
    PostgresCursorStore,
    PostgresDocumentStore,
    PostgresEventStore,
    PostgresFolderStore,
    PostgresPracticeDirectory,
)
from matterflow.storage.postgres import decode_jsonb
from matterflow.sync.models import (
    Document,
    EventType,
    FolderStatus,
    MatterFolderRecord,
    SyncCursor,
    SyncStatus,
)
from tests.conftest import NOW, local_event

pytestmark = pytest.mark.unit

PRACTICE_ID = uuid.UUID("11111111-1111-4111-8111-111111111111")
MATTER_ID = uuid.UUID("22222222-2222-4222-8222-222222222222")


def _make_pool(
    *,
    fetchrow_returns: list[Any] | None = None,
    fetch_returns: list[Any] | None = None,
    fetchval_returns: list[Any] | None = None,
    execute_returns: list[Any] | None = None,
) -> AsyncMock:
    """Build an AsyncMock behaving like an asyncpg.Pool (FIFO consumption)."""
    pool = AsyncMock()
    pool.fetchrow = AsyncMock(side_effect=list(fetchrow_returns or [None]))
    pool.fetch = AsyncMock(side_effect=list(fetch_returns or [[]]))
    pool.fetchval = AsyncMock(side_effect=list(fetchval_returns or [0]))
    pool.execute = AsyncMock(side_effect=list(execute_returns or ["UPDATE 1"]))
    return pool


def _unique_violation() -> asyncpg.UniqueViolationError:
    return asyncpg.UniqueViolationError("duplicate key value violates unique constraint")


class TestDecodeJsonb:
    def test_decodes_text(self):
        assert decode_jsonb('{"00 Intake": "f1"}') == {"00 Intake": "f1"}

    def test_passes_through_decoded_values(self):
        assert decode_jsonb({"a": "b"}) == {"a": "b"}
        assert decode_jsonb(None) is None


class TestCursorStore:
    async def test_get_returns_none_without_row(self):
        store = PostgresCursorStore(_make_pool())
        assert await store.get(PRACTICE_ID, "primary") is None

    async def test_get_builds_cursor(self):
        row = {
            "practice_id": PRACTICE_ID,
            "calendar_id": "primary",
            "sync_token": "tok-1",
            "last_synced_at": NOW,
        }
        store = PostgresCursorStore(_make_pool(fetchrow_returns=[row]))

        cursor = await store.get(PRACTICE_ID, "primary")

        assert cursor.sync_token == "tok-1"
        assert cursor.last_synced_at == NOW

    async def test_put_upserts_on_key(self):
        pool = _make_pool(execute_returns=["INSERT 0 1"])
        cursor = SyncCursor(
            practice_id=PRACTICE_ID, calendar_id="primary", sync_token="tok-2", last_synced_at=NOW
        )

        await PostgresCursorStore(pool).put(cursor)

        sql, *args = pool.execute.await_args.args
        assert "ON CONFLICT (practice_id, calendar_id) DO UPDATE" in sql
        assert args == [PRACTICE_ID, "primary", "tok-2", NOW]

    async def test_delete(self):
        pool = _make_pool(execute_returns=["DELETE 1"])

        await PostgresCursorStore(pool).delete(PRACTICE_ID, "primary")

        assert pool.execute.await_args.args[1:] == (PRACTICE_ID, "primary")


class TestEventStore:
    async def test_insert_serializes_enums(self):
        pool = _make_pool(execute_returns=["INSERT 0 1"])
        event = local_event(PRACTICE_ID, event_type=EventType.COURT_DATE)

        await PostgresEventStore(pool).insert(event)

        args = pool.execute.await_args.args[1:]
        assert args[0] == event.id
        assert EventType.COURT_DATE.value in args
        assert SyncStatus.PENDING.value in args

    async def test_insert_duplicate_provider_id(self):
        pool = _make_pool(execute_returns=[_unique_violation()])

        with pytest.raises(DuplicateRecordError) as exc_info:
            await PostgresEventStore(pool).insert(local_event(PRACTICE_ID))

        assert exc_info.value.table == "calendar_events"

    async def test_update_keys_on_id(self):
        pool = _make_pool()
        event = local_event(PRACTICE_ID)

        await PostgresEventStore(pool).update(event)

        sql, first, *_ = pool.execute.await_args.args
        assert sql.strip().endswith("WHERE id = $1")
        assert first == event.id

    async def test_list_pending_filters_and_limits(self):
        event = local_event(PRACTICE_ID, matter_id=MATTER_ID)
        pool = _make_pool(fetch_returns=[[event.model_dump()]])

        events = await PostgresEventStore(pool).list_pending(MATTER_ID, 25)

        assert [e.id for e in events] == [event.id]
        sql, *args = pool.fetch.await_args.args
        assert "deleted_at IS NOT NULL AND provider_event_id IS NOT NULL" in sql
        assert args == [MATTER_ID, "pending", "error", 25]

    async def test_list_pending_unassigned_scopes_to_practice(self):
        event = local_event(PRACTICE_ID)
        pool = _make_pool(fetch_returns=[[event.model_dump()]])

        events = await PostgresEventStore(pool).list_pending_unassigned(PRACTICE_ID, 10)

        assert [e.id for e in events] == [event.id]
        sql, *args = pool.fetch.await_args.args
        assert "practice_id = $1 AND matter_id IS NULL" in sql
        assert "deleted_at IS NOT NULL AND provider_event_id IS NOT NULL" in sql
        assert args == [PRACTICE_ID, "pending", "error", 10]

    async def test_get_by_provider_id_missing(self):
        store = PostgresEventStore(_make_pool())
        assert await store.get_by_provider_id("g-404") is None


class TestFolderStore:
    async def test_get_decodes_structure(self):
        row = {
            "matter_id": MATTER_ID,
            "client_folder_id": "client",
            "root_folder_id": "root",
            "root_folder_link": "https://drive.google.com/drive/folders/root",
            "folder_structure": json.dumps({"00 Intake": "f1"}),
            "structure_version": 1,
            "status": "ready",
            "claim_token": None,
            "claimed_at": None,
        }
        store = PostgresFolderStore(_make_pool(fetchrow_returns=[row]))

        record = await store.get(MATTER_ID)

        assert record.folder_structure == {"00 Intake": "f1"}
        assert record.root_folder_link == "https://drive.google.com/drive/folders/root"
        assert record.status == FolderStatus.READY
        assert record.ready

    async def test_insert_claim_conflict(self):
        pool = _make_pool(execute_returns=[_unique_violation()])
        record = MatterFolderRecord(matter_id=MATTER_ID, claim_token=uuid.uuid4(), claimed_at=NOW)

        with pytest.raises(DuplicateRecordError):
            await PostgresFolderStore(pool).insert_claim(record)

    @pytest.mark.parametrize(("tag", "expected"), [("UPDATE 1", True), ("UPDATE 0", False)])
    async def test_take_over_claim_reports_winner(self, tag, expected):
        pool = _make_pool(execute_returns=[tag])
        stale, fresh = uuid.uuid4(), uuid.uuid4()

        won = await PostgresFolderStore(pool).take_over_claim(MATTER_ID, stale, fresh, NOW)

        assert won is expected
        assert "IS NOT DISTINCT FROM $2" in pool.execute.await_args.args[0]

    async def test_save_with_expected_token(self):
        pool = _make_pool(execute_returns=["UPDATE 0"])
        token = uuid.uuid4()
        record = MatterFolderRecord(
            matter_id=MATTER_ID,
            root_folder_id="root",
            root_folder_link="https://drive.google.com/drive/folders/root",
            folder_structure={"00 Intake": "f1"},
            status=FolderStatus.READY,
        )

        saved = await PostgresFolderStore(pool).save(record, expected_claim_token=token)

        assert saved is False
        sql, *args = pool.execute.await_args.args
        assert sql.rstrip().endswith("AND claim_token = $10")
        assert args[3] == "https://drive.google.com/drive/folders/root"
        assert args[4] == '{"00 Intake": "f1"}'
        assert args[-1] == token

    async def test_save_without_token_is_unconditional(self):
        pool = _make_pool()
        record = MatterFolderRecord(matter_id=MATTER_ID, status=FolderStatus.READY)

        assert await PostgresFolderStore(pool).save(record) is True
        assert "claim_token = $10" not in pool.execute.await_args.args[0]


class TestDocumentStore:
    async def test_latest_version_defaults_to_zero(self):
        store = PostgresDocumentStore(_make_pool(fetchval_returns=[None]))
        assert await store.latest_version(MATTER_ID, "/Acme", "will.pdf") == 0

    async def test_insert_stamps_created_at(self):
        pool = _make_pool(execute_returns=["INSERT 0 1"])
        document = Document(
            matter_id=MATTER_ID,
            title="will.pdf",
            provider_file_id="file-1",
            folder_path="/Acme Corp/Estate Plan",
            version=1,
        )

        stored = await PostgresDocumentStore(pool).insert(document)

        assert stored.created_at is not None
        assert pool.execute.await_args.args[-1] == stored.created_at

    async def test_insert_duplicate_version(self):
        pool = _make_pool(execute_returns=[_unique_violation()])
        document = Document(
            matter_id=MATTER_ID,
            title="will.pdf",
            provider_file_id="file-1",
            folder_path="/Acme Corp/Estate Plan",
            version=1,
        )

        with pytest.raises(DuplicateRecordError, match="documents"):
            await PostgresDocumentStore(pool).insert(document)

    async def test_get_missing_document(self):
        store = PostgresDocumentStore(_make_pool())
        assert await store.get(uuid.uuid4()) is None

    async def test_get_validates_row(self):
        document = Document(
            matter_id=MATTER_ID,
            title="will.pdf",
            provider_file_id="file-1",
            folder_path="/Acme Corp/Estate Plan",
            created_at=NOW,
        )
        pool = _make_pool(fetchrow_returns=[document.model_dump()])

        assert await PostgresDocumentStore(pool).get(document.id) == document
        assert pool.fetchrow.await_args.args[1] == document.id

    @pytest.mark.parametrize(("tag", "expected"), [("UPDATE 1", True), ("UPDATE 0", False)])
    async def test_set_status_reports_written_row(self, tag, expected):
        pool = _make_pool(execute_returns=[tag])
        document_id = uuid.uuid4()

        assert await PostgresDocumentStore(pool).set_status(document_id, "deleted") is expected
        assert pool.execute.await_args.args[1:] == (document_id, "deleted")


class TestPracticeDirectory:
    async def test_list_practices_requires_token(self):
        row = {
            "id": PRACTICE_ID,
            "name": "Smith & Co",
            "google_refresh_token": "rt-1",
            "google_calendar_id": "primary",
        }
        pool = _make_pool(fetch_returns=[[row]])

        practices = await PostgresPracticeDirectory(pool).list_practices()

        assert [p.id for p in practices] == [PRACTICE_ID]
        assert "google_refresh_token IS NOT NULL" in pool.fetch.await_args.args[0]

    async def test_list_matters_excludes_closed_stages(self):
        row = {
            "id": MATTER_ID,
            "practice_id": PRACTICE_ID,
            "title": "Estate Plan",
            "client_id": uuid.uuid4(),
            "client_name": "Acme Corp",
            "stage": "Active",
        }
        pool = _make_pool(fetch_returns=[[row]])

        matters = await PostgresPracticeDirectory(pool).list_matters(PRACTICE_ID)

        assert matters[0].eligible_for_sync
        sql = pool.fetch.await_args.args[0]
        assert "client_id IS NOT NULL" in sql
        assert "'Completed', 'Archived'" in sql

    async def test_get_matter_missing(self):
        directory = PostgresPracticeDirectory(_make_pool())
        assert await directory.get_matter(MATTER_ID) is None
