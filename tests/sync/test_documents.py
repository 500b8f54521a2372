"""Tests for filename sanitizing, upload validation and document filing."""

from __future__ import annotations

import uuid

import pytest

from matterflow.core.errors import RecordValidationError, TransientSyncError
from matterflow.sync.documents import (
    DELETED_STATUS,
    MAX_FILE_SIZE_BYTES,
    DocumentFiler,
    resolve_folder,
    sanitize_filename,
    validate_upload,
)
from matterflow.sync.folders import FolderProvisioner
from matterflow.sync.models import Document, DocumentUpload, FolderStatus, MatterFolderRecord

pytestmark = pytest.mark.unit

MATTER_ID = uuid.UUID("55555555-5555-4555-8555-555555555555")


class TestSanitizeFilename:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("engagement letter.pdf", "engagement letter.pdf"),
            ("../../etc/passwd.txt", "etcpasswd.txt"),
            ("C:\\Users\\me\\notes.docx", "C:Usersmenotes.docx"),
            ("\x00evil\n.pdf", "evil.pdf"),
            (".hidden.pdf", "hidden.pdf"),
            ("", "unnamed"),
            ("...", "unnamed"),
        ],
    )
    def test_sanitizes(self, raw, expected):
        assert sanitize_filename(raw) == expected

    def test_truncation_keeps_extension(self):
        name = sanitize_filename("a" * 300 + ".pdf")
        assert len(name) == 255
        assert name.endswith(".pdf")


class TestValidateUpload:
    def test_accepts_allowed_file(self):
        validate_upload("will.pdf", b"%PDF", "application/pdf")

    def test_rejects_empty_file(self):
        with pytest.raises(RecordValidationError, match="empty"):
            validate_upload("will.pdf", b"", None)

    def test_rejects_oversized_file(self):
        with pytest.raises(RecordValidationError, match="too large"):
            validate_upload("will.pdf", b"x" * (MAX_FILE_SIZE_BYTES + 1), None)

    def test_rejects_disallowed_extension(self):
        with pytest.raises(RecordValidationError, match=r"\.exe"):
            validate_upload("setup.exe", b"MZ", None)

    def test_rejects_missing_extension(self):
        with pytest.raises(RecordValidationError, match="unknown"):
            validate_upload("README", b"hi", None)

    def test_rejects_disallowed_mime_type(self):
        with pytest.raises(RecordValidationError, match="MIME"):
            validate_upload("will.pdf", b"MZ", "application/x-msdownload")


class TestResolveFolder:
    @pytest.fixture
    def record(self) -> MatterFolderRecord:
        return MatterFolderRecord(
            matter_id=MATTER_ID,
            root_folder_id="root",
            folder_structure={"00 Intake": "intake", "01 Source Docs": "source"},
            status=FolderStatus.READY,
        )

    def test_exact_match(self, record):
        assert resolve_folder(record, "00 Intake") == ("00 Intake", "intake")

    def test_underscores_and_case_are_ignored(self, record):
        assert resolve_folder(record, "01_source_docs") == ("01 Source Docs", "source")

    def test_unknown_classification_falls_back_to_root(self, record):
        assert resolve_folder(record, "Correspondence") == (None, "root")


class TestDocumentFiler:
    @pytest.fixture
    def filer(self, fake_drive, folder_store, document_store, clock) -> DocumentFiler:
        folders = FolderProvisioner(fake_drive, folder_store, clock=clock)
        return DocumentFiler(fake_drive, folders, document_store)

    def _upload(self, **overrides) -> DocumentUpload:
        values = {
            "matter_id": MATTER_ID,
            "client_name": "Acme Corp",
            "matter_title": "Estate Plan",
            "filename": "will.pdf",
            "content": b"%PDF-1.7",
        }
        values.update(overrides)
        return DocumentUpload(**values)

    async def test_files_into_default_folder(self, filer, fake_drive, folder_store):
        document = await filer.file(self._upload(description="Draft will"))

        record = await folder_store.get(MATTER_ID)
        upload = fake_drive.uploads[0]
        assert upload["parent_id"] == record.folder_structure["01 Source Docs"]
        assert upload["mime_type"] == "application/pdf"
        assert upload["description"] == "Draft will"
        assert document.folder_path == "/Acme Corp/Estate Plan/01 Source Docs"
        assert document.version == 1
        assert document.provider_file_id == upload["id"]
        assert document.size_bytes == len(b"%PDF-1.7")
        assert document.web_view_link.endswith("/view")

    async def test_same_title_gets_next_version(self, filer, document_store):
        await filer.file(self._upload())
        second = await filer.file(self._upload(content=b"%PDF-1.7 revised"))

        assert second.version == 2
        assert len(document_store.documents) == 2

    async def test_versions_are_per_folder(self, filer):
        await filer.file(self._upload())
        other = await filer.file(self._upload(folder="00 Intake"))

        assert other.version == 1
        assert other.folder_path == "/Acme Corp/Estate Plan/00 Intake"

    async def test_unknown_folder_files_into_matter_root(self, filer, fake_drive, folder_store):
        document = await filer.file(self._upload(folder="Correspondence"))

        record = await folder_store.get(MATTER_ID)
        assert fake_drive.uploads[0]["parent_id"] == record.root_folder_id
        assert document.folder_path == "/Acme Corp/Estate Plan"

    async def test_filename_is_sanitized(self, filer, fake_drive):
        document = await filer.file(self._upload(filename="../secret/plan.docx"))

        assert document.title == "secretplan.docx"
        assert fake_drive.uploads[0]["name"] == "secretplan.docx"

    async def test_explicit_mime_type_is_kept(self, filer, fake_drive):
        await filer.file(self._upload(filename="scan.png", mime_type="image/png"))
        assert fake_drive.uploads[0]["mime_type"] == "image/png"

    async def test_invalid_upload_touches_nothing(self, filer, fake_drive, folder_store):
        with pytest.raises(RecordValidationError):
            await filer.file(self._upload(filename="payload.exe"))

        assert fake_drive.created == []
        assert fake_drive.uploads == []
        assert await folder_store.get(MATTER_ID) is None

    async def test_folder_path_collapses_whitespace(self, filer):
        document = await filer.file(
            self._upload(client_name="  Acme   Corp ", matter_title="Estate\tPlan")
        )

        assert document.folder_path == "/Acme Corp/Estate Plan/01 Source Docs"

    async def test_whitespace_variants_share_a_version_slot(self, filer):
        await filer.file(self._upload())
        second = await filer.file(self._upload(client_name="Acme  Corp"))

        assert second.version == 2


class TestDocumentDelete:
    @pytest.fixture
    def filer(self, fake_drive, folder_store, document_store, clock) -> DocumentFiler:
        folders = FolderProvisioner(fake_drive, folder_store, clock=clock)
        return DocumentFiler(fake_drive, folders, document_store)

    async def _filed(self, filer) -> Document:
        return await filer.file(
            DocumentUpload(
                matter_id=MATTER_ID,
                client_name="Acme Corp",
                matter_title="Estate Plan",
                filename="will.pdf",
                content=b"%PDF-1.7",
            )
        )

    async def test_removes_file_and_marks_record(self, filer, fake_drive, document_store):
        document = await self._filed(filer)

        deleted = await filer.delete(document)

        assert deleted.status == DELETED_STATUS
        assert fake_drive.deleted == [document.provider_file_id]
        assert fake_drive.uploads == []
        assert (await document_store.get(document.id)).status == DELETED_STATUS

    async def test_file_already_gone_still_marks_record(self, filer, fake_drive, document_store):
        document = await self._filed(filer)
        fake_drive.uploads.clear()

        deleted = await filer.delete(document)

        assert deleted.status == DELETED_STATUS
        assert fake_drive.deleted == []
        assert (await document_store.get(document.id)).status == DELETED_STATUS

    async def test_drive_failure_leaves_record_untouched(self, filer, fake_drive, document_store):
        document = await self._filed(filer)
        fake_drive.delete_failure = TransientSyncError("files.delete failed (503)", status_code=503)

        with pytest.raises(TransientSyncError):
            await filer.delete(document)

        assert (await document_store.get(document.id)).status == "uploaded"

    async def test_deleted_document_is_not_deleted_again(self, filer, fake_drive):
        document = await self._filed(filer)
        deleted = await filer.delete(document)

        assert await filer.delete(deleted) == deleted
        assert fake_drive.deleted == [document.provider_file_id]

    async def test_version_numbers_survive_deletion(self, filer):
        document = await self._filed(filer)
        await filer.delete(document)

        replacement = await self._filed(filer)

        assert replacement.version == 2
