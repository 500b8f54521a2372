"""Filing uploaded documents into a matter's Drive folders."""

from __future__ import annotations

import logging
import mimetypes
import re
from typing import TYPE_CHECKING

from matterflow.core.errors import RecordValidationError
from matterflow.core.metrics import metrics
from matterflow.storage.base import DocumentStore, DuplicateRecordError
from matterflow.sync.folders import FolderProvisioner, require_folder_name
from matterflow.sync.models import Document, DocumentUpload, MatterFolderRecord

if TYPE_CHECKING:
    from matterflow.providers.google_drive import GoogleDriveClient

logger = logging.getLogger(__name__)

MAX_FILE_SIZE_BYTES = 25 * 1024 * 1024
MAX_FILENAME_LENGTH = 255
DELETED_STATUS = "deleted"

ALLOWED_EXTENSIONS = frozenset(
    {
        "pdf",
        "doc",
        "docx",
        "xls",
        "xlsx",
        "ppt",
        "pptx",
        "txt",
        "csv",
        "rtf",
        "png",
        "jpg",
        "jpeg",
        "gif",
        "webp",
        "heic",
        "svg",
        "tiff",
        "tif",
        "bmp",
    }
)

ALLOWED_MIME_PREFIXES = (
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats",
    "application/vnd.ms-excel",
    "application/vnd.ms-powerpoint",
    "text/",
    "image/",
    "application/rtf",
    "application/csv",
)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_PATH_SEPARATORS = re.compile(r"[/\\]")


def sanitize_filename(filename: str) -> str:
    """Strip control characters, path separators, ``..`` and leading dots.

    Falls back to ``unnamed`` and keeps the extension when truncating to
    255 characters.
    """
    safe = _CONTROL_CHARS.sub("", filename or "")
    safe = _PATH_SEPARATORS.sub("", safe)
    safe = safe.replace("..", "")
    safe = safe.lstrip(".").strip()
    if not safe:
        safe = "unnamed"

    if len(safe) > MAX_FILENAME_LENGTH:
        dot = safe.rfind(".")
        if dot > 0:
            extension = safe[dot:]
            safe = safe[: MAX_FILENAME_LENGTH - len(extension)] + extension
        else:
            safe = safe[:MAX_FILENAME_LENGTH]
    return safe


def validate_upload(filename: str, content: bytes, mime_type: str | None) -> None:
    """Raise ``RecordValidationError`` when the upload is empty, too large or of a
    disallowed type."""
    size = len(content)
    if size > MAX_FILE_SIZE_BYTES:
        raise RecordValidationError(
            f"File too large. Maximum size is {MAX_FILE_SIZE_BYTES // (1024 * 1024)}MB."
        )
    if size == 0:
        raise RecordValidationError("File is empty.")

    extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if extension not in ALLOWED_EXTENSIONS:
        raise RecordValidationError(
            f'File type ".{extension or "unknown"}" is not allowed. '
            f"Accepted types: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
        )

    if mime_type and not mime_type.startswith(ALLOWED_MIME_PREFIXES):
        raise RecordValidationError(f'MIME type "{mime_type}" is not allowed.')


def _folder_key(name: str) -> str:
    return " ".join(name.replace("_", " ").split()).casefold()


def resolve_folder(record: MatterFolderRecord, classification: str) -> tuple[str | None, str]:
    """Find the subfolder for *classification*.

    Matches exactly first, then ignoring case and treating ``_`` as a space
    (so ``01_Source_Docs`` finds ``01 Source Docs``). Falls back to the
    matter root folder, returned with a ``None`` name.
    """
    structure = record.folder_structure
    if classification in structure:
        return classification, structure[classification]
    wanted = _folder_key(classification)
    for name, folder_id in structure.items():
        if _folder_key(name) == wanted:
            return name, folder_id
    if record.root_folder_id is None:
        raise RecordValidationError(f"Matter {record.matter_id} has no root folder")
    logger.debug("No subfolder matches %r; filing into the matter root", classification)
    return None, record.root_folder_id


class DocumentFiler:
    def __init__(
        self,
        drive: GoogleDriveClient,
        folders: FolderProvisioner,
        documents: DocumentStore,
    ) -> None:
        self._drive = drive
        self._folders = folders
        self._documents = documents

    async def file(self, upload: DocumentUpload) -> Document:
        """Validate, upload and record a new document version."""
        title = sanitize_filename(upload.filename)
        validate_upload(title, upload.content, upload.mime_type)
        mime_type = (
            upload.mime_type or mimetypes.guess_type(title)[0] or "application/octet-stream"
        )

        record = await self._folders.ensure(
            upload.matter_id, upload.client_name, upload.matter_title
        )
        folder_name, folder_id = resolve_folder(record, upload.folder)
        parts = [
            "",
            require_folder_name(upload.client_name, "client_name"),
            require_folder_name(upload.matter_title, "matter_title"),
        ]
        if folder_name is not None:
            parts.append(folder_name)
        folder_path = "/".join(parts)

        uploaded = await self._drive.upload_file(
            name=title,
            content=upload.content,
            mime_type=mime_type,
            parent_id=folder_id,
            description=upload.description,
        )

        document: Document | None = None
        for attempt in range(2):
            version = await self._documents.latest_version(upload.matter_id, folder_path, title)
            try:
                document = await self._documents.insert(
                    Document(
                        matter_id=upload.matter_id,
                        task_id=upload.task_id,
                        title=title,
                        provider_file_id=uploaded.id,
                        web_view_link=uploaded.web_view_link,
                        folder_path=folder_path,
                        version=version + 1,
                        mime_type=uploaded.mime_type or mime_type,
                        size_bytes=(
                            uploaded.size if uploaded.size is not None else len(upload.content)
                        ),
                        description=upload.description,
                    )
                )
                break
            except DuplicateRecordError:
                if attempt == 1:
                    raise
                logger.debug("Concurrent version insert for %s; re-reading version", title)

        assert document is not None
        metrics.record_item("documents", "synced")
        logger.info("Filed %s as version %d in %s", title, document.version, folder_path)
        return document

    async def delete(self, document: Document) -> Document:
        """Remove the file from Drive and mark the record ``deleted``.

        A file that is already gone from Drive still counts as deleted.
        """
        if document.status == DELETED_STATUS:
            return document
        if not await self._drive.delete_file(document.provider_file_id):
            logger.info("Drive file %s was already gone", document.provider_file_id)
        if not await self._documents.set_status(document.id, DELETED_STATUS):
            raise RecordValidationError(f"Document {document.id} no longer exists")
        metrics.record_item("documents", "deleted")
        logger.info(
            "Deleted %s version %d from %s", document.title, document.version, document.folder_path
        )
        return document.model_copy(update={"status": DELETED_STATUS})
