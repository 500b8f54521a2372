"""Matter folder provisioning and document filing endpoints.

Provides ``router`` at ``/api/matters/{matter_id}``:

- ``POST /folders``: ensure the matter's Drive folder tree exists.
- ``POST /documents``: multipart upload filed into a matter subfolder.
- ``DELETE /documents/{document_id}``: remove a filed document from Drive.

All require the service bearer secret (``SERVICE_TOKEN``, falling back to
``CRON_SECRET``); the portal calls them on behalf of its signed-in users.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile

from matterflow.api.deps import (
    AppServices,
    enforce_rate_limit,
    get_services,
    parse_uuid,
    require_bearer,
)
from matterflow.api.middleware import ApiError
from matterflow.api.models import ApiResponse, FiledDocument, MatterFolders
from matterflow.core.errors import RecordValidationError
from matterflow.providers.google_drive import GoogleDriveClient
from matterflow.sync.documents import MAX_FILE_SIZE_BYTES, DocumentFiler
from matterflow.sync.folders import FolderProvisioner
from matterflow.sync.models import DEFAULT_DOCUMENT_FOLDER, DocumentUpload, Matter, Practice

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/matters", tags=["matters"])

# Sent by clients that do not know the type; the filer guesses from the name.
_GENERIC_CONTENT_TYPE = "application/octet-stream"


def _authorize(request: Request, services: AppServices) -> None:
    require_bearer(request, services.settings.upload_token, secret_name="SERVICE_TOKEN")


async def _load_matter(services: AppServices, matter_id: str) -> tuple[Matter, Practice]:
    matter = await services.directory.get_matter(parse_uuid(matter_id, "matter_id"))
    if matter is None:
        raise ApiError(404, "MATTER_NOT_FOUND", f"Matter not found: {matter_id}")
    if not matter.client_name:
        raise RecordValidationError(f"Matter {matter_id} has no client")
    practice = await services.directory.get_practice(matter.practice_id)
    if practice is None:
        raise ApiError(404, "PRACTICE_NOT_FOUND", f"Practice not found for matter {matter_id}")
    return matter, practice


def _provisioner(services: AppServices, drive: GoogleDriveClient) -> FolderProvisioner:
    return FolderProvisioner(
        drive,
        services.folder_store,
        claim_timeout_seconds=services.settings.sync.folder_claim_timeout_seconds,
    )


@router.post("/{matter_id}/folders")
async def provision_folders(
    request: Request,
    matter_id: str,
    services: AppServices = Depends(get_services),
) -> ApiResponse[MatterFolders]:
    _authorize(request, services)
    matter, practice = await _load_matter(services, matter_id)
    assert matter.client_name is not None

    factory = services.client_factory
    async with factory(practice.google_refresh_token, services.settings) as clients:
        record = await _provisioner(services, clients.drive).ensure(
            matter.id, matter.client_name, matter.title
        )
    return ApiResponse[MatterFolders](data=MatterFolders.from_record(record))


@router.post("/{matter_id}/documents", status_code=201)
async def upload_document(
    request: Request,
    matter_id: str,
    file: UploadFile = File(...),
    folder: str | None = Form(None),
    task_id: str | None = Form(None),
    description: str | None = Form(None),
    services: AppServices = Depends(get_services),
) -> ApiResponse[FiledDocument]:
    enforce_rate_limit(services.upload_limiter, request, scope="upload")
    _authorize(request, services)
    matter, practice = await _load_matter(services, matter_id)
    assert matter.client_name is not None

    if file.size is not None and file.size > MAX_FILE_SIZE_BYTES:
        raise RecordValidationError(
            f"File too large. Maximum size is {MAX_FILE_SIZE_BYTES // (1024 * 1024)}MB."
        )

    content_type = file.content_type
    if content_type == _GENERIC_CONTENT_TYPE:
        content_type = None
    upload = DocumentUpload(
        matter_id=matter.id,
        client_name=matter.client_name,
        matter_title=matter.title,
        filename=file.filename or "",
        content=await file.read(),
        mime_type=content_type,
        folder=folder or DEFAULT_DOCUMENT_FOLDER,
        task_id=parse_uuid(task_id, "task_id") if task_id else None,
        description=description or None,
    )

    factory = services.client_factory
    async with factory(practice.google_refresh_token, services.settings) as clients:
        filer = DocumentFiler(
            clients.drive, _provisioner(services, clients.drive), services.document_store
        )
        document = await filer.file(upload)
    return ApiResponse[FiledDocument](data=FiledDocument.from_document(document))


@router.delete("/{matter_id}/documents/{document_id}")
async def delete_document(
    request: Request,
    matter_id: str,
    document_id: str,
    services: AppServices = Depends(get_services),
) -> ApiResponse[FiledDocument]:
    _authorize(request, services)
    matter, practice = await _load_matter(services, matter_id)
    document = await services.document_store.get(parse_uuid(document_id, "document_id"))
    if document is None or document.matter_id != matter.id:
        raise ApiError(404, "DOCUMENT_NOT_FOUND", f"Document not found: {document_id}")

    factory = services.client_factory
    async with factory(practice.google_refresh_token, services.settings) as clients:
        filer = DocumentFiler(
            clients.drive, _provisioner(services, clients.drive), services.document_store
        )
        deleted = await filer.delete(document)
    return ApiResponse[FiledDocument](data=FiledDocument.from_document(deleted))
