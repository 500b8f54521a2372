"""Shared Pydantic response models for the HTTP API.

Successful responses follow ``{"data": T, "meta": {...}}``; failures follow
``{"error": {"code": "...", "message": "...", "details": {...}}}``.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from matterflow.sync.models import Document, MatterFolderRecord


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


class ApiResponse[T](BaseModel):
    """Generic API response wrapper."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class MatterFolders(BaseModel):
    """Public view of a provisioned matter folder record."""

    matter_id: str
    client_folder_id: str | None = None
    root_folder_id: str | None = None
    root_folder_link: str | None = None
    folder_structure: dict[str, str] = Field(default_factory=dict)
    structure_version: int = 0

    @classmethod
    def from_record(cls, record: MatterFolderRecord) -> MatterFolders:
        return cls(
            matter_id=str(record.matter_id),
            client_folder_id=record.client_folder_id,
            root_folder_id=record.root_folder_id,
            root_folder_link=record.root_folder_link,
            folder_structure=dict(record.folder_structure),
            structure_version=record.structure_version,
        )


class FiledDocument(BaseModel):
    id: str
    matter_id: str
    task_id: str | None = None
    title: str
    provider_file_id: str
    web_view_link: str | None = None
    folder_path: str
    version: int
    mime_type: str | None = None
    size_bytes: int | None = None
    status: str = "uploaded"

    @classmethod
    def from_document(cls, document: Document) -> FiledDocument:
        return cls(
            id=str(document.id),
            matter_id=str(document.matter_id),
            task_id=str(document.task_id) if document.task_id else None,
            title=document.title,
            provider_file_id=document.provider_file_id,
            web_view_link=document.web_view_link,
            folder_path=document.folder_path,
            version=document.version,
            mime_type=document.mime_type,
            size_bytes=document.size_bytes,
            status=document.status,
        )


class GoogleConnection(BaseModel):
    """Result of checking a practice's Google credential against its calendar."""

    practice_id: str
    connected: bool
    calendar_id: str
    calendar_name: str | None = None
    time_zone: str | None = None
    error: str | None = None
