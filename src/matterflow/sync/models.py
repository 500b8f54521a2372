"""Domain models shared by the sync components and the storage layer."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

STRUCTURE_VERSION = 1

STANDARD_SUBFOLDERS: tuple[str, ...] = (
    "00 Intake",
    "01 Source Docs",
    "02 Work Product",
    "03 Client Deliverables",
    "04 Billing & Engagement",
    "99 Archive",
)

DEFAULT_DOCUMENT_FOLDER = "01 Source Docs"
INELIGIBLE_MATTER_STAGES = frozenset({"Completed", "Archived"})


class EventType(StrEnum):
    MANUAL = "manual"
    TASK_DUE = "task_due"
    SCHEDULED_CALL = "scheduled_call"
    DEADLINE = "deadline"
    COURT_DATE = "court_date"
    MEETING = "meeting"


class SyncStatus(StrEnum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"
    LOCAL_ONLY = "local_only"


class FolderStatus(StrEnum):
    PROVISIONING = "provisioning"
    READY = "ready"


class Practice(BaseModel):
    """A tenant and its single shared provider credential."""

    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID
    name: str | None = None
    google_refresh_token: str | None = None
    google_calendar_id: str = "primary"


class Matter(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID
    practice_id: uuid.UUID
    title: str
    client_id: uuid.UUID | None = None
    client_name: str | None = None
    stage: str | None = None

    @property
    def eligible_for_sync(self) -> bool:
        return self.client_id is not None and self.stage not in INELIGIBLE_MATTER_STAGES


class CalendarEvent(BaseModel):
    """A local calendar event row.

    Boundaries are optional at the model level so that malformed rows can be
    loaded and reported by the event mapper instead of failing the whole read.
    """

    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    practice_id: uuid.UUID
    matter_id: uuid.UUID | None = None
    task_id: uuid.UUID | None = None
    title: str = ""
    description: str | None = None
    location: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    all_day: bool = False
    event_type: EventType = EventType.MANUAL
    provider_event_id: str | None = None
    provider_etag: str | None = None
    provider_updated_at: datetime | None = None
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_error: str | None = None
    last_synced_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class RemoteEvent(BaseModel):
    """A calendar resource as seen by the provider, after mapping."""

    model_config = ConfigDict(extra="forbid")

    provider_event_id: str
    etag: str | None = None
    updated_at: datetime | None = None
    cancelled: bool = False
    title: str = ""
    description: str | None = None
    location: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    all_day: bool = False
    matterflow_id: uuid.UUID | None = None
    matter_id: uuid.UUID | None = None
    task_id: uuid.UUID | None = None
    event_type: EventType = EventType.MANUAL


class SyncCursor(BaseModel):
    model_config = ConfigDict(extra="ignore")

    practice_id: uuid.UUID
    calendar_id: str
    sync_token: str
    last_synced_at: datetime

    @field_validator("sync_token")
    @classmethod
    def _non_empty_token(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("sync_token must be a non-empty string")
        return value


class MatterFolderRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    matter_id: uuid.UUID
    client_folder_id: str | None = None
    root_folder_id: str | None = None
    root_folder_link: str | None = None
    folder_structure: dict[str, str] = Field(default_factory=dict)
    structure_version: int = 0
    status: FolderStatus = FolderStatus.PROVISIONING
    claim_token: uuid.UUID | None = None
    claimed_at: datetime | None = None

    @property
    def ready(self) -> bool:
        return self.status == FolderStatus.READY and self.root_folder_id is not None


class Document(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    matter_id: uuid.UUID
    task_id: uuid.UUID | None = None
    title: str
    provider_file_id: str
    web_view_link: str | None = None
    folder_path: str
    version: int = 1
    status: str = "uploaded"
    mime_type: str | None = None
    size_bytes: int | None = None
    description: str | None = None
    created_at: datetime | None = None


class DocumentUpload(BaseModel):
    """An upload request handed to the document filer."""

    model_config = ConfigDict(extra="forbid")

    matter_id: uuid.UUID
    client_name: str
    matter_title: str
    filename: str
    content: bytes
    mime_type: str | None = None
    folder: str = DEFAULT_DOCUMENT_FOLDER
    task_id: uuid.UUID | None = None
    description: str | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class PullResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    events: list[RemoteEvent] = Field(default_factory=list)
    cursor: SyncCursor | None = None
    full_resync: bool = False
    pages: int = 0
    errors: list[dict[str, Any]] = Field(default_factory=list)


class ApplyResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def synced(self) -> int:
        return self.inserted + self.updated + self.deleted


class PushResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    synced: int = 0
    skipped: int = 0
    errors: list[dict[str, Any]] = Field(default_factory=list)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class BatchErrorEntry(_CamelModel):
    practice_id: str | None = None
    matter_id: str | None = None
    event_id: str | None = None
    operation: str | None = None
    kind: str
    error_type: str | None = None
    message: str


class MatterSyncResult(_CamelModel):
    matter_id: str
    title: str
    synced: int = 0
    skipped: int = 0
    error: str | None = None


class BatchSummary(_CamelModel):
    matters_processed: int = 0
    total_synced: int = 0
    total_skipped: int = 0
    practices_processed: int = 0
    errors: list[BatchErrorEntry] = Field(default_factory=list)
    results: list[MatterSyncResult] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
