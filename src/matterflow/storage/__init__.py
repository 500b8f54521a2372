"""Persistence protocols and their PostgreSQL implementations."""

from matterflow.storage.base import (
    CursorStore,
    DocumentStore,
    DuplicateRecordError,
    EventStore,
    FolderStore,
    PracticeDirectory,
)
from matterflow.storage.postgres import (
    PostgresCursorStore,
    PostgresDocumentStore,
    PostgresEventStore,
    PostgresFolderStore,
    PostgresPracticeDirectory,
)

__all__ = [
    "CursorStore",
    "DocumentStore",
    "DuplicateRecordError",
    "EventStore",
    "FolderStore",
    "PostgresCursorStore",
    "PostgresDocumentStore",
    "PostgresEventStore",
    "PostgresFolderStore",
    "PostgresPracticeDirectory",
    "PracticeDirectory",
]
