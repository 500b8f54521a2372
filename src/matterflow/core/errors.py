"""Error taxonomy shared by the provider adapters and the sync engine.

Provider adapters translate raw HTTP outcomes into one of five kinds so that
sync logic never inspects status codes or provider error payloads:

- ``transient``: network failure, timeout, 429, 5xx
- ``authentication``: the practice credential was rejected
- ``not_found``: the remote resource is missing or stale
- ``invalidated``: the incremental-sync cursor is no longer accepted
- ``validation``: a malformed local record or provider payload
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Any


class SyncErrorKind(StrEnum):
    TRANSIENT = "transient"
    AUTHENTICATION = "authentication"
    NOT_FOUND = "not_found"
    INVALIDATED = "invalidated"
    VALIDATION = "validation"


class SyncError(RuntimeError):
    """Base class for classified sync failures."""

    kind: SyncErrorKind = SyncErrorKind.TRANSIENT

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class TransientSyncError(SyncError):
    """Raised for failures that the next scheduled run may not hit again."""

    kind = SyncErrorKind.TRANSIENT


class AuthenticationError(SyncError):
    """Raised when the provider rejects the practice credential."""

    kind = SyncErrorKind.AUTHENTICATION


class RemoteNotFoundError(SyncError):
    """Raised when a remote resource is gone or its version is stale."""

    kind = SyncErrorKind.NOT_FOUND


class CursorInvalidatedError(SyncError):
    """Raised when the provider no longer accepts a sync cursor; a full resync is required."""

    kind = SyncErrorKind.INVALIDATED


class RecordValidationError(SyncError):
    """Raised when a local record or provider payload cannot be mapped."""

    kind = SyncErrorKind.VALIDATION


_MAX_ERROR_MESSAGE_LENGTH = 200


def redact_credential_values(message: str) -> str:
    """Redact token/secret values from an error message."""
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # Authorization headers
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._\-~+/]+=*", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_error_message(exc: BaseException) -> str:
    """Return a redacted, whitespace-normalized message truncated to 200 chars."""
    raw_message = str(exc) or type(exc).__name__
    redacted = redact_credential_values(raw_message)
    return " ".join(redacted.split())[:_MAX_ERROR_MESSAGE_LENGTH]


def error_kind(exc: BaseException) -> SyncErrorKind:
    """Classify any exception; unclassified failures count as transient."""
    if isinstance(exc, SyncError):
        return exc.kind
    return SyncErrorKind.TRANSIENT


def build_error_entry(
    exc: BaseException,
    *,
    practice_id: Any = None,
    matter_id: Any = None,
    event_id: Any = None,
    operation: str | None = None,
) -> dict[str, Any]:
    """Build a structured, credential-safe error entry for batch summaries."""
    return {
        "practice_id": str(practice_id) if practice_id is not None else None,
        "matter_id": str(matter_id) if matter_id is not None else None,
        "event_id": str(event_id) if event_id is not None else None,
        "operation": operation,
        "kind": error_kind(exc).value,
        "error_type": type(exc).__name__,
        "message": sanitize_error_message(exc),
    }
