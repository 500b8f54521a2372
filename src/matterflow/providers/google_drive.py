"""Google Drive v3 adapter: folder lookup/creation, multipart upload and deletion."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from matterflow.core.errors import RecordValidationError
from matterflow.providers.google_auth import GoogleSession, classify_response, json_payload

logger = logging.getLogger(__name__)

PROVIDER = "google_drive"
FOLDER_MIME = "application/vnd.google-apps.folder"
UPLOAD_FIELDS = "id, name, webViewLink, size, mimeType"
FOLDER_FIELDS = "id, name, parents, webViewLink"


@dataclass(frozen=True)
class DriveFile:
    id: str
    name: str
    web_view_link: str | None = None
    size: int | None = None
    mime_type: str | None = None


def _escape_query_value(value: str) -> str:
    """Escape a literal for use inside a single-quoted Drive query string."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _coerce_size(value: Any) -> int | None:
    # Drive returns size as a decimal string
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def _folder_from_payload(entry: dict[str, Any], name: str) -> DriveFile:
    return DriveFile(
        id=entry["id"],
        name=str(entry.get("name") or name),
        web_view_link=entry.get("webViewLink"),
        mime_type=FOLDER_MIME,
    )


class GoogleDriveClient:
    def __init__(self, session: GoogleSession, *, base_url: str, upload_url: str) -> None:
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._upload_url = upload_url.rstrip("/")

    async def find_folder(self, name: str, parent_id: str | None = None) -> DriveFile | None:
        """Return the non-trashed folder called *name*, or None."""
        clauses = [f"name='{_escape_query_value(name)}'"]
        if parent_id is not None:
            clauses.append(f"'{_escape_query_value(parent_id)}' in parents")
        clauses.append(f"mimeType='{FOLDER_MIME}'")
        clauses.append("trashed=false")

        response = await self._session.request(
            "GET",
            f"{self._base_url}/files",
            provider=PROVIDER,
            operation="files.list",
            params={
                "q": " and ".join(clauses),
                "fields": f"files({FOLDER_FIELDS})",
                "spaces": "drive",
                "pageSize": 10,
            },
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise classify_response(response, operation="files.list")
        files = json_payload(response, operation="files.list").get("files")
        if not isinstance(files, list):
            return None
        for entry in files:
            if isinstance(entry, dict) and isinstance(entry.get("id"), str) and entry["id"]:
                return _folder_from_payload(entry, name)
        return None

    async def create_folder(self, name: str, parent_id: str | None = None) -> DriveFile:
        metadata: dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME}
        if parent_id is not None:
            metadata["parents"] = [parent_id]

        response = await self._session.request(
            "POST",
            f"{self._base_url}/files",
            provider=PROVIDER,
            operation="files.create",
            params={"fields": FOLDER_FIELDS},
            json_body=metadata,
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise classify_response(response, operation="files.create")
        payload = json_payload(response, operation="files.create")
        folder_id = payload.get("id")
        if not isinstance(folder_id, str) or not folder_id:
            raise RecordValidationError(f"Drive did not return an id for folder '{name}'")
        logger.info("Created Drive folder %r (%s)", name, folder_id)
        return _folder_from_payload(payload, name)

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
        """Upload *content* into *parent_id* with a multipart ``files.create``."""
        metadata: dict[str, Any] = {"name": name, "parents": [parent_id]}
        if description:
            metadata["description"] = description

        boundary = f"matterflow-{uuid.uuid4().hex}"
        body = b"".join(
            [
                f"--{boundary}\r\n".encode(),
                b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
                json.dumps(metadata).encode(),
                f"\r\n--{boundary}\r\n".encode(),
                f"Content-Type: {mime_type}\r\n\r\n".encode(),
                content,
                f"\r\n--{boundary}--\r\n".encode(),
            ]
        )

        response = await self._session.request(
            "POST",
            f"{self._upload_url}/files",
            provider=PROVIDER,
            operation="files.upload",
            params={"uploadType": "multipart", "fields": UPLOAD_FIELDS},
            content=body,
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise classify_response(response, operation="files.upload")

        payload = json_payload(response, operation="files.upload")
        file_id = payload.get("id")
        if not isinstance(file_id, str) or not file_id:
            raise RecordValidationError("Drive upload response is missing a file id")
        return DriveFile(
            id=file_id,
            name=str(payload.get("name") or name),
            web_view_link=payload.get("webViewLink"),
            size=_coerce_size(payload.get("size")),
            mime_type=payload.get("mimeType") or mime_type,
        )

    async def delete_file(self, file_id: str) -> bool:
        """Delete a file. Returns False when it was already gone."""
        response = await self._session.request(
            "DELETE",
            f"{self._base_url}/files/{quote(file_id, safe='')}",
            provider=PROVIDER,
            operation="files.delete",
        )
        if response.status_code in (404, 410):
            logger.debug("files.delete: '%s' already gone; treating as success", file_id)
            return False
        if response.status_code < 200 or response.status_code >= 300:
            raise classify_response(response, operation="files.delete")
        return True
