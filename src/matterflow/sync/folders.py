"""Matter folder provisioning on Google Drive.

Layout::

    /<client name>/<matter title>/
        00 Intake
        01 Source Docs
        02 Work Product
        03 Client Deliverables
        04 Billing & Engagement
        99 Archive

Exactly one caller provisions a matter. A caller claims the matter by
inserting a ``provisioning`` row (unique on matter id); a concurrent caller
that hits the uniqueness constraint waits for the winner instead of creating
folders. A claim older than ``claim_timeout_seconds`` can be taken over with
a compare-and-set on its token. The root folder is found by name before it is
created, so a crashed claim's folder is reused.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from matterflow.core.errors import RecordValidationError, TransientSyncError
from matterflow.core.metrics import metrics
from matterflow.storage.base import DuplicateRecordError, FolderStore
from matterflow.sync.models import (
    STANDARD_SUBFOLDERS,
    STRUCTURE_VERSION,
    FolderStatus,
    MatterFolderRecord,
)

if TYPE_CHECKING:
    from matterflow.providers.google_drive import GoogleDriveClient

logger = logging.getLogger(__name__)

DEFAULT_CLAIM_TIMEOUT_SECONDS = 300.0
DEFAULT_WAIT_TIMEOUT_SECONDS = 30.0
DEFAULT_POLL_INTERVAL_SECONDS = 0.5
# Marks a released claim as immediately stale.
_RELEASED_CLAIM_AT = datetime(1970, 1, 1, tzinfo=UTC)


def require_folder_name(value: str, field_name: str) -> str:
    """Collapse runs of whitespace; blank names are rejected."""
    normalized = " ".join((value or "").split())
    if not normalized:
        raise RecordValidationError(f"{field_name} must be a non-empty string")
    return normalized


class FolderProvisioner:
    def __init__(
        self,
        drive: GoogleDriveClient,
        store: FolderStore,
        *,
        claim_timeout_seconds: float = DEFAULT_CLAIM_TIMEOUT_SECONDS,
        wait_timeout_seconds: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._drive = drive
        self._store = store
        self._claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self._wait_timeout_seconds = wait_timeout_seconds
        self._poll_interval_seconds = poll_interval_seconds
        self._clock = clock
        self._sleep = sleep

    async def ensure(
        self, matter_id: uuid.UUID, client_name: str, matter_title: str
    ) -> MatterFolderRecord:
        """Return the matter's folder record, provisioning it on first need."""
        client_name = require_folder_name(client_name, "client_name")
        matter_title = require_folder_name(matter_title, "matter_title")

        record = await self._store.get(matter_id)
        if record is not None and record.ready:
            return await self._upgrade_if_needed(record)

        if record is None:
            token = uuid.uuid4()
            claim = MatterFolderRecord(
                matter_id=matter_id,
                status=FolderStatus.PROVISIONING,
                claim_token=token,
                claimed_at=self._clock(),
            )
            try:
                await self._store.insert_claim(claim)
            except DuplicateRecordError:
                logger.debug("Matter %s is being provisioned by another caller", matter_id)
            else:
                return await self._provision(claim, client_name, matter_title)

        return await self._wait_for_winner(matter_id, client_name, matter_title)

    async def _wait_for_winner(
        self, matter_id: uuid.UUID, client_name: str, matter_title: str
    ) -> MatterFolderRecord:
        waited = 0.0
        while True:
            record = await self._store.get(matter_id)
            if record is None:
                raise TransientSyncError(f"Folder claim for matter {matter_id} disappeared")
            if record.ready:
                return await self._upgrade_if_needed(record)

            if self._claim_is_stale(record):
                new_token = uuid.uuid4()
                claimed_at = self._clock()
                if await self._store.take_over_claim(
                    matter_id, record.claim_token, new_token, claimed_at
                ):
                    logger.warning("Took over stale folder claim for matter %s", matter_id)
                    claim = record.model_copy(
                        update={"claim_token": new_token, "claimed_at": claimed_at}
                    )
                    return await self._provision(claim, client_name, matter_title)
                continue

            if waited >= self._wait_timeout_seconds:
                raise TransientSyncError(
                    f"Folder provisioning for matter {matter_id} is still in progress"
                )
            await self._sleep(self._poll_interval_seconds)
            waited += self._poll_interval_seconds

    def _claim_is_stale(self, record: MatterFolderRecord) -> bool:
        if record.claimed_at is None:
            return True
        return self._clock() - record.claimed_at >= self._claim_timeout

    async def _provision(
        self, claim: MatterFolderRecord, client_name: str, matter_title: str
    ) -> MatterFolderRecord:
        token = claim.claim_token
        assert token is not None
        try:
            client_folder = await self._drive.get_or_create_folder(client_name)
            root_folder = await self._drive.get_or_create_folder(matter_title, client_folder.id)
            structure: dict[str, str] = {}
            for name in STANDARD_SUBFOLDERS:
                subfolder = await self._drive.get_or_create_folder(name, root_folder.id)
                structure[name] = subfolder.id
        except Exception:
            # Let the next caller take over without waiting out the timeout.
            await self._store.take_over_claim(claim.matter_id, token, token, _RELEASED_CLAIM_AT)
            metrics.record_item("folders", "error")
            raise

        record = claim.model_copy(
            update={
                "client_folder_id": client_folder.id,
                "root_folder_id": root_folder.id,
                "root_folder_link": root_folder.web_view_link,
                "folder_structure": structure,
                "structure_version": STRUCTURE_VERSION,
                "status": FolderStatus.READY,
                "claim_token": None,
                "claimed_at": None,
            }
        )
        if not await self._store.save(record, expected_claim_token=token):
            logger.warning(
                "Lost folder claim for matter %s; using the winner's record", claim.matter_id
            )
            current = await self._store.get(claim.matter_id)
            if current is not None and current.ready:
                return current
            raise TransientSyncError(f"Folder claim for matter {claim.matter_id} was taken over")

        metrics.record_item("folders", "synced")
        logger.info("Provisioned folders for matter %s", claim.matter_id)
        return record

    async def _upgrade_if_needed(self, record: MatterFolderRecord) -> MatterFolderRecord:
        missing = [name for name in STANDARD_SUBFOLDERS if name not in record.folder_structure]
        if record.structure_version >= STRUCTURE_VERSION and not missing:
            return record

        assert record.root_folder_id is not None
        structure = dict(record.folder_structure)
        for name in missing:
            subfolder = await self._drive.get_or_create_folder(name, record.root_folder_id)
            structure[name] = subfolder.id
        upgraded = record.model_copy(
            update={"folder_structure": structure, "structure_version": STRUCTURE_VERSION}
        )
        await self._store.save(upgraded)
        logger.info(
            "Upgraded folder structure for matter %s (%d subfolder(s) added)",
            record.matter_id,
            len(missing),
        )
        return upgraded
