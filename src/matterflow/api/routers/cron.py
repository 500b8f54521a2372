"""Scheduled calendar sync trigger.

``GET|POST /api/cron/calendar-sync`` runs one batch and returns its summary.
An optional ``?matter_id=`` restricts the run to one matter for manual
testing.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request

from matterflow.api.deps import (
    AppServices,
    enforce_rate_limit,
    get_services,
    parse_uuid,
    require_bearer,
)
from matterflow.api.models import ApiMeta, ApiResponse
from matterflow.config import ConfigError
from matterflow.sync.batch import BatchOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])


@router.api_route("/calendar-sync", methods=["GET", "POST"])
async def calendar_sync(
    request: Request,
    matter_id: str | None = None,
    services: AppServices = Depends(get_services),
) -> ApiResponse[dict[str, Any]]:
    """Run one calendar sync batch across every practice (or one matter)."""
    settings = services.settings
    if not settings.cron_secret:
        raise ConfigError("CRON_SECRET is not configured")
    enforce_rate_limit(services.cron_limiter, request, scope="cron")
    require_bearer(request, settings.cron_secret, secret_name="CRON_SECRET")

    target = parse_uuid(matter_id, "matter_id") if matter_id else None
    orchestrator = BatchOrchestrator(
        settings,
        services.directory,
        services.cursor_store,
        services.event_store,
        client_factory=services.client_factory,
        rate_limiter=services.provider_limiter,
    )
    summary = await orchestrator.run(target)
    return ApiResponse[dict[str, Any]](
        data=summary.to_payload(),
        meta=ApiMeta(matter_id=str(target) if target else None),
    )
