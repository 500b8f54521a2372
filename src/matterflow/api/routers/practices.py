"""Practice-level Google connection check.

``GET /api/practices/{practice_id}/google/connection`` exchanges the
practice's stored refresh token and reads the configured calendar. A
rejected credential is reported as ``connected: false`` rather than an
error so the portal can prompt for reconnection.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from matterflow.api.deps import AppServices, get_services, parse_uuid, require_bearer
from matterflow.api.middleware import ApiError
from matterflow.api.models import ApiResponse, GoogleConnection
from matterflow.core.errors import AuthenticationError, sanitize_error_message

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/practices", tags=["practices"])


@router.get("/{practice_id}/google/connection")
async def check_google_connection(
    request: Request,
    practice_id: str,
    services: AppServices = Depends(get_services),
) -> ApiResponse[GoogleConnection]:
    require_bearer(request, services.settings.upload_token, secret_name="SERVICE_TOKEN")
    practice = await services.directory.get_practice(parse_uuid(practice_id, "practice_id"))
    if practice is None:
        raise ApiError(404, "PRACTICE_NOT_FOUND", f"Practice not found: {practice_id}")

    status = GoogleConnection(
        practice_id=str(practice.id),
        connected=False,
        calendar_id=practice.google_calendar_id,
    )
    if not practice.google_refresh_token:
        status.error = "Google is not connected"
        return ApiResponse[GoogleConnection](data=status)

    factory = services.client_factory
    try:
        async with factory(practice.google_refresh_token, services.settings) as clients:
            calendar = await clients.calendar.get_calendar(practice.google_calendar_id)
    except AuthenticationError as exc:
        logger.warning("Google credential for practice %s was rejected", practice.id)
        status.error = sanitize_error_message(exc)
        return ApiResponse[GoogleConnection](data=status)

    status.connected = True
    status.calendar_name = calendar.get("summary")
    status.time_zone = calendar.get("timeZone")
    return ApiResponse[GoogleConnection](data=status)
