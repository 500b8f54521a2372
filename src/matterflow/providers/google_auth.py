"""Token-scoped Google API clients.

``open_google_clients`` builds a fresh ``httpx.AsyncClient`` and a fresh OAuth
token holder for one practice's refresh token and closes them on exit.
Nothing is cached across practices or requests.

All HTTP outcomes are classified here, once, into the error taxonomy of
``matterflow.core.errors``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx

from matterflow.config import ConfigError, Settings, SyncSettings
from matterflow.core.errors import (
    AuthenticationError,
    RecordValidationError,
    RemoteNotFoundError,
    SyncError,
    TransientSyncError,
    redact_credential_values,
)
from matterflow.core.metrics import metrics

if TYPE_CHECKING:
    from matterflow.providers.google_calendar import GoogleCalendarClient
    from matterflow.providers.google_drive import GoogleDriveClient

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
NOT_FOUND_STATUS_CODES = frozenset({404, 409, 410, 412})
_DEFAULT_EXPIRES_IN_SECONDS = 3600


def safe_google_error_message(response: httpx.Response) -> str:
    """Extract a short, credential-free error message from a Google response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    message: str | None = None
    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            candidate = error_payload.get("message")
            if isinstance(candidate, str) and candidate.strip():
                message = candidate
        elif isinstance(error_payload, str) and error_payload.strip():
            message = error_payload
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                message = f"{error_payload}: {description}"

    if message is None:
        message = response.text.strip() or "Request failed without an error payload"
    return " ".join(redact_credential_values(message).split())[:200]


def classify_response(response: httpx.Response, *, operation: str) -> SyncError:
    """Translate a non-2xx response into a classified sync error."""
    status = response.status_code
    detail = f"{operation} failed ({status}): {safe_google_error_message(response)}"
    if status in TRANSIENT_STATUS_CODES or status >= 500:
        return TransientSyncError(detail, status_code=status)
    if status in (401, 403):
        return AuthenticationError(detail, status_code=status)
    if status in NOT_FOUND_STATUS_CODES:
        return RemoteNotFoundError(detail, status_code=status)
    return RecordValidationError(detail, status_code=status)


def json_payload(response: httpx.Response, *, operation: str) -> dict[str, Any]:
    """Decode a successful response body as a JSON object."""
    if response.status_code == 204 or not response.content:
        return {}
    try:
        payload = response.json()
    except ValueError as exc:
        raise RecordValidationError(f"{operation} returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise RecordValidationError(f"{operation} returned an unexpected JSON payload shape")
    return payload


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return _DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else _DEFAULT_EXPIRES_IN_SECONDS
    return _DEFAULT_EXPIRES_IN_SECONDS


class GoogleOAuthClient:
    """Refresh-token OAuth helper with access-token caching."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        http_client: httpx.AsyncClient,
        token_url: str,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._http_client = http_client
        self._token_url = token_url
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        try:
            response = await self._http_client.post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": self._refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            metrics.record_provider_call("google_oauth", "token.refresh", "error")
            raise TransientSyncError(
                f"Google OAuth token refresh request failed: {type(exc).__name__}"
            ) from exc

        metrics.record_provider_call("google_oauth", "token.refresh", str(response.status_code))
        if response.status_code < 200 or response.status_code >= 300:
            message = safe_google_error_message(response)
            if response.status_code in TRANSIENT_STATUS_CODES or response.status_code >= 500:
                raise TransientSyncError(
                    f"Google OAuth token refresh failed ({response.status_code}): {message}",
                    status_code=response.status_code,
                )
            raise AuthenticationError(
                f"Google OAuth token refresh rejected ({response.status_code}): {message}",
                status_code=response.status_code,
            )

        payload = json_payload(response, operation="token.refresh")
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthenticationError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in_seconds = _coerce_expires_in_seconds(payload.get("expires_in"))
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(expires_in_seconds - 60, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)


class GoogleSession:
    """Authenticated request helper shared by the Calendar and Drive clients.

    Retry policy: a 401 triggers one forced token refresh. A 429/5xx response
    is retried ``transient_retries`` times (at most once) after a short
    backoff, honouring ``Retry-After`` up to ``max_retry_after_seconds``.
    Timeouts and network errors are never retried within a run.
    """

    def __init__(
        self,
        oauth: GoogleOAuthClient,
        http_client: httpx.AsyncClient,
        sync_settings: SyncSettings,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._oauth = oauth
        self._http_client = http_client
        self._settings = sync_settings
        self._sleep = sleep

    async def request(
        self,
        method: str,
        url: str,
        *,
        provider: str,
        operation: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send an authenticated request and return the final response.

        Non-2xx responses are returned to the caller, which decides whether a
        status is meaningful (e.g. 404 on delete) before calling
        ``classify_response``. A 401/403 that survives a forced refresh is
        raised as ``AuthenticationError`` here.
        """
        kwargs = {
            "params": params,
            "json_body": json_body,
            "content": content,
            "headers": headers,
            "provider": provider,
            "operation": operation,
        }
        response = await self._request_once(method, url, force_refresh=False, **kwargs)

        if response.status_code == 401:
            response = await self._request_once(method, url, force_refresh=True, **kwargs)

        retry = 0
        while (
            response.status_code in TRANSIENT_STATUS_CODES
            and retry < self._settings.transient_retries
        ):
            backoff = self._backoff_seconds(response, retry)
            logger.warning(
                "%s transient failure (status=%d), retrying in %.1fs (attempt %d/%d)",
                operation,
                response.status_code,
                backoff,
                retry + 1,
                self._settings.transient_retries,
            )
            await self._sleep(backoff)
            response = await self._request_once(method, url, force_refresh=False, **kwargs)
            retry += 1

        if response.status_code in (401, 403):
            raise classify_response(response, operation=operation)
        return response

    def _backoff_seconds(self, response: httpx.Response, retry: int) -> float:
        backoff = self._settings.retry_backoff_seconds * (2**retry)
        retry_after_header = response.headers.get("Retry-After")
        if retry_after_header is not None:
            try:
                backoff = float(retry_after_header)
            except ValueError:
                logger.debug("Ignoring non-numeric Retry-After header: %s", retry_after_header)
        return max(0.0, min(backoff, self._settings.max_retry_after_seconds))

    async def _request_once(
        self,
        method: str,
        url: str,
        *,
        force_refresh: bool,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        content: bytes | None,
        headers: dict[str, str] | None,
        provider: str,
        operation: str,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        request_headers: dict[str, str] = {"Authorization": f"Bearer {access_token}"}
        if headers:
            request_headers.update(headers)
        try:
            response = await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                content=content,
                headers=request_headers,
            )
        except httpx.TimeoutException as exc:
            metrics.record_provider_call(provider, operation, "timeout")
            raise TransientSyncError(f"{operation} timed out") from exc
        except httpx.HTTPError as exc:
            metrics.record_provider_call(provider, operation, "error")
            raise TransientSyncError(
                f"{operation} request failed: {type(exc).__name__}"
            ) from exc
        metrics.record_provider_call(provider, operation, str(response.status_code))
        return response


@dataclass
class GoogleClients:
    calendar: GoogleCalendarClient
    drive: GoogleDriveClient


@asynccontextmanager
async def open_google_clients(
    refresh_token: str | None,
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncIterator[GoogleClients]:
    """Yield Calendar and Drive clients bound to one practice's refresh token.

    Raises
    ------
    ConfigError
        If the OAuth client id/secret are not configured.
    AuthenticationError
        If *refresh_token* is empty.
    """
    from matterflow.providers.google_calendar import GoogleCalendarClient
    from matterflow.providers.google_drive import GoogleDriveClient

    google = settings.google
    if not google.configured:
        raise ConfigError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be configured")
    if refresh_token is None or not refresh_token.strip():
        raise AuthenticationError("Practice has no Google refresh token")

    http_client = httpx.AsyncClient(
        timeout=settings.sync.request_timeout_seconds,
        transport=transport,
    )
    try:
        oauth = GoogleOAuthClient(
            client_id=str(google.client_id),
            client_secret=str(google.client_secret),
            refresh_token=refresh_token.strip(),
            http_client=http_client,
            token_url=google.token_url,
        )
        session = GoogleSession(oauth, http_client, settings.sync, sleep=sleep)
        yield GoogleClients(
            calendar=GoogleCalendarClient(session, base_url=google.calendar_base_url),
            drive=GoogleDriveClient(
                session,
                base_url=google.drive_base_url,
                upload_url=google.drive_upload_url,
            ),
        )
    finally:
        await http_client.aclose()
