"""Service wiring and request dependencies for the HTTP API.

Provides:
- ``AppServices``: settings, stores, rate limiters and the Google client
  factory shared by every route.
- ``create_services()`` / ``close_services()``: lifespan helpers that own the
  asyncpg pool and the limiter sweepers.
- ``get_services()``: FastAPI dependency returning the wired services.
- ``require_bearer()`` / ``enforce_rate_limit()``: request guards raising
  ``ApiError``.
"""

from __future__ import annotations

import hmac
import logging
import math
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field

from fastapi import Request

from matterflow.api.middleware import ApiError
from matterflow.config import ConfigError, RateLimitRule, Settings
from matterflow.core.rate_limit import RateLimiter, RateLimiterOptions, rate_limit_key
from matterflow.db import Database
from matterflow.providers.google_auth import open_google_clients
from matterflow.storage import (
    CursorStore,
    DocumentStore,
    EventStore,
    FolderStore,
    PostgresCursorStore,
    PostgresDocumentStore,
    PostgresEventStore,
    PostgresFolderStore,
    PostgresPracticeDirectory,
    PracticeDirectory,
)
from matterflow.sync.batch import ClientFactory

logger = logging.getLogger(__name__)


def limiter_for(rule: RateLimitRule) -> RateLimiter:
    return RateLimiter(
        RateLimiterOptions(max_requests=rule.max_requests, window_ms=rule.window_ms)
    )


@dataclass
class AppServices:
    settings: Settings
    directory: PracticeDirectory
    cursor_store: CursorStore
    event_store: EventStore
    folder_store: FolderStore
    document_store: DocumentStore
    client_factory: ClientFactory = open_google_clients
    database: Database | None = None
    cron_limiter: RateLimiter = field(init=False)
    upload_limiter: RateLimiter = field(init=False)
    provider_limiter: RateLimiter = field(init=False)

    def __post_init__(self) -> None:
        limits = self.settings.rate_limits
        self.cron_limiter = limiter_for(limits.cron)
        self.upload_limiter = limiter_for(limits.upload)
        self.provider_limiter = limiter_for(limits.provider)

    @property
    def limiters(self) -> tuple[RateLimiter, ...]:
        return (self.cron_limiter, self.upload_limiter, self.provider_limiter)


async def create_services(
    settings: Settings, env: Mapping[str, str] | None = None
) -> AppServices:
    """Open the database pool and build Postgres-backed services."""
    database = Database.from_env(settings.db_name, env)
    pool = await database.connect()
    services = AppServices(
        settings=settings,
        directory=PostgresPracticeDirectory(pool),
        cursor_store=PostgresCursorStore(pool),
        event_store=PostgresEventStore(pool),
        folder_store=PostgresFolderStore(pool),
        document_store=PostgresDocumentStore(pool),
        database=database,
    )
    for limiter in services.limiters:
        limiter.start()
    return services


async def close_services(services: AppServices) -> None:
    for limiter in services.limiters:
        await limiter.close()
    if services.database is not None:
        await services.database.close()


def get_services(request: Request) -> AppServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Application services not initialized")
    return services


def parse_uuid(value: str, field_name: str) -> uuid.UUID:
    try:
        return uuid.UUID(value.strip())
    except ValueError:
        raise ValueError(f"{field_name} must be a UUID, got {value!r}") from None


def require_bearer(request: Request, secret: str | None, *, secret_name: str) -> None:
    """Reject the request unless it carries ``Authorization: Bearer <secret>``.

    Raises ``ConfigError`` when no secret is configured, before any
    processing happens.
    """
    if not secret:
        raise ConfigError(f"{secret_name} is not configured")
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(
        token.strip().encode(), secret.encode()
    ):
        raise ApiError(401, "UNAUTHORIZED", "Missing or invalid bearer token")


def enforce_rate_limit(limiter: RateLimiter, request: Request, *, scope: str) -> None:
    """Count the request against *limiter*; raise a 429 with ``Retry-After`` when denied."""
    key = f"{scope}:{rate_limit_key(request)}"
    decision = limiter.check(key)
    if decision.allowed:
        return
    retry_after = max(1, math.ceil(decision.retry_after_ms / 1000))
    logger.info("Rate limit exceeded for %s; retry after %ds", key, retry_after)
    raise ApiError(
        429,
        "RATE_LIMITED",
        "Too many requests. Please try again later.",
        headers={"Retry-After": str(retry_after)},
        details={"retry_after_ms": decision.retry_after_ms},
    )
