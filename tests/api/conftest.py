"""Shared fixtures for API tests: wired services, app and ASGI client."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

import httpx
import pytest

from matterflow.api.app import create_app
from matterflow.api.deps import AppServices
from matterflow.providers.google_auth import GoogleClients
from matterflow.sync.models import Matter, Practice

CRON_AUTH = {"Authorization": "Bearer cron-secret"}


@pytest.fixture
def provider_error():
    """Set ``provider_error.exc`` to make the client factory raise on open."""

    class _Holder:
        exc: Exception | None = None

    return _Holder()


@pytest.fixture
def client_factory(fake_calendar, fake_drive, provider_error):
    opened: list[str | None] = []

    @asynccontextmanager
    async def factory(refresh_token, settings):
        opened.append(refresh_token)
        if provider_error.exc is not None:
            raise provider_error.exc
        yield GoogleClients(calendar=fake_calendar, drive=fake_drive)

    factory.opened = opened
    return factory


@pytest.fixture
def services(
    settings,
    directory,
    cursor_store,
    event_store,
    folder_store,
    document_store,
    client_factory,
) -> AppServices:
    return AppServices(
        settings=settings,
        directory=directory,
        cursor_store=cursor_store,
        event_store=event_store,
        folder_store=folder_store,
        document_store=document_store,
        client_factory=client_factory,
    )


@pytest.fixture
def app(services):
    return create_app(services.settings, services=services)


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as http_client:
        yield http_client


@pytest.fixture
def practice(directory) -> Practice:
    practice = Practice(id=uuid.uuid4(), name="Smith & Co", google_refresh_token="rt-1")
    directory.practices.append(practice)
    return practice


@pytest.fixture
def matter(directory, practice) -> Matter:
    matter = Matter(
        id=uuid.uuid4(),
        practice_id=practice.id,
        title="Estate Plan",
        client_id=uuid.uuid4(),
        client_name="Acme Corp",
        stage="Active",
    )
    directory.matters.append(matter)
    return matter
