"""Tests for the practice Google connection check endpoint."""

from __future__ import annotations

import uuid

import pytest

from matterflow.core.errors import AuthenticationError, TransientSyncError
from matterflow.sync.models import Practice

pytestmark = pytest.mark.unit

AUTH = {"Authorization": "Bearer cron-secret"}


def _connection_url(practice_id) -> str:
    return f"/api/practices/{practice_id}/google/connection"


class TestGoogleConnection:
    async def test_requires_bearer(self, client, practice):
        response = await client.get(_connection_url(practice.id))
        assert response.status_code == 401

    async def test_unknown_practice(self, client):
        response = await client.get(_connection_url(uuid.uuid4()), headers=AUTH)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "PRACTICE_NOT_FOUND"

    async def test_connected(self, client, practice, fake_calendar, client_factory):
        response = await client.get(_connection_url(practice.id), headers=AUTH)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["connected"] is True
        assert data["calendar_id"] == "primary"
        assert data["calendar_name"] == "Practice calendar"
        assert data["time_zone"] == "America/Chicago"
        assert data["error"] is None
        assert client_factory.opened == ["rt-1"]
        assert fake_calendar.calls == [("get_calendar", "primary")]

    async def test_practice_without_credential(self, client, directory, client_factory):
        practice = Practice(id=uuid.uuid4(), name="Solo Law")
        directory.practices.append(practice)

        response = await client.get(_connection_url(practice.id), headers=AUTH)

        data = response.json()["data"]
        assert response.status_code == 200
        assert data["connected"] is False
        assert data["error"] == "Google is not connected"
        assert client_factory.opened == []

    async def test_rejected_credential_reports_disconnected(
        self, client, practice, fake_calendar
    ):
        fake_calendar.failures["get_calendar"] = AuthenticationError(
            "calendars.get failed (401): Invalid Credentials", status_code=401
        )

        response = await client.get(_connection_url(practice.id), headers=AUTH)

        data = response.json()["data"]
        assert response.status_code == 200
        assert data["connected"] is False
        assert "Invalid Credentials" in data["error"]

    async def test_revoked_token_reports_disconnected(self, client, practice, provider_error):
        provider_error.exc = AuthenticationError("token revoked", status_code=400)

        response = await client.get(_connection_url(practice.id), headers=AUTH)

        assert response.status_code == 200
        assert response.json()["data"]["connected"] is False

    async def test_provider_outage_is_unavailable(self, client, practice, fake_calendar):
        fake_calendar.failures["get_calendar"] = TransientSyncError(
            "calendars.get failed (503)", status_code=503
        )

        response = await client.get(_connection_url(practice.id), headers=AUTH)

        assert response.status_code == 503
