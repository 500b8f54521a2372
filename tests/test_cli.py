"""Tests for the click command-line entry point."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from matterflow.cli import cli

pytestmark = pytest.mark.unit


@pytest.fixture
def runner(monkeypatch) -> CliRunner:
    monkeypatch.delenv("MATTERFLOW_CONFIG", raising=False)
    return CliRunner()


def test_version(runner):
    result = runner.invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_sync_rejects_malformed_matter_id(runner):
    result = runner.invoke(cli, ["sync", "--matter-id", "nope"])

    assert result.exit_code == 2
    assert "must be a UUID" in result.output


def test_sync_prints_summary(runner):
    matter_id = uuid.uuid4()
    run_batch = AsyncMock(return_value={"mattersProcessed": 1, "errors": []})

    with (
        patch("matterflow.cli._run_batch", run_batch),
        patch("matterflow.cli.configure_logging"),
    ):
        result = runner.invoke(cli, ["sync", "--matter-id", str(matter_id)])

    assert result.exit_code == 0, result.output
    assert '"mattersProcessed": 1' in result.output
    assert run_batch.await_args.args[1] == matter_id


def test_invalid_config_exits_non_zero(runner, tmp_path):
    config = tmp_path / "matterflow.toml"
    config.write_text("[matterflow]\nport = 70000\n")

    result = runner.invoke(cli, ["--config", str(config), "sync"])

    assert result.exit_code == 1
    assert "Configuration error" in result.output


def test_migrate_uses_configured_database(runner, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://app:pw@db:5432/firm")

    with (
        patch("matterflow.migrations.run_migrations") as run_migrations,
        patch("matterflow.cli.configure_logging"),
    ):
        result = runner.invoke(cli, ["migrate", "--no-provision"])

    assert result.exit_code == 0, result.output
    run_migrations.assert_called_once_with("postgresql://app:pw@db:5432/firm")


def test_migrate_provisions_database_first(runner, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://app:pw@db:5432/firm")
    provision = AsyncMock()

    with (
        patch("matterflow.db.Database.provision", provision),
        patch("matterflow.migrations.run_migrations") as run_migrations,
        patch("matterflow.cli.configure_logging"),
    ):
        result = runner.invoke(cli, ["migrate"])

    assert result.exit_code == 0, result.output
    provision.assert_awaited_once()
    run_migrations.assert_called_once()
