"""
Unit tests for the operator HTTP API.

Tests cover:
- Read-only routes (health, status, snapshots, logs)
- Trigger, email and restore routes
- Operator token enforcement
- Error status mapping
"""

import asyncio
import tempfile
from pathlib import Path

import pytest
from aiohttp.test_utils import TestClient, TestServer

from classroom.backup_server.api import create_http_app
from classroom.backup_server.config import (
    HttpConfig,
    ObservabilityConfig,
    ScheduleConfig,
    ServerConfig,
    StorageConfig,
)
from classroom.backup_server.delivery import Channel, ChannelResult, DeliveryChannel, DeliveryDispatcher
from classroom.backup_server.subsystem import BackupSubsystem

TOKEN = "operator-secret"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


class BlockingChannel(DeliveryChannel):
    channel = Channel.WEBHOOK

    def __init__(self):
        self.release = asyncio.Event()

    @property
    def configured(self):
        return True

    async def send(self, snapshot, system_stats=None, requested=False):
        await self.release.wait()
        return ChannelResult.ok(self.channel)


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(data_dir, make_database):
    db_path = make_database(data_dir / "classroom.db")
    return ServerConfig(
        storage=StorageConfig(db_path=str(db_path), backup_dir=str(data_dir / "backups")),
        schedule=ScheduleConfig(enabled=False),
        http=HttpConfig(operator_token=TOKEN),
        observability=ObservabilityConfig(backup_log_file=str(data_dir / "backup.log")),
    )


@pytest.fixture
def subsystem(config):
    return BackupSubsystem(config)


@pytest.fixture
async def client(subsystem, config):
    app = create_http_app(subsystem, config.http)
    async with TestClient(TestServer(app)) as client:
        yield client


class TestReadRoutes:
    """Tests for GET routes."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/v1/health")

        assert resp.status == 200
        body = await resp.json()
        assert body["healthy"] is True
        assert body["database"] == "ok"

    @pytest.mark.asyncio
    async def test_health_corrupt_database(self, client, config, corrupt_database):
        corrupt_database(Path(config.storage.db_path))

        resp = await client.get("/v1/health")

        assert resp.status == 503
        assert (await resp.json())["healthy"] is False

    @pytest.mark.asyncio
    async def test_status(self, client):
        resp = await client.get("/v1/backup/status")

        assert resp.status == 200
        body = await resp.json()
        assert body["total_backups"] == 0
        assert body["is_running"] is False
        assert body["auto_backup_enabled"] is False
        assert body["channels"] == {"webhook": False, "s3": False, "email": False}

    @pytest.mark.asyncio
    async def test_snapshots_and_logs_after_trigger(self, client):
        resp = await client.post("/v1/backup/trigger", headers=AUTH)
        assert resp.status == 200

        resp = await client.get("/v1/backup/snapshots")
        body = await resp.json()
        assert body["count"] == 1
        assert body["snapshots"][0]["filename"].startswith("classroom_backup_")

        resp = await client.get("/v1/backup/logs")
        body = await resp.json()
        assert body["enabled"] is True
        assert len(body["lines"]) == 1
        assert "[INFO] success" in body["lines"][0]

    @pytest.mark.asyncio
    async def test_logs_bad_limit(self, client):
        resp = await client.get("/v1/backup/logs?limit=lots")

        assert resp.status == 400


class TestMutatingRoutes:
    """Tests for POST routes."""

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        resp = await client.post("/v1/backup/trigger")

        assert resp.status == 401
        assert (await resp.json())["error_code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_wrong_token(self, client):
        resp = await client.post("/v1/backup/trigger", headers={"Authorization": "Bearer nope"})

        assert resp.status == 401

    @pytest.mark.asyncio
    async def test_trigger_success(self, client, subsystem):
        resp = await client.post("/v1/backup/trigger", json={"force": False}, headers=AUTH)

        assert resp.status == 200
        body = await resp.json()
        assert body["outcome"] == "success"
        assert body["trigger"] == "manual"
        assert subsystem.registry.total_backups == 1

    @pytest.mark.asyncio
    async def test_trigger_unknown_channel(self, client):
        resp = await client.post("/v1/backup/trigger", json={"channels": ["fax"]}, headers=AUTH)

        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_trigger_bad_json(self, client):
        resp = await client.post(
            "/v1/backup/trigger",
            data="{not json",
            headers={**AUTH, "Content-Type": "application/json"},
        )

        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_trigger_failed_run_returns_500(self, client, config, corrupt_database):
        corrupt_database(Path(config.storage.db_path))

        resp = await client.post("/v1/backup/trigger", headers=AUTH)

        assert resp.status == 500
        body = await resp.json()
        assert body["outcome"] == "integrity-failed"
        assert body["snapshot"] is None

    @pytest.mark.asyncio
    async def test_email_without_recipient_fails(self, client):
        resp = await client.post("/v1/backup/email", headers=AUTH)

        assert resp.status == 500
        body = await resp.json()
        assert body["outcome"] == "partial-delivery-failure"
        assert body["channel_results"]["email"]["error_code"] == "NO_RECIPIENT_CONFIGURED"
        assert list(body["channel_results"]) == ["email"]

    @pytest.mark.asyncio
    async def test_restore(self, client, subsystem):
        run = await subsystem.trigger_backup()

        resp = await client.post(
            "/v1/backup/restore", json={"snapshot": run.snapshot.filename}, headers=AUTH
        )

        assert resp.status == 200
        body = await resp.json()
        assert body["restored_from"] == str(run.snapshot.path)
        assert ".original_" in body["original_copy"]
        assert Path(body["original_copy"]).exists()

    @pytest.mark.asyncio
    async def test_restore_unknown_snapshot(self, client):
        resp = await client.post(
            "/v1/backup/restore",
            json={"snapshot": "classroom_backup_2020-01-01_00-00-00-000000Z.db"},
            headers=AUTH,
        )

        assert resp.status == 404
        assert (await resp.json())["error_code"] == "SNAPSHOT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_restore_invalid_snapshot(self, client, subsystem):
        subsystem.snapshots.ensure_backup_dir()
        bogus = subsystem.snapshots.backup_dir / "classroom_backup_2020-01-01_00-00-00-000000Z.db"
        bogus.write_bytes(b"garbage")

        resp = await client.post("/v1/backup/restore", json={"snapshot": bogus.name}, headers=AUTH)

        assert resp.status == 400
        assert (await resp.json())["error_code"] == "INVALID_SNAPSHOT"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["../classroom.db", "", None, "a/b.db"])
    async def test_restore_rejects_paths(self, client, name):
        resp = await client.post("/v1/backup/restore", json={"snapshot": name}, headers=AUTH)

        assert resp.status == 400


class TestOverlap:
    """A trigger during an in-flight run is rejected with 409."""

    @pytest.fixture
    def blocking(self):
        return BlockingChannel()

    @pytest.fixture
    def subsystem(self, config, blocking):
        return BackupSubsystem(config, dispatcher=DeliveryDispatcher([blocking]))

    @pytest.mark.asyncio
    async def test_conflict(self, client, subsystem, blocking):
        first = asyncio.create_task(subsystem.trigger_backup())
        for _ in range(500):
            if subsystem.registry.is_running:
                break
            await asyncio.sleep(0.01)

        resp = await client.post("/v1/backup/trigger", headers=AUTH)

        assert resp.status == 409
        assert (await resp.json())["error_code"] == "BACKUP_IN_PROGRESS"

        blocking.release.set()
        run = await first
        assert run.outcome.value == "success"
        assert subsystem.registry.total_backups == 1
