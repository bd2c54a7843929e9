"""Tests for ConsoleSession — wiring, connect/disconnect and transport loss."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from conftest import FakeBackend
from producer.config import ConsoleConfig
from producer.fleet.models import DeviceKind, DeviceStatus
from producer.session import ConsoleSession
from producer.transport.base import PresenceMember
from producer.transport.supervisor import ConnectionState


def _inventory(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"items": [{"name": "studio/cam9"}]})


@pytest.fixture
async def session():
    backend = FakeBackend([PresenceMember("p1", {"role": "streamer"})])
    client = httpx.AsyncClient(transport=httpx.MockTransport(_inventory))
    config = ConsoleConfig(
        command_timeout=0.05,
        metadata_first_delay=5,
        metadata_retry_delay=10,
        tick_interval=0.01,
    )
    session = ConsoleSession(config, backend=backend, http_client=client)
    yield session
    await session.aclose()
    await client.aclose()


class TestConnect:
    async def test_connect_applies_presence_snapshot(self, session):
        await session.connect("studio")
        assert session.connected
        assert session.room == "studio"
        assert "p1" in session.streamers
        assert session.ticker.running
        request, = session.supervisor.backend.sent("producer-request")
        assert request["command"] == "GET_ROOM_STREAMS"

    async def test_registries_know_room(self, session):
        await session.connect("studio")
        await session.supervisor.backend.deliver("studio", "stream-registered", {"streamId": "cam1"})
        entity = session.find_entity("cam1")
        assert entity.room == "studio"
        assert entity.settings["publish_endpoint"].endswith("/studio/cam1/whip")

    async def test_disconnect_resets_everything(self, session):
        await session.connect("studio")
        session.recorders.add_entity("mac1")
        await session.recorder_commands.ping("mac1")
        await session.disconnect()

        assert session.supervisor.state is ConnectionState.DISCONNECTED
        assert len(session.streamers) == len(session.recorders) == 0
        assert session.reconciler.deferred_count == 0
        assert not session.ticker.running
        await asyncio.sleep(0.08)
        assert list(session.timeouts) == []

    async def test_reconnect_clears_previous_room(self, session):
        await session.connect("studio")
        session.streamers.add_entity("cam1")
        await session.connect("other")
        assert session.room == "other"
        assert "cam1" not in session.streamers


class TestTransportLoss:
    async def test_loss_clears_state(self, session):
        await session.connect("studio")
        await session.supervisor.backend.lose(ConnectionResetError("reset"))
        assert session.supervisor.state is ConnectionState.FAILED
        assert len(session.streamers) == 0
        assert not session.ticker.running


class TestQueries:
    async def test_discover_uses_inventory(self, session):
        await session.connect("studio")
        summary = await session.discover()
        assert summary["inventory"] == 1
        assert session.streamers.get_entity("cam9").status is DeviceStatus.ACTIVE

    async def test_timeouts_recorded(self, session):
        await session.connect("studio")
        session.streamers.add_entity("cam1")
        await session.streamer_commands.start_stream("cam1")
        await asyncio.sleep(0.1)
        timeout, = session.timeouts
        assert timeout.command == "START_STREAM"
        assert "START_STREAM" in session.snapshot()["timeouts"][0]

    async def test_statistics_and_snapshot(self, session):
        await session.connect("studio")
        session.recorders.add_entity("mac1", {"upload": {"completed": 1, "total": 2}})
        stats = session.statistics()
        assert stats["streamers"]["total"] == 1
        assert stats["uploads"]["overall_progress"] == 50
        snapshot = session.snapshot()
        assert snapshot["state"] == "connected"
        assert [d["id"] for d in snapshot["recorders"]] == ["mac1"]
        assert snapshot["preview"] is None

    async def test_registry_by_kind(self, session):
        assert session.registry("streamer") is session.streamers
        assert session.registry(DeviceKind.RECORDER) is session.recorders

    async def test_refresh(self, session):
        await session.connect("studio")
        session.recorders.add_entity("mac1")
        assert await session.refresh() == ["mac1"]


class TestPublishDefaults:
    def test_custom_publish_suffix(self):
        config = ConsoleConfig(publish_base="https://ingest.example/", publish_suffix="/ingest")
        session = ConsoleSession(config, backend=FakeBackend())
        session.streamers.room = "studio"
        entity = session.streamers.add_entity("cam1")
        assert entity.settings["publish_endpoint"] == "https://ingest.example/studio/cam1/ingest"
