"""Tests for the operator API (FastAPI TestClient on an in-memory transport)."""

from __future__ import annotations

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from conftest import FakeBackend
from producer.api import _drain
from producer.config import ConsoleConfig
from producer.server import create_app
from producer.session import ConsoleSession


@pytest.fixture
def session():
    return ConsoleSession(ConsoleConfig(), backend=FakeBackend())


@pytest.fixture
def client(session):
    with TestClient(create_app(session)) as client:
        yield client


@pytest.fixture
def live(client):
    resp = client.post("/session/connect", json={"room": "studio"})
    assert resp.status_code == 200
    return client


class TestSessionRoutes:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "transport": "disconnected"}

    def test_connect(self, client, session):
        resp = client.post("/session/connect", json={"room": "studio"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["room"] == "studio"
        assert body["client_id"].startswith("device-controller-")
        assert client.get("/session").json()["state"] == "connected"

    def test_connect_empty_room(self, client):
        resp = client.post("/session/connect", json={"room": "  "})
        assert resp.status_code == 502

    def test_discover_not_connected(self, client):
        assert client.post("/session/discover").status_code == 409

    def test_disconnect(self, live, session):
        session.streamers.add_entity("cam1")
        assert live.post("/session/disconnect").json() == {"ok": True}
        assert live.get("/devices").json() == {"devices": []}


class TestDeviceRoutes:
    def test_list_by_kind(self, live, session):
        session.streamers.add_entity("cam1")
        session.recorders.add_entity("mac1")
        all_ids = [d["id"] for d in live.get("/devices").json()["devices"]]
        assert all_ids == ["cam1", "mac1"]
        recorders = live.get("/devices", params={"kind": "recorder"}).json()["devices"]
        assert [d["id"] for d in recorders] == ["mac1"]
        assert live.get("/devices", params={"kind": "camera"}).status_code == 400

    def test_get_device(self, live, session):
        session.streamers.add_entity("cam1", {"name": "Cam 1"})
        body = live.get("/devices/cam1").json()
        assert body["name"] == "Cam 1"
        assert body["settings"]["codec"] == "VP9"
        assert live.get("/devices/ghost").status_code == 404

    def test_send_command(self, live, session):
        session.streamers.add_entity("cam1")
        resp = live.post("/devices/cam1/commands", json={
            "command": "change_bitrate", "payload": {"bitrate": 2500},
        })
        assert resp.status_code == 200
        assert resp.json()["request_id"]
        assert session.streamers.get_entity("cam1").pending_commands == {"CHANGE_BITRATE"}
        sent = session.supervisor.backend.commands("CHANGE_BITRATE")
        assert sent[0]["bitrate"] == 2500

    def test_command_not_for_kind(self, live, session):
        session.streamers.add_entity("cam1")
        resp = live.post("/devices/cam1/commands", json={"command": "start_recording"})
        assert resp.status_code == 400

    def test_command_bad_payload(self, live, session):
        session.streamers.add_entity("cam1")
        resp = live.post("/devices/cam1/commands", json={
            "command": "change_codec", "payload": {"codec": ""},
        })
        assert resp.status_code == 400

    def test_command_unknown_device(self, live):
        resp = live.post("/devices/ghost/commands", json={"command": "start_stream"})
        assert resp.status_code == 404

    def test_command_not_connected(self, client, session):
        session.streamers.add_entity("cam1")
        resp = client.post("/devices/cam1/commands", json={"command": "start_stream"})
        assert resp.status_code == 409


class TestBulkRoutes:
    def test_bulk_action(self, live, session):
        session.streamers.add_entity("cam1")
        session.streamers.add_entity("cam2")
        resp = live.post("/bulk/streamer/set_all_quality", json={"params": {"level": "high"}})
        assert resp.status_code == 200
        assert resp.json() == {"action": "set_all_quality", "sent": ["cam1", "cam2"]}

    def test_bulk_without_body(self, live, session):
        session.recorders.add_entity("mac1")
        resp = live.post("/bulk/recorder/start_all")
        assert resp.json()["sent"] == ["mac1"]

    def test_unknown_action(self, live):
        assert live.post("/bulk/streamer/start_all").status_code == 400
        assert live.post("/bulk/camera/start_all").status_code == 400

    def test_stats(self, live, session):
        session.streamers.add_entity("cam1", {"status": "active"})
        body = live.get("/stats").json()
        assert body["streamers"]["active"] == 1
        assert body["uploads"]["total_segments"] == 0


class TestPreviewRoutes:
    def test_embed_preview(self, live, session):
        session.streamers.add_entity("cam1", {
            "settings": {"publish_endpoint": "https://live.voodoostudios.tv/studio/cam1/whip"},
        })
        resp = live.post("/devices/cam1/preview")
        assert resp.status_code == 200
        body = resp.json()
        assert body["embed"] is True
        assert body["url"] == "https://live.voodoostudios.tv/studio/cam1"
        assert live.get("/preview").json()["state"] == "connected"

        assert live.delete("/preview").json() == {"ok": True}
        assert live.get("/preview").json() == {"state": "idle"}

    def test_preview_unknown_device(self, live):
        assert live.post("/devices/ghost/preview").status_code == 404


class TestFleetStream:
    def test_initial_snapshot(self, live, session):
        session.streamers.add_entity("cam1")
        with live.websocket_connect("/ws/fleet") as ws:
            message = ws.receive_json()
        assert message["event"] == "snapshot"
        assert message["room"] == "studio"
        assert [d["id"] for d in message["streamers"]] == ["cam1"]

    def test_disconnect_detaches_callbacks(self, live, session):
        before = len(session.streamers._callbacks)
        with live.websocket_connect("/ws/fleet") as ws:
            ws.receive_json()
        assert len(session.streamers._callbacks) == before


class _ClosedSocket:
    async def receive_text(self):
        raise WebSocketDisconnect(code=1000)


async def test_drain_ends_quietly_on_client_disconnect():
    await _drain(_ClosedSocket())
