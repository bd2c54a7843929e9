"""Tests for the MQTT backend — topic layout, payload decoding and presence tracking.

No broker is needed: inbound traffic is fed straight into ``_dispatch``.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import aiomqtt
import pytest

from producer.transport.base import TransportMessage
from producer.transport.mqtt import (
    MqttBackend,
    decode_payload,
    message_topic,
    parse_topic,
    presence_topic,
)


class TestTopics:
    def test_message_topic(self):
        assert message_topic("studio", "stream-registered") == "studio/stream-registered"

    def test_presence_topic(self):
        assert presence_topic("studio", "cam1") == "studio/presence/cam1"

    def test_parse_message(self):
        assert parse_topic("studio-devices/jitsi-device-update") == (
            "studio-devices", "jitsi-device-update", None,
        )

    def test_parse_presence(self):
        assert parse_topic("studio/presence/cam1") == ("studio", "presence", "cam1")


class TestDecodePayload:
    @pytest.mark.parametrize("payload", [None, b"", "  ", b"\xff\xfe", "not json", "[1, 2]"])
    def test_rejected(self, payload):
        assert decode_payload(payload) is None

    def test_bytes(self):
        assert decode_payload(b'{"streamId": "cam1"}') == {"streamId": "cam1"}

    def test_dict_passthrough(self):
        assert decode_payload({"a": 1}) == {"a": 1}


class TestUrl:
    def test_plain(self):
        backend = MqttBackend("mqtt://broker.example:1884", "user", "pw")
        assert (backend.hostname, backend.port, backend.tls) == ("broker.example", 1884, False)

    def test_tls_default_port(self):
        backend = MqttBackend("mqtts://broker.example")
        assert backend.tls is True
        assert backend.port == 8883

    def test_bare_host(self):
        backend = MqttBackend("broker.lan")
        assert (backend.hostname, backend.port) == ("broker.lan", 1883)


@pytest.fixture
def sinks():
    backend = MqttBackend()
    on_message, on_presence, on_loss = AsyncMock(), AsyncMock(), AsyncMock()
    backend.set_sinks(on_message, on_presence, on_loss)
    backend._members = {"studio": {}, "studio-devices": {}}
    return backend, on_message, on_presence


class TestDispatch:
    async def test_message(self, sinks):
        backend, on_message, _ = sinks
        await backend._dispatch("studio/bitrate-changed", b'{"streamId": "cam1", "bitrate": 2500}')
        message = on_message.await_args.args[0]
        assert isinstance(message, TransportMessage)
        assert (message.channel, message.name) == ("studio", "bitrate-changed")
        assert message.data == {"streamId": "cam1", "bitrate": 2500}

    async def test_non_json_message_skipped(self, sinks):
        backend, on_message, _ = sinks
        await backend._dispatch("studio/bitrate-changed", b"garbage")
        on_message.assert_not_awaited()

    async def test_presence_enter_update_leave(self, sinks):
        backend, _, on_presence = sinks
        record = b'{"clientId": "spoofed", "data": {"role": "streamer"}}'

        await backend._dispatch("studio/presence/cam1", record)
        event, member = on_presence.await_args.args
        assert event == "enter"
        assert member.client_id == "cam1"
        assert member.data == {"role": "streamer"}
        assert list(backend._members["studio"]) == ["cam1"]

        await backend._dispatch("studio/presence/cam1", record)
        assert on_presence.await_args.args[0] == "update"

        await backend._dispatch("studio/presence/cam1", b"")
        assert on_presence.await_args.args[0] == "leave"
        assert backend._members["studio"] == {}

    async def test_leave_for_unknown_member_ignored(self, sinks):
        backend, _, on_presence = sinks
        await backend._dispatch("studio/presence/ghost", b"")
        on_presence.assert_not_awaited()

    async def test_presence_not_connected(self):
        backend = MqttBackend()
        with pytest.raises(aiomqtt.MqttError):
            await backend.presence("studio")

    async def test_disconnect_without_client_is_noop(self):
        backend = MqttBackend()
        await backend.disconnect()
        await backend.disconnect()
