"""MQTT pub/sub backend built on aiomqtt.

Topic layout (QoS 0, at-most-once):

  ``{channel}/{event_name}``             JSON message payload
  ``{room}/presence/{client_id}``        retained presence record

A non-empty presence record means the member is present; an empty retained
payload clears it. The broker's last-will publishes that empty record when
the console drops without a clean disconnect.
"""

from __future__ import annotations

import asyncio
import json
import logging
import ssl
from typing import Any
from urllib.parse import urlsplit

import aiomqtt

from producer.transport.base import (
    PRESENCE_ENTER,
    PRESENCE_LEAVE,
    PRESENCE_UPDATE,
    PresenceMember,
    PubSubBackend,
    TransportMessage,
)

logger = logging.getLogger(__name__)

PRESENCE_SEGMENT = "presence"


def message_topic(channel: str, name: str) -> str:
    return f"{channel}/{name}"


def presence_topic(channel: str, client_id: str) -> str:
    return f"{channel}/{PRESENCE_SEGMENT}/{client_id}"


def parse_topic(topic: str) -> tuple[str, str, str | None]:
    """Split a topic into ``(channel, name, presence_client_id)``.

    ``presence_client_id`` is set only for presence records, in which case
    ``name`` is ``"presence"``.
    """
    parts = topic.split("/")
    if len(parts) == 3 and parts[1] == PRESENCE_SEGMENT:
        return parts[0], PRESENCE_SEGMENT, parts[2]
    channel, _, name = topic.partition("/")
    return channel, name, None


def decode_payload(payload: Any) -> dict[str, Any] | None:
    """Decode a JSON object payload; ``None`` for empty or non-object bodies."""
    if payload is None:
        return None
    if isinstance(payload, (bytes, bytearray)):
        if not payload:
            return None
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if isinstance(payload, str):
        if not payload.strip():
            return None
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError:
            return None
    return payload if isinstance(payload, dict) else None


class MqttBackend(PubSubBackend):
    """:class:`PubSubBackend` on an MQTT broker.

    Args:
        url:      ``mqtt://host:port`` or ``mqtts://host:port``.
        username: Broker user name, or None.
        password: Broker password, or None.
    """

    def __init__(
        self,
        url: str = "mqtt://localhost:1883",
        username: str | None = None,
        password: str | None = None,
    ) -> None:
        super().__init__()
        parts = urlsplit(url if "://" in url else f"mqtt://{url}")
        self.tls = parts.scheme in ("mqtts", "ssl", "tls")
        self.hostname = parts.hostname or "localhost"
        self.port = parts.port or (8883 if self.tls else 1883)
        self.username = username
        self.password = password

        self._client: aiomqtt.Client | None = None
        self._receiver: asyncio.Task | None = None
        self._client_id: str | None = None
        self._presence_channel: str | None = None
        self._members: dict[str, dict[str, PresenceMember]] = {}
        self._closing = False

    # ── Lifecycle ──────────────────────────────────────────────────

    async def connect(
        self,
        client_id: str,
        channels: list[str],
        presence_channel: str,
        presence_data: dict[str, Any] | None = None,
    ) -> None:
        await self.disconnect()
        self._closing = False
        self._client_id = client_id
        self._presence_channel = presence_channel
        self._members = {channel: {} for channel in channels}

        will = aiomqtt.Will(
            topic=presence_topic(presence_channel, client_id),
            payload=b"",
            qos=0,
            retain=True,
        )
        client = aiomqtt.Client(
            hostname=self.hostname,
            port=self.port,
            username=self.username,
            password=self.password,
            identifier=client_id,
            will=will,
            tls_context=ssl.create_default_context() if self.tls else None,
        )
        await client.__aenter__()
        self._client = client
        logger.info("Connected to MQTT broker %s:%d", self.hostname, self.port)

        try:
            await client.subscribe([(f"{channel}/#", 0) for channel in channels])
            await client.publish(
                presence_topic(presence_channel, client_id),
                json.dumps(
                    PresenceMember(client_id, presence_data or {}).to_wire()
                ).encode(),
                qos=0,
                retain=True,
            )
        except aiomqtt.MqttError:
            await self.disconnect()
            raise

        self._receiver = asyncio.create_task(self._receive_loop(client))

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        self._closing = True

        if self._presence_channel and self._client_id:
            try:
                await client.publish(
                    presence_topic(self._presence_channel, self._client_id),
                    b"",
                    qos=0,
                    retain=True,
                )
            except aiomqtt.MqttError as exc:
                logger.warning("Presence leave publish failed: %s", exc)

        if self._receiver and not self._receiver.done():
            self._receiver.cancel()
            try:
                await self._receiver
            except asyncio.CancelledError:
                pass
        self._receiver = None

        try:
            await client.__aexit__(None, None, None)
        except aiomqtt.MqttError as exc:
            logger.warning("MQTT disconnect failed: %s", exc)
        else:
            logger.info("Disconnected from MQTT broker")
        self._members = {}

    # ── Publish / presence ─────────────────────────────────────────

    async def publish(self, channel: str, name: str, data: dict[str, Any]) -> None:
        if self._client is None:
            raise aiomqtt.MqttError("Not connected to broker")
        await self._client.publish(
            message_topic(channel, name), json.dumps(data).encode(), qos=0
        )

    async def presence(self, channel: str) -> list[PresenceMember]:
        if self._client is None:
            raise aiomqtt.MqttError("Not connected to broker")
        return list(self._members.get(channel, {}).values())

    # ── Receiver ───────────────────────────────────────────────────

    async def _receive_loop(self, client: aiomqtt.Client) -> None:
        error: Exception | None = None
        try:
            async for message in client.messages:
                try:
                    await self._dispatch(message.topic.value, message.payload)
                except Exception:
                    logger.exception("Failed to dispatch MQTT message on %s", message.topic)
        except asyncio.CancelledError:
            raise
        except aiomqtt.MqttError as exc:
            error = exc
            logger.error("MQTT receive loop ended: %s", exc)

        if not self._closing and self._on_loss is not None:
            await self._on_loss(error)

    async def _dispatch(self, topic: str, payload: Any) -> None:
        channel, name, member_id = parse_topic(topic)
        data = decode_payload(payload)

        if member_id is not None:
            await self._apply_presence(channel, member_id, data)
            return

        if data is None:
            logger.debug("Skipping empty or non-JSON payload on %s", topic)
            return
        if self._on_message is not None:
            await self._on_message(TransportMessage(channel=channel, name=name, data=data))

    async def _apply_presence(
        self, channel: str, client_id: str, record: dict[str, Any] | None
    ) -> None:
        members = self._members.setdefault(channel, {})
        if record is None:
            member = members.pop(client_id, None)
            if member is None:
                return
            event = PRESENCE_LEAVE
        else:
            member = PresenceMember.from_wire({**record, "clientId": client_id})
            event = PRESENCE_UPDATE if client_id in members else PRESENCE_ENTER
            members[client_id] = member

        if self._on_presence is not None:
            await self._on_presence(event, member)
