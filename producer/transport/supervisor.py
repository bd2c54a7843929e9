"""Transport supervisor — connection lifecycle and event fan-out.

Owns the session with the pub/sub backend and multiplexes the two logical
channels of a room:

  ``{room}``          lifecycle, status and command envelopes
  ``{room}-devices``  device-enumeration sync

Event names prefixed with ``device:`` address the device channel; all other
names address the main channel. Handlers are kept per event name in
registration order and survive reconnects.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import random
import string
import time
from collections import deque
from typing import Any, Callable

from producer.errors import NotConnectedError, PresenceError, TransportConnectionError
from producer.transport.base import PresenceMember, PubSubBackend, TransportMessage

logger = logging.getLogger(__name__)

DEVICE_PREFIX = "device:"
DEVICE_CHANNEL_SUFFIX = "-devices"

Handler = Callable[[TransportMessage], Any]
PresenceCallback = Callable[[PresenceMember], Any]


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


def generate_client_id() -> str:
    """Session identity: ``device-controller-<epoch-ms>-<random>``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"device-controller-{int(time.time() * 1000)}-{suffix}"


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class TransportSupervisor:
    """Connection lifecycle, handler registry and replay buffer.

    Args:
        backend:            The pub/sub backend doing the actual I/O.
        replay_buffer_size: Bound on device-channel messages held while no
                            handler is registered for their event name.
        presence_data:      Data announced in presence for this console.
    """

    def __init__(
        self,
        backend: PubSubBackend,
        replay_buffer_size: int = 100,
        presence_data: dict[str, Any] | None = None,
    ) -> None:
        self.backend = backend
        self.presence_data = presence_data or {"role": "producer"}
        self.state = ConnectionState.DISCONNECTED
        self.room: str | None = None
        self.client_id: str | None = None

        self._handlers: dict[str, list[Handler]] = {}
        self._presence_callbacks: dict[str, list[PresenceCallback]] = {}
        self._state_callbacks: list[Callable[[ConnectionState], Any]] = []
        self._replay: deque[TransportMessage] = deque(maxlen=max(replay_buffer_size, 1))
        # Live device messages held behind a replay still in progress, per name
        self._replaying: dict[str, deque[TransportMessage]] = {}
        self._replay_tasks: set[asyncio.Task] = set()

        self.backend.set_sinks(self._on_message, self._on_presence, self._on_loss)

    # ── Lifecycle ──────────────────────────────────────────────────

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def main_channel(self) -> str | None:
        return self.room

    @property
    def device_channel(self) -> str | None:
        return f"{self.room}{DEVICE_CHANNEL_SUFFIX}" if self.room else None

    async def connect(self, room: str) -> None:
        """Open both channels of *room*; raises TransportConnectionError on failure."""
        room = (room or "").strip()
        if not room:
            raise TransportConnectionError("Room name required")
        if self.is_connected:
            await self.disconnect()

        self.room = room
        self.client_id = generate_client_id()
        await self._set_state(ConnectionState.CONNECTING)
        logger.info("Connecting to room %s as %s", room, self.client_id)

        try:
            await self.backend.connect(
                self.client_id,
                [self.main_channel, self.device_channel],
                presence_channel=self.main_channel,
                presence_data=self.presence_data,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Connection to %s failed: %s", room, exc)
            await self._set_state(ConnectionState.FAILED)
            raise TransportConnectionError(f"Connection failed: {exc}") from exc

        await self._set_state(ConnectionState.CONNECTED)
        logger.info(
            "Connected to %s (%d event handlers live)",
            room, sum(len(h) for h in self._handlers.values()),
        )

    async def disconnect(self) -> None:
        """Close the session. Handlers stay registered for the next connect."""
        try:
            await self.backend.disconnect()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error while disconnecting transport: %s", exc)
        self._replay.clear()
        self._replaying.clear()
        for task in list(self._replay_tasks):
            task.cancel()
        self.room = None
        await self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected")

    def on_state_change(self, callback: Callable[[ConnectionState], Any]) -> None:
        """Register a callback invoked with the new :class:`ConnectionState`."""
        self._state_callbacks.append(callback)

    # ── Handlers ───────────────────────────────────────────────────

    def on(self, event_name: str, handler: Handler) -> None:
        """Add *handler* for *event_name* after any existing handlers.

        Device-channel messages buffered for this event name are replayed to
        the new handler in arrival order.
        """
        self._handlers.setdefault(event_name, []).append(handler)
        if event_name.startswith(DEVICE_PREFIX):
            self._schedule_replay(event_name[len(DEVICE_PREFIX):])

    def off(self, event_name: str, handler: Handler | None = None) -> None:
        """Remove *handler* for *event_name*, or every handler when omitted."""
        if handler is None:
            self._handlers.pop(event_name, None)
            return
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._handlers.pop(event_name, None)

    def handlers_for(self, event_name: str) -> list[Handler]:
        return list(self._handlers.get(event_name, []))

    @property
    def buffered(self) -> list[TransportMessage]:
        """Device-channel messages waiting for a handler."""
        return list(self._replay)

    # ── Publishing ─────────────────────────────────────────────────

    async def publish(self, event_name: str, data: dict[str, Any]) -> None:
        """Publish on the main channel."""
        if not self.is_connected or not self.main_channel:
            raise NotConnectedError("Not connected to any channel")
        await self._publish(self.main_channel, event_name, data)

    async def publish_to_device_channel(self, event_name: str, data: dict[str, Any]) -> None:
        """Publish on the device-sync channel."""
        if not self.is_connected or not self.device_channel:
            raise NotConnectedError("Not connected to device channel")
        await self._publish(self.device_channel, event_name, data)

    async def _publish(self, channel: str, event_name: str, data: dict[str, Any]) -> None:
        try:
            await self.backend.publish(channel, event_name, data)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise TransportConnectionError(
                f"Publish of {event_name} to {channel} failed: {exc}"
            ) from exc

    # ── Presence ───────────────────────────────────────────────────

    async def get_presence(self) -> list[PresenceMember]:
        """Members of the main channel, or ``[]`` when no channel is open."""
        if not self.is_connected or not self.main_channel:
            return []
        try:
            return await self.backend.presence(self.main_channel)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise PresenceError(f"Presence query failed: {exc}") from exc

    def subscribe_to_presence(self, event: str, callback: PresenceCallback) -> None:
        """Register *callback* for presence ``enter`` / ``leave`` / ``update``."""
        self._presence_callbacks.setdefault(event, []).append(callback)

    # ── Backend sinks ──────────────────────────────────────────────

    async def _on_message(self, message: TransportMessage) -> None:
        if message.channel == self.device_channel:
            event_name = DEVICE_PREFIX + message.name
            logger.debug("Device channel message [%s]", message.name)
        elif message.channel == self.main_channel:
            event_name = message.name
        else:
            logger.debug("Dropping message for unknown channel %s", message.channel)
            return

        if event_name.startswith(DEVICE_PREFIX) and message.name in self._replaying:
            self._replaying[message.name].append(message)
            return

        handlers = self.handlers_for(event_name)
        if not handlers:
            if event_name.startswith(DEVICE_PREFIX):
                if len(self._replay) == self._replay.maxlen:
                    logger.warning("Replay buffer full, dropping oldest device message")
                self._replay.append(message)
                logger.info("No handler for %s, buffered for replay", message.name)
            return

        await self._deliver(event_name, handlers, message)

    async def _on_presence(self, event: str, member: PresenceMember) -> None:
        if member.client_id == self.client_id:
            return
        for callback in list(self._presence_callbacks.get(event, [])):
            try:
                await _invoke(callback, member)
            except Exception:
                logger.exception("Presence %s callback failed for %s", event, member.client_id)

    async def _on_loss(self, error: Exception | None) -> None:
        if self.state is not ConnectionState.CONNECTED:
            return
        if error is not None:
            logger.error("Transport connection lost: %s", error)
            await self._set_state(ConnectionState.FAILED)
        else:
            logger.warning("Transport disconnected")
            await self._set_state(ConnectionState.DISCONNECTED)

    # ── Internal ───────────────────────────────────────────────────

    async def _deliver(
        self, event_name: str, handlers: list[Handler], message: TransportMessage
    ) -> None:
        for handler in handlers:
            try:
                await _invoke(handler, message)
            except Exception:
                logger.exception("Handler error for %s", event_name)

    def _schedule_replay(self, name: str) -> None:
        if name in self._replaying:
            return
        pending = [m for m in self._replay if m.name == name]
        if not pending:
            return
        for message in pending:
            self._replay.remove(message)
        logger.info("Replaying %d buffered %s message(s)", len(pending), name)
        self._replaying[name] = deque(pending)
        task = asyncio.ensure_future(self._replay_messages(name))
        self._replay_tasks.add(task)
        task.add_done_callback(self._replay_done)

    async def _replay_messages(self, name: str) -> None:
        event_name = DEVICE_PREFIX + name
        queue = self._replaying[name]
        try:
            while queue:
                message = queue.popleft()
                handlers = self.handlers_for(event_name)
                if not handlers:
                    self._replay.append(message)
                    continue
                await self._deliver(event_name, handlers, message)
        finally:
            if self._replaying.get(name) is queue:
                del self._replaying[name]

    def _replay_done(self, task: asyncio.Task) -> None:
        self._replay_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Replay task failed: %s", task.exception())

    async def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        self.state = state
        for callback in list(self._state_callbacks):
            try:
                await _invoke(callback, state)
            except Exception:
                logger.exception("State callback failed for %s", state.value)
