"""Console session — one connection's worth of fleet state.

A :class:`ConsoleSession` owns the transport supervisor, both registries,
the reconciler, the command sets, the preview negotiator and the duration
ticker, and hands them to each other by reference. Everything it holds is
reset on disconnect.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Any, Callable

import httpx

from producer.config import ConsoleConfig
from producer.errors import CommandTimeout, PresenceError, TransportConnectionError
from producer.fleet.commands import CommandDispatcher, RecorderCommands, StreamerCommands
from producer.fleet.events import FleetEventRouter
from producer.fleet.inventory import InventoryProbe
from producer.fleet.models import DeviceKind, DeviceSession
from producer.fleet.reconciler import DiscoveryReconciler
from producer.fleet.registry import DurationTicker, EntityRegistry
from producer.preview.media import MediaFactory
from producer.preview.negotiator import PreviewNegotiator
from producer.transport.base import PubSubBackend
from producer.transport.mqtt import MqttBackend
from producer.transport.supervisor import ConnectionState, TransportSupervisor

logger = logging.getLogger(__name__)


class ConsoleSession:
    """Per-connection context object.

    Args:
        config:        Console configuration.
        backend:       Pub/sub backend; an :class:`MqttBackend` from
                       ``config`` when omitted.
        media_factory: Media context factory for previews.
        http_client:   Shared HTTP client for the probe and previews.
        clock:         Time source for the registries.
    """

    def __init__(
        self,
        config: ConsoleConfig | None = None,
        backend: PubSubBackend | None = None,
        media_factory: MediaFactory | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or ConsoleConfig()
        cfg = self.config

        if backend is None:
            username, password = cfg.transport_credentials
            backend = MqttBackend(cfg.transport_url, username, password)
        self.supervisor = TransportSupervisor(backend, cfg.replay_buffer_size)

        self.streamers = EntityRegistry(
            DeviceKind.STREAMER, cfg.publish_base, clock, publish_suffix=cfg.publish_suffix
        )
        self.recorders = EntityRegistry(
            DeviceKind.RECORDER, cfg.publish_base, clock, publish_suffix=cfg.publish_suffix
        )

        self.streamer_dispatcher = CommandDispatcher(self.supervisor, self.streamers, cfg.command_timeout)
        self.recorder_dispatcher = CommandDispatcher(self.supervisor, self.recorders, cfg.command_timeout)
        self.streamer_commands = StreamerCommands(self.streamer_dispatcher)
        self.recorder_commands = RecorderCommands(self.recorder_dispatcher)

        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=cfg.http_timeout)
        self.probe = InventoryProbe(cfg.inventory_url, cfg.http_timeout, client=self._http)
        self.reconciler = DiscoveryReconciler(
            self.supervisor,
            self.streamers,
            self.recorders,
            self.streamer_commands,
            self.recorder_commands,
            probe=self.probe,
            first_delay=cfg.metadata_first_delay,
            retry_delay=cfg.metadata_retry_delay,
        )
        self.router = FleetEventRouter(
            self.supervisor, self.reconciler, self.streamer_dispatcher, self.recorder_dispatcher
        )
        self.router.bind()

        self.ticker = DurationTicker([self.streamers, self.recorders], cfg.tick_interval)
        self.preview = PreviewNegotiator(
            self.find_entity, cfg, media_factory=media_factory, client=self._http
        )

        self.timeouts: deque[CommandTimeout] = deque(maxlen=50)
        for dispatcher in (self.streamer_dispatcher, self.recorder_dispatcher):
            dispatcher.on_timeout(self.timeouts.append)
        self.supervisor.on_state_change(self._on_state_change)

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    @property
    def connected(self) -> bool:
        return self.supervisor.is_connected

    @property
    def room(self) -> str | None:
        return self.supervisor.room

    async def connect(self, room: str) -> None:
        """Connect to *room*, start the ticker and apply the presence snapshot."""
        if self.connected:
            await self.disconnect()
        room = (room or "").strip()
        self.streamers.room = room
        self.recorders.room = room

        await self.supervisor.connect(room)
        await self.ticker.start()

        try:
            await self.reconciler.request_room_streams()
        except TransportConnectionError as exc:
            logger.error("Room streams request failed: %s", exc)
        try:
            members = await self.supervisor.get_presence()
        except PresenceError as exc:
            logger.error("Presence check failed: %s", exc)
            members = []
        for member in members:
            self.reconciler.apply_presence(member)
        logger.info("Session ready in %s (%d presence member(s))", room, len(members))

    async def disconnect(self) -> None:
        """Close the preview, cancel scheduled work, clear state, close transport."""
        await self.preview.cleanup_all()
        await self._reset()
        await self.supervisor.disconnect()

    async def aclose(self) -> None:
        if self.connected:
            await self.disconnect()
        await self.preview.aclose()
        if self._owns_http:
            await self._http.aclose()

    async def discover(self) -> dict[str, int]:
        return await self.reconciler.discover()

    async def refresh(self) -> list[str]:
        """Re-request room streams and the status of every recorder."""
        await self.reconciler.request_room_streams()
        return await self.recorder_commands.request_status_all()

    # ------------------------------------------------------------------ #
    # Queries                                                              #
    # ------------------------------------------------------------------ #

    def registry(self, kind: DeviceKind | str) -> EntityRegistry:
        kind = DeviceKind(kind)
        return self.streamers if kind is DeviceKind.STREAMER else self.recorders

    def find_entity(self, device_id: str) -> DeviceSession | None:
        return self.streamers.get_entity(device_id) or self.recorders.get_entity(device_id)

    def statistics(self) -> dict[str, Any]:
        return {
            "streamers": self.streamers.statistics(),
            "recorders": self.recorders.statistics(),
            "uploads": self.recorders.upload_statistics(),
        }

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.supervisor.state.value,
            "room": self.room,
            "client_id": self.supervisor.client_id,
            "streamers": [e.to_dict() for e in self.streamers.entities()],
            "recorders": [e.to_dict() for e in self.recorders.entities()],
            "preview": self.preview.status(),
            "timeouts": [str(t) for t in self.timeouts],
        }

    # ------------------------------------------------------------------ #
    # Internal                                                             #
    # ------------------------------------------------------------------ #

    async def _reset(self) -> None:
        self.reconciler.cancel_deferred()
        self.streamer_dispatcher.cancel_all()
        self.recorder_dispatcher.cancel_all()
        await self.ticker.stop()
        self.streamers.clear()
        self.recorders.clear()

    async def _on_state_change(self, state: ConnectionState) -> None:
        logger.info("Transport state: %s", state.value)
        if state in (ConnectionState.DISCONNECTED, ConnectionState.FAILED) and self.ticker.running:
            # Unexpected transport loss.
            await self.preview.cleanup_all()
            await self._reset()
