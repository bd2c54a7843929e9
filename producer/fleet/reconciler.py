"""Discovery reconciler — merges discovery signals into the registries.

Three unordered sources name devices, each with its own authority
(:class:`~producer.fleet.models.DiscoverySource`):

1. registration events, authoritative, always create or update;
2. presence members and ``participant-joined`` events, filtered by role/type;
3. the media-server inventory probe.

An entity is created by the first signal that names it. Later signals of
equal or lower authority only fill fields that are still unset; a strictly
higher source may overwrite identity fields set by a lower one. Entities
created by sources 2 and 3 get a deferred device-metadata request plus one
retry, since remote devices need time to enumerate their hardware.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from producer.errors import ConsoleError, NotConnectedError, PresenceError
from producer.fleet.commands import REQUEST_EVENT, RecorderCommands, StreamerCommands, epoch_ms
from producer.fleet.inventory import InventoryProbe
from producer.fleet.models import DeviceKind, DeviceSession, DeviceStatus, DiscoverySource
from producer.fleet.registry import EntityRegistry
from producer.transport.base import PresenceMember
from producer.transport.supervisor import TransportSupervisor

logger = logging.getLogger(__name__)


def classify_participant(data: dict[str, Any]) -> DeviceKind | None:
    """Kind implied by a presence/participant tag, or None if neither."""
    if data.get("role") == "streamer":
        return DeviceKind.STREAMER
    if data.get("type") == "recorder" or data.get("platform") == "macOS":
        return DeviceKind.RECORDER
    return None


def default_name(kind: DeviceKind, device_id: str) -> str:
    suffix = "Stream" if kind is DeviceKind.STREAMER else "Recorder"
    return f"{device_id}'s {suffix}"


class DiscoveryReconciler:
    """Applies discovery signals to the streamer and recorder registries.

    Args:
        supervisor:        Transport used for discovery requests.
        streamers:         Streamer registry.
        recorders:         Recorder registry.
        streamer_commands: Used for streamer device-list requests.
        recorder_commands: Used for recorder status/device requests.
        probe:             Optional media-server inventory probe.
        first_delay:       Seconds before the first metadata request.
        retry_delay:       Seconds (from creation) before the retry.
    """

    def __init__(
        self,
        supervisor: TransportSupervisor,
        streamers: EntityRegistry,
        recorders: EntityRegistry,
        streamer_commands: StreamerCommands,
        recorder_commands: RecorderCommands,
        probe: InventoryProbe | None = None,
        first_delay: float = 1.0,
        retry_delay: float = 3.0,
    ) -> None:
        self.supervisor = supervisor
        self.streamers = streamers
        self.recorders = recorders
        self.streamer_commands = streamer_commands
        self.recorder_commands = recorder_commands
        self.probe = probe
        self.first_delay = first_delay
        self.retry_delay = retry_delay
        self._deferred: set[asyncio.Task] = set()

    def registry_for(self, kind: DeviceKind) -> EntityRegistry:
        return self.streamers if kind is DeviceKind.STREAMER else self.recorders

    # ------------------------------------------------------------------ #
    # Signals                                                              #
    # ------------------------------------------------------------------ #

    def apply_registration(self, data: dict[str, Any]) -> DeviceSession | None:
        """Handle a ``stream-registered`` announcement."""
        device_id = data.get("streamId")
        if not device_id:
            logger.warning("Registration without streamId ignored")
            return None

        kind = (
            DeviceKind.RECORDER
            if data.get("type") == "recorder" or data.get("platform") == "macOS"
            else DeviceKind.STREAMER
        )
        partial: dict[str, Any] = {
            "name": data.get("streamName") or device_id,
            "status": data.get("status") or DeviceStatus.READY.value,
        }
        if data.get("platform"):
            partial["platform"] = data["platform"]
        if data.get("room"):
            partial["room"] = data["room"]

        logger.info("%s registered: %s", kind.value.capitalize(), device_id)
        return self._apply(kind, str(device_id), partial, DiscoverySource.REGISTRATION)

    def apply_participant(self, data: dict[str, Any]) -> DeviceSession | None:
        """Handle a ``participant-joined`` event or a presence member."""
        device_id = data.get("participantId") or data.get("clientId")
        kind = classify_participant(data)
        if not device_id or kind is None:
            logger.debug("Ignoring participant %s (no device tag)", device_id)
            return None

        device_id = str(device_id)
        partial: dict[str, Any] = {
            "name": data.get("participantName") or default_name(kind, device_id),
            "status": DeviceStatus.READY.value,
        }
        if kind is DeviceKind.RECORDER:
            partial["platform"] = data.get("platform") or "macOS"
        return self._apply(kind, device_id, partial, DiscoverySource.PRESENCE)

    def apply_presence(self, member: PresenceMember) -> DeviceSession | None:
        """Handle a presence ``enter``/``update`` or a snapshot member."""
        return self.apply_participant({"clientId": member.client_id, **member.data})

    def apply_presence_leave(self, member: PresenceMember) -> None:
        for registry in (self.streamers, self.recorders):
            if registry.remove_entity(member.client_id) is not None:
                logger.info("Presence leave: %s", member.client_id)

    def apply_room_streams(self, data: dict[str, Any]) -> list[str]:
        """Handle a ``room-streams-response`` snapshot; creates only absent ids."""
        streams = data.get("streams") or []
        logger.info("Received room streams response: %d stream(s)", len(streams))
        created: list[str] = []
        for stream in streams:
            if not isinstance(stream, dict) or not stream.get("streamId"):
                continue
            device_id = str(stream["streamId"])
            recorder = stream.get("type") == "recorder"
            registry = self.recorders if recorder else self.streamers
            if device_id in registry:
                continue
            partial: dict[str, Any] = {
                "name": stream.get("streamName") or device_id,
                "status": stream.get("status") or DeviceStatus.READY.value,
            }
            if recorder:
                partial["platform"] = stream.get("platform") or "macOS"
            registry.add_entity(device_id, partial, source=DiscoverySource.PRESENCE)
            created.append(device_id)
        return created

    def apply_inventory(self, device_ids: list[str]) -> list[str]:
        """Apply live media paths; returns the ids that were newly created."""
        created: list[str] = []
        for device_id in device_ids:
            known = device_id in self.streamers
            self._apply(
                DeviceKind.STREAMER,
                device_id,
                {"name": device_id, "status": DeviceStatus.ACTIVE.value},
                DiscoverySource.INVENTORY,
            )
            if not known:
                created.append(device_id)
        return created

    # ------------------------------------------------------------------ #
    # Discovery pass                                                       #
    # ------------------------------------------------------------------ #

    async def request_room_streams(self) -> None:
        await self.supervisor.publish(REQUEST_EVENT, {
            "command": "GET_ROOM_STREAMS",
            "room": self.supervisor.room,
            "requestId": epoch_ms(),
            "timestamp": epoch_ms(),
        })
        logger.debug("Requested current room state")

    async def discover(self) -> dict[str, int]:
        """Run every discovery step; a failing step does not stop the others."""
        if not self.supervisor.is_connected:
            raise NotConnectedError("Not connected to any room")
        room = self.supervisor.room
        summary = {"presence": 0, "inventory": 0}

        try:
            await self.request_room_streams()
        except ConsoleError as exc:
            logger.error("Room streams request failed: %s", exc)

        try:
            members = await self.supervisor.get_presence()
        except PresenceError as exc:
            logger.error("Presence check failed: %s", exc)
            members = []
        logger.info("Found %d presence member(s)", len(members))
        for member in members:
            if self.apply_presence(member) is not None:
                summary["presence"] += 1

        for event, source in (
            ("device-controller-ping", "device-controller"),
            ("recorder-discovery-ping", "producer-recorder-control"),
        ):
            try:
                await self.supervisor.publish(
                    event, {"from": source, "room": room, "timestamp": epoch_ms()}
                )
            except ConsoleError as exc:
                logger.error("Discovery ping %s failed: %s", event, exc)

        if self.probe is not None and room:
            try:
                live = await self.probe.probe(room)
            except Exception as exc:
                logger.error("Inventory probe failed: %s", exc)
                live = []
            self.apply_inventory(live)
            summary["inventory"] = len(live)

        summary["streamers"] = len(self.streamers)
        summary["recorders"] = len(self.recorders)
        return summary

    # ------------------------------------------------------------------ #
    # Deferred metadata requests                                           #
    # ------------------------------------------------------------------ #

    def cancel_deferred(self) -> None:
        for task in list(self._deferred):
            task.cancel()
        self._deferred.clear()

    @property
    def deferred_count(self) -> int:
        return len(self._deferred)

    def _schedule_metadata(self, kind: DeviceKind, device_id: str) -> None:
        task = asyncio.ensure_future(self._metadata_requests(kind, device_id))
        self._deferred.add(task)
        task.add_done_callback(self._deferred.discard)

    async def _metadata_requests(self, kind: DeviceKind, device_id: str) -> None:
        await asyncio.sleep(self.first_delay)
        await self._request_metadata(kind, device_id, first=True)
        await asyncio.sleep(max(0.0, self.retry_delay - self.first_delay))
        await self._request_metadata(kind, device_id, first=False)

    async def _request_metadata(self, kind: DeviceKind, device_id: str, first: bool) -> None:
        if device_id not in self.registry_for(kind):
            logger.debug("Skipping metadata request for departed %s", device_id)
            return
        logger.info(
            "Requesting devices %sfor %s", "" if first else "again ", device_id
        )
        try:
            if kind is DeviceKind.STREAMER:
                await self.streamer_commands.request_device_list(device_id)
            else:
                if first:
                    await self.recorder_commands.request_status(device_id)
                await self.recorder_commands.request_devices(device_id)
        except ConsoleError as exc:
            logger.warning("Metadata request for %s failed: %s", device_id, exc)

    # ------------------------------------------------------------------ #
    # Internal                                                             #
    # ------------------------------------------------------------------ #

    def _apply(
        self,
        kind: DeviceKind,
        device_id: str,
        partial: dict[str, Any],
        source: DiscoverySource,
    ) -> DeviceSession | None:
        registry = self.registry_for(kind)
        entity = registry.get_entity(device_id)

        if entity is None:
            entity = registry.add_entity(device_id, partial, source=source)
            if source < DiscoverySource.REGISTRATION:
                self._schedule_metadata(kind, device_id)
            return entity

        if source > entity.authority or source is DiscoverySource.REGISTRATION:
            # Only registrations report a real status; other sources carry a default.
            skip = {"room"} if source is DiscoverySource.REGISTRATION else {"room", "status"}
            update = {k: v for k, v in partial.items() if k not in skip}
            entity = registry.update_entity(device_id, update)
            if entity is not None:
                entity.authority = max(entity.authority, source)
            return entity

        return registry.fill_entity(device_id, partial)
