"""Entity registry — canonical in-memory store of device sessions.

One registry exists per device kind. All mutation happens on the event loop
between await points, so no locking is needed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from typing import Any, Callable, Iterable

from producer.fleet.models import (
    SETTINGS_FIELDS,
    DeviceKind,
    DeviceSelection,
    DeviceSession,
    DeviceStatus,
    DiscoverySource,
    MediaDevice,
    default_settings,
    normalize_status,
)

logger = logging.getLogger(__name__)

CHANGE_ADDED = "added"
CHANGE_UPDATED = "updated"
CHANGE_REMOVED = "removed"
CHANGE_CLEARED = "cleared"

ChangeCallback = Callable[[str, DeviceSession | None], Any]


def _merge_selection(selection: DeviceSelection, partial: dict[str, Any]) -> None:
    if "current_id" in partial and partial["current_id"] is not None:
        selection.current_id = str(partial["current_id"])
    if "current_label" in partial and partial["current_label"] is not None:
        selection.current_label = str(partial["current_label"])
    if "available" in partial and partial["available"] is not None:
        devices: list[MediaDevice] = []
        for raw in partial["available"]:
            device = raw if isinstance(raw, MediaDevice) else MediaDevice.from_wire(raw)
            if device is not None:
                devices.append(device)
        selection.available = devices


class EntityRegistry:
    """Device sessions of one kind, keyed by id.

    Args:
        kind:         Device kind held by this registry.
        publish_base: Base URL used for the default publish endpoint.
        clock:        Time source in seconds, injectable for tests.
        publish_suffix: Path suffix of the default publish endpoint.
    """

    def __init__(
        self,
        kind: DeviceKind,
        publish_base: str = "https://stream.voodoostudios.tv",
        clock: Callable[[], float] = time.time,
        publish_suffix: str = "/whip",
    ) -> None:
        self.kind = kind
        self.publish_base = publish_base
        self.publish_suffix = publish_suffix
        self.room = ""
        self._clock = clock
        self._entities: dict[str, DeviceSession] = {}
        self._callbacks: list[ChangeCallback] = []

    # ------------------------------------------------------------------ #
    # Queries                                                              #
    # ------------------------------------------------------------------ #

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._entities

    def get_entity(self, device_id: str) -> DeviceSession | None:
        return self._entities.get(device_id)

    def ids(self) -> list[str]:
        return list(self._entities)

    def entities(self, status: DeviceStatus | None = None) -> list[DeviceSession]:
        if status is None:
            return list(self._entities.values())
        return [e for e in self._entities.values() if e.status is status]

    # ------------------------------------------------------------------ #
    # Mutation                                                             #
    # ------------------------------------------------------------------ #

    def add_entity(
        self,
        device_id: str,
        data: dict[str, Any] | None = None,
        source: DiscoverySource = DiscoverySource.REGISTRATION,
    ) -> DeviceSession:
        """Create *device_id* with defaulted settings; no-op if already present.

        *data* may carry ``name``, ``status``, ``room``, ``platform`` and any
        of the mergeable namespaces (``devices``, ``settings``, ``upload``,
        ``permissions``).
        """
        existing = self._entities.get(device_id)
        if existing is not None:
            logger.debug("add_entity no-op for known %s %s", self.kind.value, device_id)
            return existing

        data = dict(data or {})
        room = str(data.pop("room", "") or self.room)
        now = self._clock()
        entity = DeviceSession(
            id=device_id,
            kind=self.kind,
            room=room,
            name=str(data.pop("name", "") or ""),
            status=normalize_status(data.pop("status", DeviceStatus.READY)),
            settings=default_settings(
                self.kind, room, device_id, self.publish_base, self.publish_suffix
            ),
            platform=data.pop("platform", None),
            last_seen=now,
            authority=source,
        )
        if entity.is_active:
            entity.active_since = now
        self._entities[device_id] = entity
        self._merge(entity, data)

        logger.info(
            "Added %s %s (%s, status=%s, via %s)",
            self.kind.value, device_id, entity.name or "unnamed",
            entity.status.value, source.name.lower(),
        )
        self._notify(CHANGE_ADDED, entity)
        return entity

    def update_entity(self, device_id: str, partial: dict[str, Any]) -> DeviceSession | None:
        """Deep-merge *partial* into *device_id*; unknown ids return ``None``.

        Fields absent from *partial* keep their value. ``devices.video``,
        ``devices.audio``, ``settings``, ``upload`` and ``permissions`` merge
        key-by-key and are never replaced wholesale.
        """
        entity = self._entities.get(device_id)
        if entity is None:
            logger.debug("update_entity ignored for unknown %s %s", self.kind.value, device_id)
            return None

        partial = dict(partial)
        if partial.get("name"):
            entity.name = str(partial.pop("name"))
        if partial.get("platform"):
            entity.platform = str(partial.pop("platform"))
        if "status" in partial:
            self._apply_status(entity, normalize_status(partial.pop("status")))
        self._merge(entity, partial)
        entity.last_seen = self._clock()

        self._notify(CHANGE_UPDATED, entity)
        return entity

    def fill_entity(self, device_id: str, data: dict[str, Any]) -> DeviceSession | None:
        """Set only fields that are still unset on *device_id*.

        Used for lower-authority signals: a populated name, platform or
        current device selection is never overwritten.
        """
        entity = self._entities.get(device_id)
        if entity is None:
            return None

        partial: dict[str, Any] = {}
        if not entity.name and data.get("name"):
            partial["name"] = data["name"]
        if entity.platform is None and data.get("platform"):
            partial["platform"] = data["platform"]

        devices = data.get("devices") or {}
        fill_devices: dict[str, Any] = {}
        for media in ("video", "audio"):
            incoming = devices.get(media) or {}
            current: DeviceSelection = getattr(entity.devices, media)
            selection: dict[str, Any] = {}
            if current.current_id is None and incoming.get("current_id") is not None:
                selection["current_id"] = incoming["current_id"]
                selection["current_label"] = incoming.get("current_label")
            if not current.available and incoming.get("available"):
                selection["available"] = incoming["available"]
            if selection:
                fill_devices[media] = selection
        if fill_devices:
            partial["devices"] = fill_devices

        if not partial:
            entity.last_seen = self._clock()
            return entity
        return self.update_entity(device_id, partial)

    def remove_entity(self, device_id: str) -> DeviceSession | None:
        entity = self._entities.pop(device_id, None)
        if entity is not None:
            logger.info("Removed %s %s", self.kind.value, device_id)
            self._notify(CHANGE_REMOVED, entity)
        return entity

    def clear(self) -> None:
        count = len(self._entities)
        self._entities.clear()
        if count:
            logger.info("Cleared %d %s(s)", count, self.kind.value)
        self._notify(CHANGE_CLEARED, None)

    # ------------------------------------------------------------------ #
    # Pending commands                                                     #
    # ------------------------------------------------------------------ #

    def mark_pending(self, device_id: str, command: str) -> bool:
        entity = self._entities.get(device_id)
        if entity is None:
            return False
        entity.pending_commands.add(command)
        self._notify(CHANGE_UPDATED, entity)
        return True

    def clear_pending(self, device_id: str, command: str) -> bool:
        entity = self._entities.get(device_id)
        if entity is None or command not in entity.pending_commands:
            return False
        entity.pending_commands.discard(command)
        self._notify(CHANGE_UPDATED, entity)
        return True

    # ------------------------------------------------------------------ #
    # Timing and aggregates                                                #
    # ------------------------------------------------------------------ #

    def tick(self, now: float | None = None) -> int:
        """Recompute ``elapsed`` (whole seconds) for every active entity."""
        now = self._clock() if now is None else now
        ticked = 0
        for entity in self._entities.values():
            if entity.is_active and entity.active_since is not None:
                entity.elapsed = max(0, int(now - entity.active_since))
                ticked += 1
        return ticked

    def statistics(self) -> dict[str, Any]:
        entities = list(self._entities.values())
        bitrates = [
            e.settings["bitrate"] for e in entities
            if isinstance(e.settings.get("bitrate"), (int, float))
        ]
        resolutions = Counter(
            e.settings["resolution"] for e in entities if e.settings.get("resolution")
        )
        return {
            "total": len(entities),
            "active": sum(1 for e in entities if e.status is DeviceStatus.ACTIVE),
            "ready": sum(1 for e in entities if e.status is DeviceStatus.READY),
            "average_bitrate": round(sum(bitrates) / len(bitrates)) if bitrates else 0,
            "most_common_resolution": (
                resolutions.most_common(1)[0][0] if resolutions else None
            ),
        }

    def upload_statistics(self) -> dict[str, Any]:
        completed = total = active = 0
        for entity in self._entities.values():
            done = int(entity.upload.get("completed") or 0)
            segments = int(entity.upload.get("total") or 0)
            completed += done
            total += segments
            if segments and done < segments:
                active += 1
        return {
            "active_uploads": active,
            "overall_progress": round(completed / total * 100) if total else 0,
            "total_completed": completed,
            "total_segments": total,
        }

    # ------------------------------------------------------------------ #
    # Change notifications                                                 #
    # ------------------------------------------------------------------ #

    def on_change(self, callback: ChangeCallback) -> None:
        """Register ``callback(event, entity)``; ``entity`` is None for clears."""
        self._callbacks.append(callback)

    def remove_change_callback(self, callback: ChangeCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify(self, event: str, entity: DeviceSession | None) -> None:
        for callback in list(self._callbacks):
            try:
                callback(event, entity)
            except Exception:
                logger.exception("Registry change callback failed (%s)", event)

    # ------------------------------------------------------------------ #
    # Internal                                                             #
    # ------------------------------------------------------------------ #

    def _apply_status(self, entity: DeviceSession, status: DeviceStatus) -> None:
        if status is DeviceStatus.ACTIVE:
            if entity.active_since is None:
                entity.active_since = self._clock()
        else:
            entity.active_since = None
            entity.elapsed = 0
        entity.status = status

    def _merge(self, entity: DeviceSession, partial: dict[str, Any]) -> None:
        devices = partial.get("devices")
        if isinstance(devices, dict):
            for media in ("video", "audio"):
                selection = devices.get(media)
                if isinstance(selection, dict):
                    _merge_selection(getattr(entity.devices, media), selection)
        for namespace in SETTINGS_FIELDS:
            values = partial.get(namespace)
            if isinstance(values, dict):
                getattr(entity, namespace).update(values)


class DurationTicker:
    """1 Hz background task recomputing ``elapsed`` on a set of registries."""

    def __init__(self, registries: Iterable[EntityRegistry], interval: float = 1.0) -> None:
        self.registries = list(registries)
        self.interval = interval
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Duration ticker is already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.debug("Duration ticker started (interval=%.1fs)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.debug("Duration ticker stopped")

    def tick_once(self) -> int:
        return sum(registry.tick() for registry in self.registries)

    async def _loop(self) -> None:
        while self._running:
            try:
                self.tick_once()
            except Exception as exc:
                logger.error("Duration tick failed: %s", exc)
            await asyncio.sleep(self.interval)
