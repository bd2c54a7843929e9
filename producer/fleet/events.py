"""Inbound event router.

Binds transport events to the reconciler, the registries and the pending
command table. Events name devices by ``streamId``; the router looks the id
up in the streamer registry first, then the recorder registry. Events for
ids no registry knows are dropped.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from producer.fleet.commands import CommandDispatcher
from producer.fleet.models import DeviceStatus, normalize_status
from producer.fleet.reconciler import DiscoveryReconciler
from producer.fleet.registry import EntityRegistry
from producer.transport.base import PRESENCE_ENTER, PRESENCE_LEAVE, PRESENCE_UPDATE, TransportMessage
from producer.transport.supervisor import TransportSupervisor

logger = logging.getLogger(__name__)

# event -> (settings key on the wire, settings key locally, confirmed command)
SETTING_EVENTS: dict[str, tuple[str, str, str]] = {
    "bitrate-changed": ("bitrate", "bitrate", "CHANGE_BITRATE"),
    "codec-changed": ("codec", "codec", "CHANGE_CODEC"),
    "resolution-changed": ("resolution", "resolution", "CHANGE_RESOLUTION"),
    "framerate-changed": ("framerate", "framerate", "CHANGE_FRAMERATE"),
    "studio-sound-changed": ("studioSound", "studio_sound", "TOGGLE_STUDIO_SOUND"),
}


def parse_device_update(data: dict[str, Any]) -> dict[str, Any]:
    """Turn a device-channel device update into a registry partial.

    Accepts both the flat format (``videoDevices`` / ``audioDevices``) and
    the nested ``allDevices`` format; nested lists win when both are sent.
    """
    devices: dict[str, dict[str, Any]] = {"video": {}, "audio": {}}
    for media in ("video", "audio"):
        current_id = data.get(f"{media}DeviceId")
        if current_id:
            devices[media]["current_id"] = current_id
            devices[media]["current_label"] = data.get(f"{media}DeviceLabel") or "Unknown"
        flat = data.get(f"{media}Devices")
        if isinstance(flat, list):
            devices[media]["available"] = flat
        nested = (data.get("allDevices") or {}).get(f"{media}Devices")
        if isinstance(nested, list):
            devices[media]["available"] = nested
    return {"devices": {k: v for k, v in devices.items() if v}}


class FleetEventRouter:
    """Wires supervisor events to fleet state.

    Args:
        supervisor:  Event source.
        reconciler:  Receives discovery signals.
        streamers:   Dispatcher for the streamer registry.
        recorders:   Dispatcher for the recorder registry.
    """

    def __init__(
        self,
        supervisor: TransportSupervisor,
        reconciler: DiscoveryReconciler,
        streamers: CommandDispatcher,
        recorders: CommandDispatcher,
    ) -> None:
        self.supervisor = supervisor
        self.reconciler = reconciler
        self.dispatchers = (streamers, recorders)
        self._bound: list[tuple[str, Callable[[TransportMessage], Any]]] = []
        self._presence_bound = False

    def bind(self) -> None:
        """Register every handler on the supervisor (idempotent)."""
        if self._bound:
            return
        table: dict[str, Callable[[TransportMessage], Any]] = {
            "stream-registered": self._on_registered,
            "participant-joined": self._on_participant,
            "room-streams-response": self._on_room_streams,
            "stream-status-update": self._on_status,
            "stream-removed": self._on_removed,
            "whip-endpoint-changed": self._on_endpoint_changed,
            "device-changed": self._on_device_changed,
            "recording-progress": self._on_progress,
            "command-ack": self._on_ack,
            "device:jitsi-device-update": self._on_device_update,
            "device:jitsi-mute-update": self._on_mute_update,
        }
        for event in SETTING_EVENTS:
            table[event] = self._on_setting
        for event, handler in table.items():
            self.supervisor.on(event, handler)
            self._bound.append((event, handler))

        if self._presence_bound:
            return
        self._presence_bound = True
        self.supervisor.subscribe_to_presence(PRESENCE_ENTER, self.reconciler.apply_presence)
        self.supervisor.subscribe_to_presence(PRESENCE_UPDATE, self.reconciler.apply_presence)
        self.supervisor.subscribe_to_presence(PRESENCE_LEAVE, self.reconciler.apply_presence_leave)

    def unbind(self) -> None:
        for event, handler in self._bound:
            self.supervisor.off(event, handler)
        self._bound.clear()

    # ------------------------------------------------------------------ #
    # Lookup / confirmation                                                #
    # ------------------------------------------------------------------ #

    def _locate(self, data: dict[str, Any]) -> tuple[EntityRegistry, CommandDispatcher] | None:
        device_id = data.get("streamId")
        for dispatcher in self.dispatchers:
            if device_id and device_id in dispatcher.registry:
                return dispatcher.registry, dispatcher
        logger.debug("Event for unknown device %s ignored", device_id)
        return None

    def _confirm(self, dispatcher: CommandDispatcher, data: dict[str, Any], *commands: str) -> None:
        request_id = data.get("requestId")
        if request_id and dispatcher.owns_request(str(request_id)):
            dispatcher.acknowledge(str(request_id))
            return
        for command in commands:
            dispatcher.clear_pending(data["streamId"], command)

    # ------------------------------------------------------------------ #
    # Discovery events                                                     #
    # ------------------------------------------------------------------ #

    def _on_registered(self, message: TransportMessage) -> None:
        self.reconciler.apply_registration(message.data)

    def _on_participant(self, message: TransportMessage) -> None:
        self.reconciler.apply_participant(message.data)

    def _on_room_streams(self, message: TransportMessage) -> None:
        self.reconciler.apply_room_streams(message.data)

    # ------------------------------------------------------------------ #
    # State events                                                         #
    # ------------------------------------------------------------------ #

    def _on_status(self, message: TransportMessage) -> None:
        data = message.data
        found = self._locate(data)
        if found is None:
            return
        registry, dispatcher = found
        if data.get("status") is None:
            logger.debug("Status update for %s without status, ignored", data["streamId"])
            return
        status = normalize_status(data["status"])
        registry.update_entity(data["streamId"], {"status": status})
        logger.info("Status: %s -> %s", data["streamId"], data.get("status"))
        if status is DeviceStatus.ACTIVE:
            self._confirm(dispatcher, data, "START_STREAM", "START_RECORDING")
        else:
            self._confirm(dispatcher, data, "STOP_STREAM", "STOP_RECORDING")

    def _on_removed(self, message: TransportMessage) -> None:
        found = self._locate(message.data)
        if found is not None:
            found[0].remove_entity(message.data["streamId"])

    def _on_setting(self, message: TransportMessage) -> None:
        wire_key, local_key, command = SETTING_EVENTS[message.name]
        data = message.data
        found = self._locate(data)
        if found is None or wire_key not in data:
            return
        registry, dispatcher = found
        registry.update_entity(data["streamId"], {"settings": {local_key: data[wire_key]}})
        logger.info("%s: %s -> %s", message.name, data["streamId"], data[wire_key])
        self._confirm(dispatcher, data, command)

    def _on_endpoint_changed(self, message: TransportMessage) -> None:
        data = message.data
        found = self._locate(data)
        if found is None or not data.get("newEndpoint"):
            return
        registry, dispatcher = found
        registry.update_entity(
            data["streamId"], {"settings": {"publish_endpoint": data["newEndpoint"]}}
        )
        logger.info("Publish endpoint confirmed for %s: %s", data["streamId"], data["newEndpoint"])
        if data.get("streamActive"):
            logger.warning("Stream active for %s, restart required for new endpoint", data["streamId"])
        self._confirm(dispatcher, data, "CHANGE_WHIP_ENDPOINT")

    def _on_device_changed(self, message: TransportMessage) -> None:
        data = message.data
        media = data.get("deviceType")
        found = self._locate(data)
        if found is None or media not in ("video", "audio"):
            return
        registry, dispatcher = found
        registry.update_entity(data["streamId"], {
            "devices": {media: {
                "current_id": data.get("deviceId"),
                "current_label": data.get("deviceLabel"),
            }},
        })
        self._confirm(dispatcher, data, f"CHANGE_{media.upper()}_DEVICE")

    def _on_progress(self, message: TransportMessage) -> None:
        data = message.data
        found = self._locate(data)
        if found is None:
            return
        upload: dict[str, Any] = {}
        for wire_key, local_key in (
            ("completedUploads", "completed"),
            ("totalSegments", "total"),
            ("progress", "progress"),
        ):
            if data.get(wire_key) is not None:
                upload[local_key] = data[wire_key]
        found[0].update_entity(data["streamId"], {"upload": upload})

    def _on_ack(self, message: TransportMessage) -> None:
        data = message.data
        request_id = data.get("requestId")
        if request_id:
            for dispatcher in self.dispatchers:
                if dispatcher.acknowledge(str(request_id)):
                    return
        found = self._locate(data)
        if found is not None and data.get("command"):
            found[1].clear_pending(data["streamId"], str(data["command"]))

    # ------------------------------------------------------------------ #
    # Device channel                                                       #
    # ------------------------------------------------------------------ #

    def _on_device_update(self, message: TransportMessage) -> None:
        data = message.data
        found = self._locate(data)
        if found is None:
            return
        partial = parse_device_update(data)
        if partial["devices"]:
            found[0].update_entity(data["streamId"], partial)
        logger.info(
            "Device update from %s: audio=%s video=%s",
            data["streamId"],
            data.get("audioDeviceLabel") or "unknown",
            data.get("videoDeviceLabel") or "unknown",
        )

    def _on_mute_update(self, message: TransportMessage) -> None:
        data = message.data
        found = self._locate(data)
        if found is None:
            return
        registry, dispatcher = found
        settings: dict[str, Any] = {}
        confirmed: list[str] = []
        if data.get("audioMuted") is not None:
            settings["audio_muted"] = bool(data["audioMuted"])
            confirmed.append("TOGGLE_AUDIO_MUTE")
        if data.get("videoMuted") is not None:
            settings["video_muted"] = bool(data["videoMuted"])
            confirmed.append("TOGGLE_VIDEO_MUTE")
        if not settings:
            return
        registry.update_entity(data["streamId"], {"settings": settings})
        self._confirm(dispatcher, data, *confirmed)
