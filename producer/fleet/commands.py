"""Command dispatch — fire-and-forget commands with soft pending tracking.

Every command goes out on the main channel as a ``producer-command``
envelope::

    {"command": "CHANGE_BITRATE", "streamId": "cam1",
     "timestamp": 1712345678901, "requestId": "…", "bitrate": 2500}

The command kind is added to the device's ``pending_commands`` and expires
after ``timeout`` seconds unless a confirmation clears it first. Expiry is a
soft signal: logged and handed to ``on_timeout`` callbacks, never retried.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from typing import Any, Callable
from urllib.parse import urlsplit

from producer.errors import CommandTimeout, ConsoleError, NotConnectedError, UnknownDeviceError
from producer.fleet.models import DeviceSession, DeviceStatus
from producer.fleet.registry import EntityRegistry
from producer.transport.supervisor import TransportSupervisor

logger = logging.getLogger(__name__)

COMMAND_EVENT = "producer-command"
REQUEST_EVENT = "producer-request"

# Recorder quality presets: bitrate in Mbps.
QUALITY_PRESETS: dict[str, dict[str, Any]] = {
    "4K": {"resolution": "4K", "bitrate": 20, "framerate": 30},
    "1080p": {"resolution": "1080p", "bitrate": 10, "framerate": 30},
    "720p": {"resolution": "720p", "bitrate": 5, "framerate": 30},
    "480p": {"resolution": "480p", "bitrate": 5, "framerate": 24},
}

# Streamer quality levels: bitrate in kbps.
STREAMER_QUALITY_LEVELS: dict[str, int] = {"high": 3000, "low": 1000}


def epoch_ms() -> int:
    return int(time.time() * 1000)


class CommandDispatcher:
    """Publishes commands for one registry and tracks their pending flags.

    Args:
        supervisor: Transport used for publishing.
        registry:   Registry whose entities carry the pending flags.
        timeout:    Seconds before an unconfirmed command expires.
    """

    def __init__(
        self,
        supervisor: TransportSupervisor,
        registry: EntityRegistry,
        timeout: float = 10.0,
    ) -> None:
        self.supervisor = supervisor
        self.registry = registry
        self.timeout = timeout
        self._timers: dict[tuple[str, str], asyncio.TimerHandle] = {}
        self._requests: dict[str, tuple[str, str]] = {}
        self._timeout_callbacks: list[Callable[[CommandTimeout], Any]] = []

    # ── Sending ────────────────────────────────────────────────────

    async def send(
        self,
        device_id: str,
        command: str,
        payload: dict[str, Any] | None = None,
    ) -> str:
        """Publish *command* for *device_id* and mark it pending.

        Returns the ``requestId`` carried by the envelope. Re-sending the same
        (device, command) pair restarts its expiry timer.
        """
        if not self.supervisor.is_connected:
            raise NotConnectedError("Not connected to any room")

        request_id = uuid.uuid4().hex
        envelope = {
            "command": command,
            "streamId": device_id,
            "timestamp": epoch_ms(),
            "requestId": request_id,
            **(payload or {}),
        }
        await self.supervisor.publish(COMMAND_EVENT, envelope)
        logger.info("Sent %s to %s", command, device_id)

        self._track(device_id, command, request_id)
        return request_id

    async def send_to_all(
        self,
        command: str,
        payload: dict[str, Any] | None = None,
        predicate: Callable[[DeviceSession], bool] | None = None,
    ) -> list[str]:
        """Send *command* to every known device (optionally filtered).

        There is no atomicity: a failure for one id is logged and the loop
        carries on. Returns the ids the command was sent to.
        """
        if not self.supervisor.is_connected:
            raise NotConnectedError("Not connected to any room")

        sent: list[str] = []
        for entity in self.registry.entities():
            if predicate is not None and not predicate(entity):
                continue
            try:
                await self.send(entity.id, command, payload)
            except ConsoleError as exc:
                logger.error("Failed to send %s to %s: %s", command, entity.id, exc)
                continue
            sent.append(entity.id)
        return sent

    # ── Confirmation ───────────────────────────────────────────────

    def clear_pending(self, device_id: str, command: str) -> bool:
        """Clear a pending flag after its confirming event was observed."""
        timer = self._timers.pop((device_id, command), None)
        if timer is not None:
            timer.cancel()
        self._forget_requests(device_id, command)
        cleared = self.registry.clear_pending(device_id, command)
        if cleared:
            logger.debug("Confirmed %s for %s", command, device_id)
        return cleared

    def acknowledge(self, request_id: str) -> bool:
        """Clear the pending entry correlated with *request_id*."""
        key = self._requests.get(request_id)
        if key is None:
            return False
        return self.clear_pending(*key)

    def owns_request(self, request_id: str) -> bool:
        return request_id in self._requests

    def pending(self, device_id: str) -> set[str]:
        entity = self.registry.get_entity(device_id)
        return set(entity.pending_commands) if entity else set()

    def on_timeout(self, callback: Callable[[CommandTimeout], Any]) -> None:
        """Register a callback receiving each :class:`CommandTimeout`."""
        self._timeout_callbacks.append(callback)

    def cancel_all(self) -> None:
        """Cancel every pending timer and flag (used on disconnect)."""
        for (device_id, command), timer in list(self._timers.items()):
            timer.cancel()
            self.registry.clear_pending(device_id, command)
        self._timers.clear()
        self._requests.clear()

    # ── Internal ───────────────────────────────────────────────────

    def _track(self, device_id: str, command: str, request_id: str) -> None:
        key = (device_id, command)
        previous = self._timers.pop(key, None)
        if previous is not None:
            previous.cancel()
        self._forget_requests(device_id, command)

        if not self.registry.mark_pending(device_id, command):
            logger.debug("Not tracking %s for unknown device %s", command, device_id)
            return
        self._requests[request_id] = key
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.timeout, self._expire, device_id, command)

    def _forget_requests(self, device_id: str, command: str) -> None:
        for request_id in [r for r, k in self._requests.items() if k == (device_id, command)]:
            del self._requests[request_id]

    def _expire(self, device_id: str, command: str) -> None:
        self._timers.pop((device_id, command), None)
        self._forget_requests(device_id, command)
        if not self.registry.clear_pending(device_id, command):
            return

        timeout = CommandTimeout(device_id, command, self.timeout)
        logger.warning("Command timeout: %s for %s", command, device_id)
        for callback in list(self._timeout_callbacks):
            try:
                result = callback(timeout)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception:
                logger.exception("Timeout callback failed for %s", command)


class _CommandSet:
    def __init__(self, dispatcher: CommandDispatcher) -> None:
        self.dispatcher = dispatcher
        self.registry = dispatcher.registry
        self.supervisor = dispatcher.supervisor

    def _require(self, device_id: str) -> DeviceSession:
        entity = self.registry.get_entity(device_id)
        if entity is None:
            raise UnknownDeviceError(device_id)
        return entity

    async def change_video_device(self, device_id: str, media_device_id: str) -> str:
        if not media_device_id:
            raise ValueError("device id required")
        return await self.dispatcher.send(
            device_id, "CHANGE_VIDEO_DEVICE", {"deviceId": media_device_id}
        )

    async def change_audio_device(self, device_id: str, media_device_id: str) -> str:
        if not media_device_id:
            raise ValueError("device id required")
        return await self.dispatcher.send(
            device_id, "CHANGE_AUDIO_DEVICE", {"deviceId": media_device_id}
        )

    async def change_bitrate(self, device_id: str, bitrate: int | str) -> str:
        return await self.dispatcher.send(
            device_id, "CHANGE_BITRATE", {"bitrate": int(bitrate)}
        )

    async def change_resolution(self, device_id: str, resolution: str) -> str:
        if not resolution:
            raise ValueError("resolution required")
        return await self.dispatcher.send(
            device_id, "CHANGE_RESOLUTION", {"resolution": resolution}
        )

    async def change_framerate(self, device_id: str, framerate: int | str) -> str:
        return await self.dispatcher.send(
            device_id, "CHANGE_FRAMERATE", {"framerate": int(framerate)}
        )


class StreamerCommands(_CommandSet):
    """Remote controls for live streamers."""

    async def toggle_audio_mute(self, device_id: str) -> str:
        muted = not self._require(device_id).settings.get("audio_muted", False)
        logger.info("%s audio for %s", "Muting" if muted else "Unmuting", device_id)
        return await self.dispatcher.send(device_id, "TOGGLE_AUDIO_MUTE", {"muted": muted})

    async def toggle_video_mute(self, device_id: str) -> str:
        muted = not self._require(device_id).settings.get("video_muted", False)
        logger.info("%s video for %s", "Muting" if muted else "Unmuting", device_id)
        return await self.dispatcher.send(device_id, "TOGGLE_VIDEO_MUTE", {"muted": muted})

    async def toggle_studio_sound(self, device_id: str) -> str:
        enabled = not self._require(device_id).settings.get("studio_sound", False)
        return await self.dispatcher.send(
            device_id, "TOGGLE_STUDIO_SOUND", {"studioSound": enabled}
        )

    async def change_codec(self, device_id: str, codec: str) -> str:
        if not codec:
            raise ValueError("codec required")
        return await self.dispatcher.send(device_id, "CHANGE_CODEC", {"codec": codec})

    async def change_publish_endpoint(self, device_id: str, endpoint: str) -> str | None:
        """Point a streamer at a new publish endpoint; ``None`` when unchanged."""
        entity = self._require(device_id)
        endpoint = (endpoint or "").strip()
        if not endpoint:
            raise ValueError("Publish endpoint cannot be empty")
        try:
            parts = urlsplit(endpoint)
            host = parts.hostname
        except ValueError as exc:
            raise ValueError(f"Invalid publish endpoint {endpoint!r}: {exc}") from exc
        if parts.scheme not in ("http", "https") or not host:
            raise ValueError(f"Publish endpoint must be an http(s) URL with a host: {endpoint!r}")
        if endpoint == entity.settings.get("publish_endpoint"):
            logger.info("Publish endpoint unchanged for %s", device_id)
            return None
        self.registry.update_entity(device_id, {"settings": {"publish_endpoint": endpoint}})
        return await self.dispatcher.send(
            device_id, "CHANGE_WHIP_ENDPOINT", {"whipEndpoint": endpoint}
        )

    async def start_stream(self, device_id: str) -> str:
        return await self.dispatcher.send(device_id, "START_STREAM")

    async def stop_stream(self, device_id: str) -> str:
        return await self.dispatcher.send(device_id, "STOP_STREAM")

    async def request_device_list(self, device_id: str) -> None:
        """Ask a streamer to re-announce its devices (not tracked as pending)."""
        await self.supervisor.publish(COMMAND_EVENT, {
            "command": "REQUEST_DEVICE_LIST",
            "streamId": device_id,
            "timestamp": epoch_ms(),
        })
        logger.info("Device request sent to %s", device_id)

    # -- bulk --

    async def mute_all(self) -> list[str]:
        return await self.dispatcher.send_to_all("TOGGLE_AUDIO_MUTE", {"muted": True})

    async def unmute_all(self) -> list[str]:
        return await self.dispatcher.send_to_all("TOGGLE_AUDIO_MUTE", {"muted": False})

    async def toggle_all_studio_sound(self) -> list[str]:
        """Enable studio sound everywhere if any streamer has it off, else disable."""
        enabled = any(not e.settings.get("studio_sound") for e in self.registry.entities())
        sent = await self.dispatcher.send_to_all("TOGGLE_STUDIO_SOUND", {"studioSound": enabled})
        logger.info("%s studio sound for %d streamer(s)", "Enabled" if enabled else "Disabled", len(sent))
        return sent

    async def set_all_quality(self, level: str) -> list[str]:
        if level not in STREAMER_QUALITY_LEVELS:
            raise ValueError(f"Unknown quality level: {level}")
        bitrate = STREAMER_QUALITY_LEVELS[level]
        sent = await self.dispatcher.send_to_all("CHANGE_BITRATE", {"bitrate": bitrate})
        logger.info("Set %s quality (%d kbps) for %d streamer(s)", level, bitrate, len(sent))
        return sent

    async def test_device_sync(self) -> list[str]:
        """Ping the device channel and ask every streamer for its devices."""
        await self.supervisor.publish_to_device_channel("test-sync", {
            "from": "device-controller",
            "timestamp": epoch_ms(),
            "test": True,
        })
        requested: list[str] = []
        for device_id in self.registry.ids():
            try:
                await self.request_device_list(device_id)
            except ConsoleError as exc:
                logger.error("Device request failed for %s: %s", device_id, exc)
                continue
            requested.append(device_id)
        return requested


class RecorderCommands(_CommandSet):
    """Remote controls for recording apps."""

    async def start_recording(self, device_id: str) -> str:
        return await self.dispatcher.send(device_id, "START_RECORDING")

    async def stop_recording(self, device_id: str) -> str:
        return await self.dispatcher.send(device_id, "STOP_RECORDING")

    async def force_stop(self, device_id: str) -> str:
        logger.warning("Force stopping recording for %s", device_id)
        return await self.dispatcher.send(
            device_id, "END_SESSION", {"reason": "Force stopped by producer"}
        )

    async def change_dynamic_range(self, device_id: str, dynamic_range: str) -> str:
        if not dynamic_range:
            raise ValueError("dynamic range required")
        return await self.dispatcher.send(
            device_id, "CHANGE_DYNAMIC_RANGE", {"dynamicRange": dynamic_range}
        )

    async def update_upload_config(self, device_id: str, config: dict[str, Any]) -> str:
        """Send object-storage upload credentials and target path."""
        missing = [k for k in ("access_key", "secret_key", "endpoint") if not config.get(k)]
        if missing:
            raise ValueError(f"Upload config missing: {', '.join(missing)}")
        return await self.dispatcher.send(device_id, "UPDATE_R2_CONFIG", {
            "r2Config": {
                "accessKey": config["access_key"],
                "secretKey": config["secret_key"],
                "endpoint": config["endpoint"],
                "bucketPath": f"{self.supervisor.room}/{device_id}",
            },
        })

    async def sync_devices(self, device_id: str) -> str:
        """Drop the known device lists and ask the recorder to re-enumerate."""
        self.registry.update_entity(device_id, {
            "devices": {"video": {"available": []}, "audio": {"available": []}},
        })
        return await self.dispatcher.send(device_id, "SYNC_DEVICES")

    async def request_status(self, device_id: str) -> None:
        await self.supervisor.publish(REQUEST_EVENT, {
            "command": "GET_RECORDER_STATUS",
            "streamId": device_id,
            "timestamp": epoch_ms(),
        })

    async def request_devices(self, device_id: str) -> None:
        await self.supervisor.publish_to_device_channel("request-devices", {
            "streamId": device_id,
            "from": "producer-recorder-control",
            "timestamp": epoch_ms(),
        })

    async def ping(self, device_id: str) -> str:
        return await self.dispatcher.send(device_id, "PING")

    # -- bulk --

    async def start_all(self) -> list[str]:
        sent = await self.dispatcher.send_to_all(
            "START_RECORDING", predicate=lambda e: e.status is DeviceStatus.READY
        )
        logger.info("Started recording on %d recorder(s)", len(sent))
        return sent

    async def stop_all(self) -> list[str]:
        sent = await self.dispatcher.send_to_all(
            "STOP_RECORDING", predicate=lambda e: e.status is DeviceStatus.ACTIVE
        )
        logger.info("Stopped recording on %d recorder(s)", len(sent))
        return sent

    async def emergency_stop_all(self) -> list[str]:
        sent = await self.dispatcher.send_to_all(
            "END_SESSION", {"reason": "Force stopped by producer"}
        )
        logger.error("Emergency stop sent to %d recorder(s)", len(sent))
        return sent

    async def set_all_quality(self, preset: str) -> list[str]:
        if preset not in QUALITY_PRESETS:
            raise ValueError(f"Unknown quality preset: {preset}")
        if not self.supervisor.is_connected:
            raise NotConnectedError("Not connected to any room")
        settings = QUALITY_PRESETS[preset]
        updated: list[str] = []
        for device_id in self.registry.ids():
            try:
                await self.change_resolution(device_id, settings["resolution"])
                await self.change_bitrate(device_id, settings["bitrate"])
                await self.change_framerate(device_id, settings["framerate"])
            except ConsoleError as exc:
                logger.error("Quality preset failed for %s: %s", device_id, exc)
                continue
            updated.append(device_id)
        logger.info("Set %s quality on %d recorder(s)", preset, len(updated))
        return updated

    async def set_all_devices(self, media: str, media_device_id: str) -> list[str]:
        commands = {"video": "CHANGE_VIDEO_DEVICE", "audio": "CHANGE_AUDIO_DEVICE"}
        if media not in commands:
            raise ValueError(f"Unknown device type: {media}")
        if not media_device_id:
            raise ValueError("device id required")
        return await self.dispatcher.send_to_all(commands[media], {"deviceId": media_device_id})

    async def request_status_all(self) -> list[str]:
        if not self.supervisor.is_connected:
            raise NotConnectedError("Not connected to any room")
        requested: list[str] = []
        for device_id in self.registry.ids():
            try:
                await self.request_status(device_id)
            except ConsoleError as exc:
                logger.error("Status request failed for %s: %s", device_id, exc)
                continue
            requested.append(device_id)
        logger.info("Requested status for %d recorder(s)", len(requested))
        return requested
