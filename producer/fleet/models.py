"""Device session model shared by both registries."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any


class DeviceKind(str, enum.Enum):
    STREAMER = "streamer"
    RECORDER = "recorder"


class DeviceStatus(str, enum.Enum):
    READY = "ready"
    ACTIVE = "active"
    STOPPED = "stopped"
    ERROR = "error"
    OFFLINE = "offline"


class DiscoverySource(enum.IntEnum):
    """Discovery signals ordered by authority (higher wins)."""

    INVENTORY = 1
    PRESENCE = 2
    REGISTRATION = 3


_STATUS_ALIASES: dict[str, DeviceStatus] = {
    "streaming": DeviceStatus.ACTIVE,
    "recording": DeviceStatus.ACTIVE,
    "live": DeviceStatus.ACTIVE,
    "active": DeviceStatus.ACTIVE,
    "ready": DeviceStatus.READY,
    "idle": DeviceStatus.READY,
    "stopped": DeviceStatus.STOPPED,
    "uploading": DeviceStatus.STOPPED,
    "error": DeviceStatus.ERROR,
    "offline": DeviceStatus.OFFLINE,
}


def normalize_status(value: Any) -> DeviceStatus:
    """Map a wire status onto :class:`DeviceStatus`; unknown values are offline."""
    if isinstance(value, DeviceStatus):
        return value
    if not isinstance(value, str):
        return DeviceStatus.OFFLINE
    return _STATUS_ALIASES.get(value.strip().lower(), DeviceStatus.OFFLINE)


@dataclass
class MediaDevice:
    """One selectable input device reported by a capture client."""

    device_id: str
    label: str = ""

    @classmethod
    def from_wire(cls, raw: Any) -> MediaDevice | None:
        if isinstance(raw, str):
            return cls(device_id=raw, label=raw)
        if not isinstance(raw, dict):
            return None
        device_id = raw.get("deviceId") or raw.get("id") or raw.get("device_id")
        if not device_id:
            return None
        return cls(device_id=str(device_id), label=str(raw.get("label") or device_id))


@dataclass
class DeviceSelection:
    """Current selection plus the available list for one media type."""

    current_id: str | None = None
    current_label: str | None = None
    available: list[MediaDevice] = field(default_factory=list)


@dataclass
class DeviceSet:
    video: DeviceSelection = field(default_factory=DeviceSelection)
    audio: DeviceSelection = field(default_factory=DeviceSelection)


# Namespaces that merge key-by-key on partial update.
SETTINGS_FIELDS = ("settings", "upload", "permissions")


def default_settings(
    kind: DeviceKind,
    room: str,
    device_id: str,
    publish_base: str,
    publish_suffix: str = "/whip",
) -> dict[str, Any]:
    if kind is DeviceKind.STREAMER:
        return {
            "audio_muted": False,
            "video_muted": False,
            "studio_sound": False,
            "bitrate": 3000,
            "codec": "VP9",
            "resolution": "1080p",
            "framerate": 30,
            "publish_endpoint": f"{publish_base.rstrip('/')}/{room}/{device_id}{publish_suffix}",
        }
    return {
        "resolution": "1080p",
        "bitrate": 5,
        "framerate": 30,
        "dynamic_range": "SDR",
        "output_resolution": "1080p",
    }


def default_upload() -> dict[str, Any]:
    return {"progress": 0, "completed": 0, "total": 0}


def default_permissions() -> dict[str, Any]:
    return {"camera": "unknown", "microphone": "unknown"}


@dataclass
class DeviceSession:
    """In-memory state for one discovered device."""

    id: str
    kind: DeviceKind
    room: str
    name: str = ""
    status: DeviceStatus = DeviceStatus.READY
    devices: DeviceSet = field(default_factory=DeviceSet)
    settings: dict[str, Any] = field(default_factory=dict)
    upload: dict[str, Any] = field(default_factory=default_upload)
    permissions: dict[str, Any] = field(default_factory=default_permissions)
    platform: str | None = None
    pending_commands: set[str] = field(default_factory=set)
    active_since: float | None = None
    elapsed: int = 0
    last_seen: float = 0.0
    authority: DiscoverySource = DiscoverySource.INVENTORY

    @property
    def is_active(self) -> bool:
        return self.status is DeviceStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly snapshot for the operator API."""
        data = asdict(self)
        data["kind"] = self.kind.value
        data["status"] = self.status.value
        data["authority"] = self.authority.name.lower()
        data["pending_commands"] = sorted(self.pending_commands)
        return data
