"""Fleet state: device models, registries, discovery and command dispatch."""

from producer.fleet.models import DeviceKind, DeviceSession, DeviceStatus, DiscoverySource
from producer.fleet.registry import DurationTicker, EntityRegistry

__all__ = [
    "DeviceKind",
    "DeviceSession",
    "DeviceStatus",
    "DiscoverySource",
    "DurationTicker",
    "EntityRegistry",
]
