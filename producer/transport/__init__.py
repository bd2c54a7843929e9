"""Pub/sub transport: backend boundary, MQTT adapter and connection supervisor."""

from producer.transport.base import PresenceMember, PubSubBackend, TransportMessage
from producer.transport.supervisor import ConnectionState, TransportSupervisor

__all__ = [
    "ConnectionState",
    "PresenceMember",
    "PubSubBackend",
    "TransportMessage",
    "TransportSupervisor",
]
