"""Abstract pub/sub backend interface for the producer console.

Any best-effort publish/subscribe transport (MQTT broker, hosted realtime
service, in-memory fake for tests) implements this interface. The
:class:`~producer.transport.supervisor.TransportSupervisor` owns the
connection lifecycle on top of it.
"""

from __future__ import annotations

import abc
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

PRESENCE_ENTER = "enter"
PRESENCE_LEAVE = "leave"
PRESENCE_UPDATE = "update"


@dataclass
class TransportMessage:
    """One inbound message on a logical channel."""

    channel: str
    name: str
    data: dict[str, Any] = field(default_factory=dict)
    client_id: str | None = None
    received_at: float = field(default_factory=time.time)


@dataclass
class PresenceMember:
    """A participant currently joined to a channel."""

    client_id: str
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> PresenceMember:
        data = raw.get("data")
        return cls(
            client_id=str(raw.get("clientId", "")),
            data=data if isinstance(data, dict) else {},
        )

    def to_wire(self) -> dict[str, Any]:
        return {"clientId": self.client_id, "data": dict(self.data)}


MessageSink = Callable[[TransportMessage], Awaitable[None]]
PresenceSink = Callable[[str, PresenceMember], Awaitable[None]]
LossSink = Callable[[Exception | None], Awaitable[None]]


class PubSubBackend(abc.ABC):
    """Abstract interface for any pub/sub transport.

    Inbound traffic is pushed into the sinks installed with
    :meth:`set_sinks`, one message at a time and in arrival order.
    """

    def __init__(self) -> None:
        self._on_message: MessageSink | None = None
        self._on_presence: PresenceSink | None = None
        self._on_loss: LossSink | None = None

    def set_sinks(
        self,
        on_message: MessageSink,
        on_presence: PresenceSink,
        on_loss: LossSink,
    ) -> None:
        """Install the supervisor callbacks for inbound traffic."""
        self._on_message = on_message
        self._on_presence = on_presence
        self._on_loss = on_loss

    @abc.abstractmethod
    async def connect(
        self,
        client_id: str,
        channels: list[str],
        presence_channel: str,
        presence_data: dict[str, Any] | None = None,
    ) -> None:
        """Open a session, attach *channels* and join presence.

        Returns once the transport reports readiness. Raises any exception
        on failure; the supervisor wraps it.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def disconnect(self) -> None:
        """Leave presence and close the session. Safe to call twice."""
        raise NotImplementedError

    @abc.abstractmethod
    async def publish(self, channel: str, name: str, data: dict[str, Any]) -> None:
        """Publish one message (fire-and-forget, at-most-once)."""
        raise NotImplementedError

    @abc.abstractmethod
    async def presence(self, channel: str) -> list[PresenceMember]:
        """Return the members currently present on *channel*."""
        raise NotImplementedError
