"""pytest configuration for Producer Console tests."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from producer.fleet.commands import CommandDispatcher, RecorderCommands, StreamerCommands
from producer.fleet.models import DeviceKind
from producer.fleet.registry import EntityRegistry
from producer.transport.base import (
    PRESENCE_ENTER,
    PRESENCE_LEAVE,
    PresenceMember,
    PubSubBackend,
    TransportMessage,
)
from producer.transport.supervisor import TransportSupervisor


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


class FakeBackend(PubSubBackend):
    """In-memory backend recording publishes and replaying scripted traffic."""

    def __init__(self, members: list[PresenceMember] | None = None) -> None:
        super().__init__()
        self.members = list(members or [])
        self.published: list[tuple[str, str, dict[str, Any]]] = []
        self.connected = False
        self.connect_calls: list[dict[str, Any]] = []
        self.fail_connect: Exception | None = None
        self.fail_publish: Exception | None = None
        self.fail_presence: Exception | None = None

    async def connect(self, client_id, channels, presence_channel, presence_data=None):
        self.connect_calls.append({
            "client_id": client_id,
            "channels": list(channels),
            "presence_channel": presence_channel,
            "presence_data": presence_data,
        })
        if self.fail_connect is not None:
            raise self.fail_connect
        self.connected = True

    async def disconnect(self):
        self.connected = False

    async def publish(self, channel, name, data):
        if self.fail_publish is not None:
            raise self.fail_publish
        self.published.append((channel, name, dict(data)))

    async def presence(self, channel):
        if self.fail_presence is not None:
            raise self.fail_presence
        return list(self.members)

    # ── Test helpers ───────────────────────────────────────────────

    async def deliver(self, channel: str, name: str, data: dict[str, Any]) -> None:
        await self._on_message(TransportMessage(channel=channel, name=name, data=data))

    async def enter(self, client_id: str, **data: Any) -> None:
        await self._on_presence(PRESENCE_ENTER, PresenceMember(client_id, data))

    async def leave(self, client_id: str) -> None:
        await self._on_presence(PRESENCE_LEAVE, PresenceMember(client_id))

    async def lose(self, error: Exception | None = None) -> None:
        self.connected = False
        await self._on_loss(error)

    def sent(self, name: str) -> list[dict[str, Any]]:
        return [data for _, n, data in self.published if n == name]

    def commands(self, command: str | None = None) -> list[dict[str, Any]]:
        return [
            data for data in self.sent("producer-command")
            if command is None or data.get("command") == command
        ]


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def settle(rounds: int = 5) -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def supervisor(backend):
    return TransportSupervisor(backend, replay_buffer_size=3)


@pytest.fixture
async def connected(supervisor):
    await supervisor.connect("studio")
    return supervisor


@pytest.fixture
def streamers(clock):
    registry = EntityRegistry(DeviceKind.STREAMER, "https://publish.example", clock)
    registry.room = "studio"
    return registry


@pytest.fixture
def recorders(clock):
    registry = EntityRegistry(DeviceKind.RECORDER, "https://publish.example", clock)
    registry.room = "studio"
    return registry


@pytest.fixture
def streamer_dispatcher(supervisor, streamers):
    return CommandDispatcher(supervisor, streamers, timeout=0.05)


@pytest.fixture
def recorder_dispatcher(supervisor, recorders):
    return CommandDispatcher(supervisor, recorders, timeout=0.05)


@pytest.fixture
def streamer_commands(streamer_dispatcher):
    return StreamerCommands(streamer_dispatcher)


@pytest.fixture
def recorder_commands(recorder_dispatcher):
    return RecorderCommands(recorder_dispatcher)
