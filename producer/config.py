"""Configuration for the producer console.

Everything comes from ``PRODUCER_*`` environment variables with defaults
matching the production streaming infrastructure. The transport itself is a
single static endpoint/key pair.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping

logger = logging.getLogger(__name__)

_PREFIX = "PRODUCER_"


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class ConsoleConfig:
    """Console configuration — see :meth:`from_env`."""

    # Transport (single static endpoint/key pair)
    transport_url: str = "mqtt://localhost:1883"
    transport_key: str = ""

    # Media server
    inventory_url: str = "https://stream.voodoostudios.tv/v3/paths/list"
    publish_base: str = "https://stream.voodoostudios.tv"
    playback_public_base: str = "https://stream.voodoostudios.tv"
    playback_local_base: str = "http://localhost:8889"
    http_only_hosts: list[str] = field(
        default_factory=lambda: ["live.voodoostudios.tv", "live.streamless.io"]
    )
    publish_suffix: str = "/whip"
    playback_suffix: str = "/whep"
    origin_host: str = "localhost"
    ice_servers: list[str] = field(
        default_factory=lambda: ["stun:stun.l.google.com:19302"]
    )

    # Timing (seconds)
    command_timeout: float = 10.0
    metadata_first_delay: float = 1.0
    metadata_retry_delay: float = 3.0
    tick_interval: float = 1.0
    http_timeout: float = 10.0

    # Transport supervisor
    replay_buffer_size: int = 100

    # Operator API
    host: str = "0.0.0.0"
    port: int = 5200

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ConsoleConfig:
        """Build a config from ``PRODUCER_*`` variables, ignoring bad values."""
        env = os.environ if environ is None else environ
        cfg = cls()

        def _get(name: str) -> str | None:
            value = env.get(_PREFIX + name)
            return value if value not in (None, "") else None

        for name, attr in (
            ("TRANSPORT_URL", "transport_url"),
            ("TRANSPORT_KEY", "transport_key"),
            ("INVENTORY_URL", "inventory_url"),
            ("PUBLISH_BASE", "publish_base"),
            ("PLAYBACK_PUBLIC_BASE", "playback_public_base"),
            ("PLAYBACK_LOCAL_BASE", "playback_local_base"),
            ("ORIGIN_HOST", "origin_host"),
            ("HOST", "host"),
        ):
            value = _get(name)
            if value is not None:
                setattr(cfg, attr, value)

        for name, attr in (
            ("HTTP_ONLY_HOSTS", "http_only_hosts"),
            ("ICE_SERVERS", "ice_servers"),
        ):
            value = _get(name)
            if value is not None:
                setattr(cfg, attr, _split_list(value))

        for name, attr, cast in (
            ("COMMAND_TIMEOUT", "command_timeout", float),
            ("METADATA_FIRST_DELAY", "metadata_first_delay", float),
            ("METADATA_RETRY_DELAY", "metadata_retry_delay", float),
            ("TICK_INTERVAL", "tick_interval", float),
            ("HTTP_TIMEOUT", "http_timeout", float),
            ("REPLAY_BUFFER", "replay_buffer_size", int),
            ("PORT", "port", int),
        ):
            value = _get(name)
            if value is None:
                continue
            try:
                setattr(cfg, attr, cast(value))
            except ValueError:
                logger.warning("Ignoring invalid %s%s=%r", _PREFIX, name, value)

        return cfg

    @property
    def transport_credentials(self) -> tuple[str | None, str | None]:
        """Split ``transport_key`` (``name:secret``) into username/password."""
        if not self.transport_key:
            return None, None
        username, _, password = self.transport_key.partition(":")
        return username or None, password or None
