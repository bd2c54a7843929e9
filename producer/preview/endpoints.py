"""Playback endpoint resolution for live previews."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from typing import Iterable
from urllib.parse import urlsplit


@dataclass(frozen=True)
class PlaybackEndpoint:
    """Where to fetch a preview from.

    ``embed`` endpoints are plain HTTP players shown directly; all others
    are negotiated with an SDP offer/answer exchange.
    """

    url: str
    embed: bool = False


def is_private_origin(host: str) -> bool:
    """True for loopback, private-range and ``.local`` hosts."""
    host = (host or "").strip().strip("[]").lower()
    if not host or host == "localhost" or host.endswith(".local"):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return address.is_loopback or address.is_private


def _suffix_pattern(suffix: str) -> re.Pattern[str]:
    return re.compile(re.escape(suffix) + r"$", re.IGNORECASE)


def resolve_playback_endpoint(
    publish_endpoint: str | None,
    room: str,
    device_id: str,
    *,
    http_only_hosts: Iterable[str] = ("live.voodoostudios.tv", "live.streamless.io"),
    publish_suffix: str = "/whip",
    playback_suffix: str = "/whep",
    origin_host: str = "localhost",
    local_base: str = "http://localhost:8889",
    public_base: str = "https://stream.voodoostudios.tv",
) -> PlaybackEndpoint:
    """Derive the preview endpoint for one device.

    In priority order:

    1. publish endpoint on an HTTP-only playback host: strip the trailing
       publish suffix and embed directly;
    2. publish endpoint ending in the publish suffix: swap only that
       trailing suffix for the playback suffix;
    3. otherwise ``{base}/{room}/{id}{playback_suffix}``, with the local
       base when the console origin is a private address.
    """
    endpoint = (publish_endpoint or "").strip()
    pattern = _suffix_pattern(publish_suffix)

    if endpoint:
        host = (urlsplit(endpoint).hostname or "").lower()
        if host in {h.lower() for h in http_only_hosts}:
            return PlaybackEndpoint(url=pattern.sub("", endpoint), embed=True)
        if pattern.search(endpoint):
            return PlaybackEndpoint(url=pattern.sub(playback_suffix, endpoint))

    base = local_base if is_private_origin(origin_host) else public_base
    return PlaybackEndpoint(url=f"{base.rstrip('/')}/{room}/{device_id}{playback_suffix}")
