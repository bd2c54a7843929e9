"""Receive-only media contexts for negotiated previews.

:class:`MediaContext` is the boundary the negotiator talks to.
:class:`AiortcMediaContext` implements it with aiortc, which is an optional
dependency (``pip install producer-console[webrtc]``).
"""

from __future__ import annotations

import abc
import inspect
import logging
from typing import Any, Callable

from producer.errors import NegotiationError

logger = logging.getLogger(__name__)

TrackCallback = Callable[[str], Any]
StateCallback = Callable[[str], Any]


class MediaContext(abc.ABC):
    """One receive-only peer with exactly one video and one audio line."""

    def __init__(self) -> None:
        self._track_callbacks: list[TrackCallback] = []
        self._state_callbacks: list[StateCallback] = []

    def on_track(self, callback: TrackCallback) -> None:
        """Register ``callback(kind)`` for each inbound track."""
        self._track_callbacks.append(callback)

    def on_state(self, callback: StateCallback) -> None:
        """Register ``callback(state)`` for media connection state changes."""
        self._state_callbacks.append(callback)

    async def _emit_track(self, kind: str) -> None:
        for callback in list(self._track_callbacks):
            result = callback(kind)
            if inspect.isawaitable(result):
                await result

    async def _emit_state(self, state: str) -> None:
        for callback in list(self._state_callbacks):
            result = callback(state)
            if inspect.isawaitable(result):
                await result

    @abc.abstractmethod
    async def create_offer(self) -> str:
        """Create the local offer and return its SDP text."""
        raise NotImplementedError

    @abc.abstractmethod
    async def apply_answer(self, sdp: str) -> None:
        """Apply the remote answer SDP."""
        raise NotImplementedError

    @abc.abstractmethod
    async def close(self) -> None:
        """Tear down the peer. Safe to call twice."""
        raise NotImplementedError


MediaFactory = Callable[[], MediaContext]


class AiortcMediaContext(MediaContext):
    """:class:`MediaContext` backed by an aiortc ``RTCPeerConnection``."""

    def __init__(self, ice_servers: list[str] | None = None) -> None:
        super().__init__()
        try:
            from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection
            from aiortc.contrib.media import MediaBlackhole
        except ImportError as exc:
            raise NegotiationError(
                "Live preview needs aiortc (install the 'webrtc' extra)"
            ) from exc

        config = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in (ice_servers or [])]
        )
        self._pc = RTCPeerConnection(configuration=config)
        self._sink = MediaBlackhole()
        self._closed = False

        @self._pc.on("track")
        async def _on_track(track: Any) -> None:
            logger.info("Received %s track", track.kind)
            self._sink.addTrack(track)
            await self._sink.start()
            await self._emit_track(track.kind)

        @self._pc.on("connectionstatechange")
        async def _on_state() -> None:
            state = self._pc.connectionState
            logger.debug("Preview connection state: %s", state)
            await self._emit_state(state)

        self._pc.addTransceiver("video", direction="recvonly")
        self._pc.addTransceiver("audio", direction="recvonly")

    async def create_offer(self) -> str:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return self._pc.localDescription.sdp

    async def apply_answer(self, sdp: str) -> None:
        from aiortc import RTCSessionDescription

        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._sink.stop()
        await self._pc.close()
