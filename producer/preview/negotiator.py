"""Preview negotiator — one live preview at a time.

States::

    IDLE -> REQUESTING -> CONNECTED
    IDLE -> REQUESTING -> FAILED
    CONNECTED | FAILED -> CLOSED

Starting a preview while another is open closes the open one first, so at
most one session is ever REQUESTING or CONNECTED.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from producer.config import ConsoleConfig
from producer.errors import NegotiationError, UnknownDeviceError
from producer.fleet.models import DeviceSession
from producer.preview.endpoints import PlaybackEndpoint, resolve_playback_endpoint
from producer.preview.media import AiortcMediaContext, MediaContext, MediaFactory

logger = logging.getLogger(__name__)

LOST_STATES = ("failed", "disconnected")


class PreviewState(str, enum.Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class PreviewSession:
    device_id: str
    endpoint: PlaybackEndpoint
    state: PreviewState = PreviewState.IDLE
    media: MediaContext | None = None
    error: str | None = None
    status: int | None = None
    started_at: float = field(default_factory=time.time)

    @property
    def live(self) -> bool:
        return self.state in (PreviewState.REQUESTING, PreviewState.CONNECTED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "url": self.endpoint.url,
            "embed": self.endpoint.embed,
            "state": self.state.value,
            "error": self.error,
            "status": self.status,
            "started_at": self.started_at,
        }


class PreviewNegotiator:
    """Resolves playback endpoints and runs the offer/answer exchange.

    Args:
        lookup:        Returns the device session for an id, or None.
        config:        Endpoint hosts, suffixes and ICE servers.
        media_factory: Builds a fresh :class:`MediaContext` per preview.
        client:        Shared HTTP client (created when omitted).
    """

    def __init__(
        self,
        lookup: Callable[[str], DeviceSession | None],
        config: ConsoleConfig | None = None,
        media_factory: MediaFactory | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.lookup = lookup
        self.config = config or ConsoleConfig()
        self.media_factory = media_factory or (
            lambda: AiortcMediaContext(self.config.ice_servers)
        )
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.config.http_timeout)
        self.active: PreviewSession | None = None
        self._sessions: dict[str, PreviewSession] = {}

    @property
    def state(self) -> PreviewState:
        return self.active.state if self.active else PreviewState.IDLE

    def resolve(self, entity: DeviceSession) -> PlaybackEndpoint:
        cfg = self.config
        return resolve_playback_endpoint(
            entity.settings.get("publish_endpoint"),
            entity.room,
            entity.id,
            http_only_hosts=cfg.http_only_hosts,
            publish_suffix=cfg.publish_suffix,
            playback_suffix=cfg.playback_suffix,
            origin_host=cfg.origin_host,
            local_base=cfg.playback_local_base,
            public_base=cfg.playback_public_base,
        )

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self, device_id: str) -> PreviewSession:
        """Open a preview of *device_id*, closing any open preview first.

        Raises:
            UnknownDeviceError: No registry knows *device_id*.
            NegotiationError:   The publish endpoint is malformed (nothing is
                                opened or closed), or the media context or
                                the offer/answer exchange failed (the session
                                is FAILED).
        """
        entity = self.lookup(device_id)
        if entity is None:
            raise UnknownDeviceError(device_id)

        try:
            endpoint = self.resolve(entity)
        except ValueError as exc:
            logger.error("No playback endpoint for %s: %s", device_id, exc)
            raise NegotiationError(f"Invalid publish endpoint: {exc}") from exc

        if self.active is not None:
            await self.close()

        session = PreviewSession(device_id=device_id, endpoint=endpoint)
        session.state = PreviewState.REQUESTING
        self.active = session
        self._sessions[device_id] = session
        logger.info("Starting preview for %s via %s", device_id, session.endpoint.url)

        if session.endpoint.embed:
            session.state = PreviewState.CONNECTED
            logger.info("HTTP-only host, embedding %s directly", session.endpoint.url)
            return session

        try:
            media = self.media_factory()
        except NegotiationError as exc:
            await self._fail(session, str(exc))
            raise
        except Exception as exc:
            await self._fail(session, f"Media setup failed: {exc}")
            raise NegotiationError(f"Media setup failed: {exc}") from exc

        session.media = media
        media.on_track(lambda kind: self._on_track(session, kind))
        media.on_state(lambda state: self._on_media_state(session, state))

        try:
            offer = await media.create_offer()
        except Exception as exc:
            await self._fail(session, f"Offer failed: {exc}")
            raise NegotiationError(f"Offer failed: {exc}") from exc
        if not self._current(session):
            return session

        try:
            response = await self._client.post(
                session.endpoint.url,
                content=offer,
                headers={"Content-Type": "application/sdp"},
            )
        except httpx.HTTPError as exc:
            await self._fail(session, f"WHEP request failed: {exc}")
            raise NegotiationError(f"WHEP request failed: {exc}") from exc
        if not self._current(session):
            return session

        if not response.is_success:
            message = f"WHEP request failed: {response.status_code} {response.reason_phrase}".strip()
            await self._fail(session, message, status=response.status_code)
            raise NegotiationError(message, status=response.status_code)

        try:
            await media.apply_answer(response.text)
        except Exception as exc:
            await self._fail(session, f"Invalid answer: {exc}")
            raise NegotiationError(f"Invalid answer: {exc}") from exc

        logger.info("Preview negotiated for %s, waiting for media", device_id)
        return session

    async def close(self) -> None:
        """Close the active preview (if any) and clear the record."""
        session, self.active = self.active, None
        if session is not None:
            await self._teardown(session)

    async def cleanup_all(self) -> None:
        """Close the active preview and any other tracked session."""
        await self.close()
        for session in list(self._sessions.values()):
            await self._teardown(session)
        self._sessions.clear()

    async def aclose(self) -> None:
        await self.cleanup_all()
        if self._owns_client:
            await self._client.aclose()

    def status(self) -> dict[str, Any] | None:
        return self.active.to_dict() if self.active else None

    # ── Media events ───────────────────────────────────────────────

    def _on_track(self, session: PreviewSession, kind: str) -> None:
        if self._current(session):
            session.state = PreviewState.CONNECTED
            logger.info("Preview connected for %s (%s track)", session.device_id, kind)

    async def _on_media_state(self, session: PreviewSession, state: str) -> None:
        if state in LOST_STATES and session.live and self.active is session:
            await self._fail(session, "Connection lost")

    # ── Internal ───────────────────────────────────────────────────

    def _current(self, session: PreviewSession) -> bool:
        return self.active is session and session.state is PreviewState.REQUESTING

    async def _fail(self, session: PreviewSession, message: str, status: int | None = None) -> None:
        if session.state is PreviewState.CLOSED:
            await self._release_media(session)
            return
        session.state = PreviewState.FAILED
        session.error = message
        session.status = status
        logger.error("Preview failed for %s: %s", session.device_id, message)
        await self._release_media(session)

    async def _teardown(self, session: PreviewSession) -> None:
        await self._release_media(session)
        session.state = PreviewState.CLOSED
        if self._sessions.get(session.device_id) is session:
            del self._sessions[session.device_id]
        logger.info("Preview closed for %s", session.device_id)

    async def _release_media(self, session: PreviewSession) -> None:
        media, session.media = session.media, None
        if media is None:
            return
        try:
            await media.close()
        except Exception as exc:
            logger.warning("Media teardown failed for %s: %s", session.device_id, exc)
