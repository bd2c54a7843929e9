"""Operator API router for the producer console.

Reads the registries and drives the command sets and the preview
negotiator of the :class:`~producer.session.ConsoleSession` stored on
``app.state.session``. Registry changes are pushed over ``/ws/fleet``.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from producer.errors import (
    ConsoleError,
    NegotiationError,
    NotConnectedError,
    TransportConnectionError,
    UnknownDeviceError,
)
from producer.fleet.models import DeviceKind, DeviceSession
from producer.session import ConsoleSession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["console"])

COMMON_COMMANDS = {
    "change_video_device",
    "change_audio_device",
    "change_bitrate",
    "change_resolution",
    "change_framerate",
}
STREAMER_COMMANDS = COMMON_COMMANDS | {
    "toggle_audio_mute",
    "toggle_video_mute",
    "toggle_studio_sound",
    "change_codec",
    "change_publish_endpoint",
    "start_stream",
    "stop_stream",
    "request_device_list",
}
RECORDER_COMMANDS = COMMON_COMMANDS | {
    "start_recording",
    "stop_recording",
    "force_stop",
    "change_dynamic_range",
    "update_upload_config",
    "sync_devices",
    "request_status",
    "request_devices",
    "ping",
}
BULK_ACTIONS = {
    DeviceKind.STREAMER: {
        "mute_all", "unmute_all", "toggle_all_studio_sound", "set_all_quality", "test_device_sync",
    },
    DeviceKind.RECORDER: {
        "start_all", "stop_all", "emergency_stop_all", "set_all_quality",
        "set_all_devices", "request_status_all",
    },
}


# ── Helpers ───────────────────────────────────────────────────────

def _session(request: Request) -> ConsoleSession:
    return request.app.state.session


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, UnknownDeviceError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, NotConnectedError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (TransportConnectionError, NegotiationError)):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, (ValueError, TypeError)):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _parse_kind(kind: str) -> DeviceKind:
    try:
        return DeviceKind(kind)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown device kind: {kind}")


def _entity_or_404(session: ConsoleSession, device_id: str) -> DeviceSession:
    entity = session.find_entity(device_id)
    if entity is None:
        raise HTTPException(status_code=404, detail=f"Unknown device: {device_id}")
    return entity


# ══════════════════════════════════════════════════════════════════
# SESSION
# ══════════════════════════════════════════════════════════════════

class ConnectRequest(BaseModel):
    room: str


@router.get("/health")
async def health(request: Request):
    return {"status": "ok", "transport": _session(request).supervisor.state.value}


@router.get("/session")
async def get_session(request: Request):
    return _session(request).snapshot()


@router.post("/session/connect")
async def connect(req: ConnectRequest, request: Request):
    session = _session(request)
    try:
        await session.connect(req.room)
    except ConsoleError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "room": session.room, "client_id": session.supervisor.client_id}


@router.post("/session/disconnect")
async def disconnect(request: Request):
    await _session(request).disconnect()
    return {"ok": True}


@router.post("/session/discover")
async def discover(request: Request):
    try:
        return await _session(request).discover()
    except ConsoleError as exc:
        raise _http_error(exc) from exc


@router.post("/session/refresh")
async def refresh(request: Request):
    try:
        requested = await _session(request).refresh()
    except ConsoleError as exc:
        raise _http_error(exc) from exc
    return {"requested": requested}


# ══════════════════════════════════════════════════════════════════
# DEVICES
# ══════════════════════════════════════════════════════════════════

class CommandRequest(BaseModel):
    command: str
    payload: dict[str, Any] = Field(default_factory=dict)


class BulkRequest(BaseModel):
    params: dict[str, Any] = Field(default_factory=dict)


@router.get("/devices")
async def list_devices(request: Request, kind: str | None = Query(None)):
    session = _session(request)
    kinds = [_parse_kind(kind)] if kind else list(DeviceKind)
    return {
        "devices": [
            entity.to_dict()
            for k in kinds
            for entity in session.registry(k).entities()
        ]
    }


@router.get("/devices/{device_id}")
async def get_device(device_id: str, request: Request):
    return _entity_or_404(_session(request), device_id).to_dict()


@router.post("/devices/{device_id}/commands")
async def send_command(device_id: str, req: CommandRequest, request: Request):
    session = _session(request)
    entity = _entity_or_404(session, device_id)
    if entity.kind is DeviceKind.STREAMER:
        allowed, commands = STREAMER_COMMANDS, session.streamer_commands
    else:
        allowed, commands = RECORDER_COMMANDS, session.recorder_commands
    if req.command not in allowed:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown {entity.kind.value} command: {req.command}",
        )

    try:
        request_id = await getattr(commands, req.command)(device_id, **req.payload)
    except (ConsoleError, ValueError, TypeError) as exc:
        raise _http_error(exc) from exc
    return {"device_id": device_id, "command": req.command, "request_id": request_id}


@router.post("/bulk/{kind}/{action}")
async def bulk_action(kind: str, action: str, request: Request, req: BulkRequest | None = None):
    session = _session(request)
    device_kind = _parse_kind(kind)
    if action not in BULK_ACTIONS[device_kind]:
        raise HTTPException(status_code=400, detail=f"Unknown {kind} bulk action: {action}")
    commands = (
        session.streamer_commands
        if device_kind is DeviceKind.STREAMER
        else session.recorder_commands
    )
    params = req.params if req else {}
    try:
        sent = await getattr(commands, action)(**params)
    except (ConsoleError, ValueError, TypeError) as exc:
        raise _http_error(exc) from exc
    return {"action": action, "sent": sent}


@router.get("/stats")
async def stats(request: Request):
    return _session(request).statistics()


# ══════════════════════════════════════════════════════════════════
# PREVIEW
# ══════════════════════════════════════════════════════════════════

@router.post("/devices/{device_id}/preview")
async def start_preview(device_id: str, request: Request):
    session = _session(request)
    _entity_or_404(session, device_id)
    try:
        preview = await session.preview.start(device_id)
    except ConsoleError as exc:
        raise _http_error(exc) from exc
    return preview.to_dict()


@router.get("/preview")
async def get_preview(request: Request):
    return _session(request).preview.status() or {"state": "idle"}


@router.delete("/preview")
async def close_preview(request: Request):
    await _session(request).preview.close()
    return {"ok": True}


# ══════════════════════════════════════════════════════════════════
# FLEET STREAM
# ══════════════════════════════════════════════════════════════════

async def _drain(websocket: WebSocket) -> None:
    """Consume client frames until the client goes away."""
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Fleet stream client disconnected")


@router.websocket("/ws/fleet")
async def fleet_ws(websocket: WebSocket) -> None:
    """Push ``{event, kind, device}`` for every registry change."""
    session: ConsoleSession = websocket.app.state.session
    await websocket.accept()
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=1000)

    def _push(event: str, entity: DeviceSession | None, kind: DeviceKind) -> None:
        try:
            queue.put_nowait({
                "event": event,
                "kind": kind.value,
                "device": entity.to_dict() if entity else None,
            })
        except asyncio.QueueFull:
            logger.warning("Fleet stream queue full, dropping %s event", event)

    callbacks = []
    for kind in DeviceKind:
        callback = functools.partial(_push, kind=kind)
        session.registry(kind).on_change(callback)
        callbacks.append((kind, callback))

    receiver = asyncio.create_task(_drain(websocket))
    try:
        await websocket.send_json({"event": "snapshot", **session.snapshot()})
        while not receiver.done():
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                await websocket.send_json(getter.result())
            else:
                getter.cancel()
    except WebSocketDisconnect:
        logger.debug("Fleet stream client disconnected")
    finally:
        for kind, callback in callbacks:
            session.registry(kind).remove_change_callback(callback)
        receiver.cancel()
        await asyncio.gather(receiver, return_exceptions=True)
