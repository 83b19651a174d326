"""
jmsmp.api.realtime — WebSocket endpoint
=======================================

``/api/ws?token=<jwt>``.  A valid token joins the socket to its user room
and ``broadcast`` (plus ``admin-room`` for staff); every frame the server
sends is ``{"event": ..., "data": ...}``.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy import Engine

from jmsmp.api.deps import JWT_SECRET, get_engine, get_hub
from jmsmp.constants import (
    ADMIN_ROOM,
    BROADCAST_ROOM,
    EVENT_USER_ACTIVITY,
    OPERATION_ROLES,
    user_room,
)
from jmsmp.database.engine import run_db
from jmsmp.engine.realtime import RealtimeHub
from jmsmp.errors import Unauthenticated
from jmsmp.services.identity_service import authenticate, touch_last_seen

router = APIRouter(tags=["realtime"])
logger = logging.getLogger(__name__)

# Application-defined close code for a rejected token
WS_CLOSE_UNAUTHENTICATED = 4401


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    token: str | None = Query(None),
    engine: Engine = Depends(get_engine),
    hub: RealtimeHub = Depends(get_hub),
):
    try:
        identity = await run_db(authenticate, engine, token, JWT_SECRET)
    except Unauthenticated as exc:
        await websocket.close(code=WS_CLOSE_UNAUTHENTICATED, reason=exc.message)
        return

    await websocket.accept()
    rooms = [user_room(identity.id), BROADCAST_ROOM]
    if identity.role in OPERATION_ROLES["realtime.admin_room"]:
        rooms.append(ADMIN_ROOM)
    for room in rooms:
        hub.join(websocket, room)
    logger.debug("'%s' connected to %s", identity.username, rooms)

    try:
        await websocket.send_json({
            "event": "connected",
            "data": {"username": identity.username, "rooms": rooms},
        })
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON frame from '%s'", identity.username)
                continue
            kind = message.get("type") if isinstance(message, dict) else None

            if kind == "heartbeat":
                await websocket.send_json({
                    "event": "heartbeat-response",
                    "data": {"timestamp": _now_iso()},
                })
            elif kind == "user-activity":
                await run_db(touch_last_seen, engine, identity.id)
                hub.emit(ADMIN_ROOM, EVENT_USER_ACTIVITY, {
                    "username": identity.username,
                    "activity": message.get("activity"),
                    "timestamp": _now_iso(),
                })
            else:
                logger.debug("Unknown frame type %r from '%s'", kind, identity.username)
    except WebSocketDisconnect:
        pass
    finally:
        hub.leave(websocket)
        logger.debug("'%s' disconnected", identity.username)
