"""
agora.api.routes.realtime — WebSocket endpoint
================================================

Connect with ``/api/ws?token=<access JWT>``.  Frames are JSON objects
``{"event": <name>, "data": {...}}`` in both directions.  A missing or
invalid token closes the socket with code 1008 before it is accepted.
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from agora.api.deps import get_engine, get_gateway, get_token_signer
from agora.database.engine import run_db
from agora.errors import AgoraError
from agora.realtime.gateway import RealtimeGateway, WebSocketConnection
from agora.services.auth_service import TokenSigner, authenticate

router = APIRouter(tags=["realtime"])
logger = logging.getLogger(__name__)


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str | None = None,
    engine=Depends(get_engine),
    signer: TokenSigner = Depends(get_token_signer),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Authentication required")
        return
    try:
        user = await run_db(authenticate, engine, signer, token)
    except AgoraError as exc:
        logger.info("WebSocket rejected: %s", exc.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.message)
        return

    await websocket.accept()
    conn = WebSocketConnection(websocket, user["id"], user["username"])
    await gateway.on_connect(conn)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", status.WS_1000_NORMAL_CLOSURE))
            # binary frames carry no JSON envelope
            text = message.get("text")
            try:
                frame = json.loads(text) if text is not None else None
            except ValueError:
                frame = None
            await gateway.dispatch(conn, frame)
    except WebSocketDisconnect as exc:
        logger.debug("WebSocket %s closed (code %s)", conn.id, exc.code)
    finally:
        await gateway.on_disconnect(conn)
