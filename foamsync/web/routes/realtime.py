"""Websocket relay for change notifications.

``/ws/{org_id}?token=...`` forwards broker messages to a connected
session. Admin sessions receive the organization change channel and the
crew broadcast channel; crew sessions only the crew channel.
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from foamsync.auth.capability import authorize, verify_capability
from foamsync.errors import AuthorizationError
from foamsync.realtime.broker import crew_channel, org_channel

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])

# Application-defined close code for a rejected capability
POLICY_VIOLATION = 4403


@router.websocket("/ws/{org_id}")
async def realtime_socket(websocket: WebSocket, org_id: str, token: str | None = None):
    config = websocket.app.state.config
    broker = websocket.app.state.broker

    try:
        capability = verify_capability(token, config.auth.secret_key)
        authorize(capability, org_id)
    except AuthorizationError as e:
        logger.warning(f"Rejected realtime connection for org {org_id}: {e}")
        await websocket.close(code=POLICY_VIOLATION)
        return

    await websocket.accept()

    outgoing: asyncio.Queue = asyncio.Queue()
    channels = [crew_channel(org_id)]
    if capability.is_admin:
        channels.insert(0, org_channel(org_id))
    unsubscribes = [await broker.subscribe(channel, outgoing.put_nowait) for channel in channels]

    async def forward() -> None:
        while True:
            message = await outgoing.get()
            await websocket.send_json(message)

    sender = asyncio.create_task(forward())
    try:
        while True:
            data = await websocket.receive_json()
            if isinstance(data, dict) and data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        logger.debug(f"Realtime session for org {org_id} disconnected")
    finally:
        sender.cancel()
        for unsubscribe in unsubscribes:
            await unsubscribe()
