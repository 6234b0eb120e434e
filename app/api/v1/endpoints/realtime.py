"""WebSocket endpoint for agent-scoped real-time events."""

import logging
from uuid import UUID

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

router = APIRouter()
logger = logging.getLogger(__name__)


@router.websocket("/agents/{agent_id}")
async def agent_ws(websocket: WebSocket, agent_id: UUID):
    hub = websocket.app.state.services.realtime
    room = f"agent_{agent_id}"

    await websocket.accept()
    hub.join(room, websocket)
    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        hub.leave(room, websocket)
