"""
WebSocket endpoint for the real-time chat channel
"""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def chat_socket(websocket: WebSocket):
    """
    Frames in both directions are {"event": name, "data": {...}}.

    The first frame should be `authenticate` with a chat access token.
    """
    realtime = websocket.app.state.realtime
    connection_id = await realtime.manager.connect(websocket)
    closed_by_client = False

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await realtime.manager.send(connection_id, "error", {"message": "Invalid JSON frame"})
                continue

            if not isinstance(frame, dict) or not frame.get("event"):
                await realtime.manager.send(connection_id, "error", {"message": "Frame must carry an event"})
                continue

            if frame["event"] == "disconnect":
                break

            await realtime.handle(connection_id, frame["event"], frame.get("data"))
    except WebSocketDisconnect:
        closed_by_client = True
    finally:
        await realtime.disconnect(connection_id)

    if not closed_by_client:
        await websocket.close()
