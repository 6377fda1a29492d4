"""WebSocket endpoints for real-time preview status and build logs"""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketException, status

from app import database
from app.auth.dependencies import authenticate_ws
from app.broadcaster import StatusBroadcaster, preview_payload

logger = logging.getLogger(__name__)

router = APIRouter()

PING_INTERVAL_SECONDS = 60.0


async def _keepalive(websocket: WebSocket):
    """Read until the client goes away, pinging on idle."""
    while True:
        try:
            msg = await asyncio.wait_for(websocket.receive_text(), timeout=PING_INTERVAL_SECONDS)
        except asyncio.TimeoutError:
            await websocket.send_json({"type": "ping"})
            continue
        if msg == "ping":
            await websocket.send_json({"type": "pong"})


@router.websocket("/ws/previews/{preview_id}")
async def websocket_preview(websocket: WebSocket, preview_id: int):
    """Per-preview stream: current record, replayed log of a running build,
    then live `log`, `status`, `finished` and `error` messages."""
    user = await authenticate_ws(websocket)
    preview = await database.get_preview(preview_id)
    project = await database.get_project(preview["project_id"]) if preview else None
    if project is None or project["user_id"] != user.id:
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION)

    broadcaster: StatusBroadcaster = websocket.app.state.broadcaster
    await websocket.accept()
    await websocket.send_json({"type": "status", "preview": preview_payload(preview)})
    await broadcaster.subscribe_preview(preview_id, websocket)

    try:
        await _keepalive(websocket)
    except Exception as e:
        logger.info(f"Preview {preview_id} WebSocket connection closed: {e}")
    finally:
        broadcaster.unsubscribe_preview(preview_id, websocket)


@router.websocket("/ws/previews")
async def websocket_account(websocket: WebSocket):
    """Per-account stream of `preview-status-update` messages for dashboards."""
    user = await authenticate_ws(websocket)

    broadcaster: StatusBroadcaster = websocket.app.state.broadcaster
    await websocket.accept()

    previews = []
    for project in await database.list_projects(user.id):
        previews.extend(preview_payload(p) for p in await database.list_previews(project["id"]))
    await websocket.send_json({"type": "initial", "previews": previews, "total": len(previews)})
    broadcaster.subscribe_account(user.id, websocket)

    try:
        await _keepalive(websocket)
    except Exception as e:
        logger.info(f"Account {user.id} WebSocket connection closed: {e}")
    finally:
        broadcaster.unsubscribe_account(user.id, websocket)
