"""
WebSocket endpoint for live sync updates.

Clients connect to /sync/live?deviceId=<id> with the X-User-Id header
and receive `sync-update` events whenever another device of the same
user pushes or resolves conflicts. Incoming messages are ignored.
"""

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from expense_sync.sync import ConnectionManager


logger = structlog.get_logger(__name__)

ws_router = APIRouter(tags=["live"])

CLOSE_UNAUTHENTICATED = 4001
CLOSE_LIVE_DISABLED = 4003


@ws_router.websocket("/sync/live")
async def live_updates(websocket: WebSocket) -> None:
    service = websocket.app.state.service
    manager = service.notifier

    user_id = (websocket.headers.get("x-user-id") or "").strip()
    if not user_id:
        # Must accept before sending close with reason
        await websocket.accept()
        await websocket.close(code=CLOSE_UNAUTHENTICATED, reason="Authentication required")
        return

    if not isinstance(manager, ConnectionManager):
        await websocket.accept()
        await websocket.close(code=CLOSE_LIVE_DISABLED, reason="Live updates are disabled")
        return

    device_id = websocket.query_params.get("deviceId") or None
    if not await manager.connect(websocket, user_id, device_id):
        return

    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await manager.disconnect(websocket, user_id)
    except Exception as e:
        logger.error("live_socket_error", user_id=user_id, device_id=device_id, error=str(e))
        await manager.disconnect(websocket, user_id)
