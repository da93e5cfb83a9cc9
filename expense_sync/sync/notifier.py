"""
Live Notifier

Pushes `sync-update` events to a user's other connected devices so they
can pull immediately instead of waiting for their next poll.

Delivery is fire-and-forget: a dead socket is dropped and logged, and a
failed delivery never fails the write that triggered it.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import structlog
from fastapi import WebSocket
from fastapi.websockets import WebSocketState

from expense_sync.models.sync import SyncUpdateEvent


logger = structlog.get_logger(__name__)

SYNC_UPDATE_EVENT = "sync-update"
CONNECTED_EVENT = "connected"

# Close code sent when the connection limit is reached
CLOSE_CONNECTION_LIMIT = 4008


class LiveNotifier(ABC):
    """Delivers sync events to a user's devices."""

    @abstractmethod
    async def broadcast(self, user_id: str, event: SyncUpdateEvent) -> int:
        """
        Send an event to every session of `user_id` except those of the
        event's origin device.

        Returns:
            Number of sessions the event was delivered to
        """
        pass


class NullNotifier(LiveNotifier):
    """Used when live updates are disabled."""

    async def broadcast(self, user_id: str, event: SyncUpdateEvent) -> int:
        return 0


class ConnectionManager(LiveNotifier):
    """Keeps per-user WebSocket sessions, tagged with their device id."""

    def __init__(self, max_connections: int = 200):
        self._sessions: dict[str, dict[WebSocket, Optional[str]]] = {}
        self._lock = asyncio.Lock()
        self.max_connections = max_connections

    @property
    def connection_count(self) -> int:
        return sum(len(sessions) for sessions in self._sessions.values())

    async def connect(
        self,
        websocket: WebSocket,
        user_id: str,
        device_id: Optional[str] = None,
    ) -> bool:
        """
        Accept a session and greet it.

        Returns False if the connection limit was reached (the socket is
        accepted and then closed).
        """
        await websocket.accept()
        async with self._lock:
            accepted = self.connection_count < self.max_connections
            if accepted:
                self._sessions.setdefault(user_id, {})[websocket] = device_id

        if not accepted:
            await websocket.close(code=CLOSE_CONNECTION_LIMIT, reason="Connection limit reached")
            logger.warning("live_connection_rejected", user_id=user_id, device_id=device_id)
            return False

        await websocket.send_json({"event": CONNECTED_EVENT, "deviceId": device_id})
        logger.info("live_client_connected", user_id=user_id, device_id=device_id)
        return True

    async def disconnect(self, websocket: WebSocket, user_id: str) -> None:
        async with self._lock:
            sessions = self._sessions.get(user_id)
            if sessions is None:
                return
            device_id = sessions.pop(websocket, None)
            if not sessions:
                del self._sessions[user_id]
        logger.info("live_client_disconnected", user_id=user_id, device_id=device_id)

    async def session_count(self, user_id: str) -> int:
        async with self._lock:
            return len(self._sessions.get(user_id, {}))

    async def broadcast(self, user_id: str, event: SyncUpdateEvent) -> int:
        async with self._lock:
            targets = [
                websocket
                for websocket, device_id in self._sessions.get(user_id, {}).items()
                if event.device_id is None or device_id != event.device_id
            ]
        if not targets:
            return 0

        message = {"event": SYNC_UPDATE_EVENT, "data": event.to_response()}

        async def _safe_send(websocket: WebSocket) -> Optional[WebSocket]:
            try:
                if websocket.client_state == WebSocketState.CONNECTED:
                    await websocket.send_json(message)
                    return None
                return websocket
            except Exception as e:
                logger.warning("live_delivery_failed", user_id=user_id, error=str(e))
                return websocket

        results = await asyncio.gather(*[_safe_send(ws) for ws in targets])
        dead = [ws for ws in results if ws is not None]
        for websocket in dead:
            await self.disconnect(websocket, user_id)
        return len(targets) - len(dead)
