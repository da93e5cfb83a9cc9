"""Tests for the live notifier."""

import asyncio
from datetime import datetime, timezone

import pytest
from fastapi.websockets import WebSocketState

from expense_sync.models import EntityKind, ProcessedChanges, SyncUpdateEvent
from expense_sync.sync import ConnectionManager, NullNotifier
from expense_sync.sync.notifier import CLOSE_CONNECTION_LIMIT

from helpers import OTHER_USER, USER


class FakeWebSocket:
    """Just enough of a WebSocket for the connection manager."""

    def __init__(self, fail_on_send: bool = False):
        self.client_state = WebSocketState.CONNECTING
        self.sent: list[dict] = []
        self.closed_with = None
        self.fail_on_send = fail_on_send

    async def accept(self):
        self.client_state = WebSocketState.CONNECTED

    async def close(self, code: int = 1000, reason: str = ""):
        self.closed_with = code
        self.client_state = WebSocketState.DISCONNECTED

    async def send_json(self, message):
        if self.fail_on_send and self.sent:
            raise RuntimeError("broken pipe")
        self.sent.append(message)


class SlowHandshakeWebSocket(FakeWebSocket):
    """Blocks in accept() until released."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def accept(self):
        await self.release.wait()
        await super().accept()


def _event(device_id="A"):
    changes = ProcessedChanges()
    changes.add(EntityKind.EXPENSE, {"id": "E1", "amount": 1})
    return SyncUpdateEvent(
        device_id=device_id,
        changes=changes,
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


class TestConnectionManager:
    """Tests for ConnectionManager."""

    @pytest.mark.asyncio
    async def test_connect_sends_hello(self):
        """Test a new session is greeted with its device id."""
        manager = ConnectionManager()
        ws = FakeWebSocket()

        assert await manager.connect(ws, USER, "A")
        assert ws.sent == [{"event": "connected", "deviceId": "A"}]

    @pytest.mark.asyncio
    async def test_broadcast_skips_origin_device(self):
        """Test the pushing device doesn't get its own update."""
        manager = ConnectionManager()
        origin, other = FakeWebSocket(), FakeWebSocket()
        await manager.connect(origin, USER, "A")
        await manager.connect(other, USER, "B")

        delivered = await manager.broadcast(USER, _event("A"))

        assert delivered == 1
        assert len(origin.sent) == 1
        assert other.sent[-1]["event"] == "sync-update"
        assert other.sent[-1]["data"]["deviceId"] == "A"
        assert other.sent[-1]["data"]["changes"]["expenses"][0]["id"] == "E1"

    @pytest.mark.asyncio
    async def test_broadcast_only_reaches_same_user(self):
        """Test events never cross users."""
        manager = ConnectionManager()
        stranger = FakeWebSocket()
        await manager.connect(stranger, OTHER_USER, "B")

        assert await manager.broadcast(USER, _event("A")) == 0
        assert len(stranger.sent) == 1

    @pytest.mark.asyncio
    async def test_dead_socket_dropped(self):
        """Test a failing send removes the session instead of raising."""
        manager = ConnectionManager()
        ws = FakeWebSocket(fail_on_send=True)
        await manager.connect(ws, USER, "B")

        assert await manager.broadcast(USER, _event("A")) == 0
        assert await manager.session_count(USER) == 0

    @pytest.mark.asyncio
    async def test_connection_limit(self):
        """Test sessions beyond the limit are closed."""
        manager = ConnectionManager(max_connections=1)
        await manager.connect(FakeWebSocket(), USER, "A")
        rejected = FakeWebSocket()

        assert not await manager.connect(rejected, USER, "B")
        assert rejected.closed_with == CLOSE_CONNECTION_LIMIT

    @pytest.mark.asyncio
    async def test_disconnect(self):
        """Test disconnected sessions stop receiving events."""
        manager = ConnectionManager()
        ws = FakeWebSocket()
        await manager.connect(ws, USER, "B")
        await manager.disconnect(ws, USER)

        assert await manager.broadcast(USER, _event("A")) == 0
        assert manager.connection_count == 0

    @pytest.mark.asyncio
    async def test_null_notifier(self):
        """Test the disabled notifier delivers nothing."""
        assert await NullNotifier().broadcast(USER, _event()) == 0

    @pytest.mark.asyncio
    async def test_slow_handshake_does_not_block_broadcast(self):
        """Test a session still accepting doesn't hold up delivery to others."""
        manager = ConnectionManager()
        other = FakeWebSocket()
        await manager.connect(other, USER, "B")
        slow = SlowHandshakeWebSocket()
        pending = asyncio.create_task(manager.connect(slow, USER, "C"))
        await asyncio.sleep(0)

        delivered = await asyncio.wait_for(manager.broadcast(USER, _event("A")), timeout=1)
        slow.release.set()

        assert delivered == 1
        assert await pending
        assert await manager.session_count(USER) == 2
