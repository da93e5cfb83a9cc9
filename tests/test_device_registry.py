"""Tests for the device registry."""

from datetime import timedelta

import pytest

from expense_sync.models import AuditEventType, Platform
from expense_sync.storage import NotFoundError
from expense_sync.sync import DeviceNotFoundError, DeviceRegistry

from helpers import OTHER_USER, USER, START, change, push_body


class TestRegistration:
    """Tests for register_device."""

    @pytest.fixture
    def registry(self, store, clock, audit_logger):
        return DeviceRegistry(store, clock=clock, audit_logger=audit_logger)

    @pytest.mark.asyncio
    async def test_register_new_device(self, registry):
        """Test a new device is stored active with lastSyncAt=now."""
        device = await registry.register_device(USER, "A", "Phone", Platform.ANDROID)

        assert device.device_id == "A"
        assert device.is_active
        assert device.last_sync_at == START
        assert device.registered_at == START

    @pytest.mark.asyncio
    async def test_reregister_refreshes_device(self, registry, clock):
        """Test a known device gets a fresh cursor, name and platform."""
        await registry.register_device(USER, "A", "Phone", Platform.ANDROID)
        await registry.deactivate_device(USER, "A")
        clock.advance(30)

        device = await registry.register_device(USER, "A", "New Phone", Platform.IOS)
        devices = await registry.list_devices(USER)

        assert len(devices) == 1
        assert device.device_name == "New Phone"
        assert device.platform == Platform.IOS
        assert device.is_active
        assert device.last_sync_at == clock.now()
        assert device.registered_at == START

    @pytest.mark.asyncio
    async def test_registration_is_audited(self, registry, audit_storage):
        """Test registration emits device_registered."""
        await registry.register_device(USER, "A", "Phone", Platform.WEB)

        events = await audit_storage.get_recent_events()

        assert events[0].event_type == AuditEventType.DEVICE_REGISTERED
        assert events[0].device_id == "A"

    @pytest.mark.asyncio
    async def test_devices_are_per_user(self, registry):
        """Test one user's devices aren't listed for another."""
        await registry.register_device(USER, "A", "Phone", Platform.WEB)

        assert await registry.list_devices(OTHER_USER) == []

    @pytest.mark.asyncio
    async def test_deactivate_unknown_device(self, registry):
        """Test deactivating an unknown device raises NotFound."""
        with pytest.raises(DeviceNotFoundError):
            await registry.deactivate_device(USER, "nope")


class TestStatus:
    """Tests for status and cursor moves."""

    @pytest.mark.asyncio
    async def test_unknown_device_is_not_found(self, service):
        """Test status for an unknown device raises a NotFoundError."""
        with pytest.raises(NotFoundError):
            await service.device_status(USER, "ghost")

    @pytest.mark.asyncio
    async def test_counts_changes_since_cursor(self, service, clock):
        """Test pending counts cover every kind changed after lastSyncAt."""
        await service.registry.register_device(USER, "A", "Phone", Platform.ANDROID)
        clock.advance()
        await service.push(USER, push_body(
            "B",
            expenses=[change("E1", {"amount": 1}), change("E2", {"amount": 2})],
            categories=[change("C1", {"name": "Food"})],
        ))

        status = await service.device_status(USER, "A")

        assert status.pending_changes.expenses == 2
        assert status.pending_changes.categories == 1
        assert status.pending_changes.budgets == 0
        assert status.needs_sync is True

    @pytest.mark.asyncio
    async def test_tombstones_count_as_pending(self, service, clock):
        """Test a pending delete still needs syncing."""
        clock.advance()
        await service.push(USER, push_body("B", expenses=[change("E1", {"amount": 1})]))
        created = await service.store.get_record(USER, "expense", "E1")
        await service.registry.register_device(USER, "A", "Phone", Platform.ANDROID)
        clock.advance()
        await service.push(USER, push_body("B", expenses=[
            change("E1", client_timestamp=created.updated_at, action="delete")
        ]))

        status = await service.device_status(USER, "A")

        assert status.pending_changes.expenses == 1

    @pytest.mark.asyncio
    async def test_status_wire_shape(self, service):
        """Test status serializes with camelCase keys."""
        await service.registry.register_device(USER, "A", "Phone", Platform.ANDROID)

        body = (await service.device_status(USER, "A")).to_response()

        assert body["deviceId"] == "A"
        assert body["needsSync"] is False
        assert body["pendingChanges"] == {"expenses": 0, "categories": 0, "budgets": 0}

    @pytest.mark.asyncio
    async def test_advance_cursor_never_moves_back(self, service, clock):
        """Test an older mark leaves the cursor alone."""
        clock.advance(10)
        await service.registry.register_device(USER, "A", "Phone", Platform.ANDROID)

        device = await service.registry.advance_cursor(USER, "A", START)

        assert device.last_sync_at == clock.now()

    @pytest.mark.asyncio
    async def test_advance_cursor_unknown_device(self, service):
        """Test advancing an unknown device's cursor is a no-op."""
        assert await service.registry.advance_cursor(USER, "ghost", START) is None

    @pytest.mark.asyncio
    async def test_future_since_does_not_skip_later_writes(self, service, clock):
        """Test a pull with a skewed `since` leaves later writes pending."""
        await service.registry.register_device(USER, "A", "Phone", Platform.ANDROID)
        await service.pull_changes(USER, device_id="A", since=START + timedelta(days=365))
        clock.advance(60)
        await service.push(USER, push_body("B", expenses=[change("E1", {"amount": 1})]))

        device = await service.registry.get_device(USER, "A")
        status = await service.device_status(USER, "A")

        assert device.last_sync_at == START
        assert status.pending_changes.expenses == 1
        assert status.needs_sync is True
