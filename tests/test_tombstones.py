"""Tests for tombstone purging."""

from datetime import timedelta

import pytest

from expense_sync.models import AuditEventType, EntityKind, Platform
from expense_sync.sync import TombstoneCollector

from helpers import USER, change, push_body


DAY = 24 * 60 * 60


async def _create_and_delete(service, clock, record_id="E1"):
    clock.advance()
    await service.push(USER, push_body("A", expenses=[change(record_id, {"amount": 1})]))
    created = await service.store.get_record(USER, EntityKind.EXPENSE, record_id)
    clock.advance()
    await service.push(USER, push_body("A", expenses=[
        change(record_id, client_timestamp=created.updated_at, action="delete")
    ]))
    return await service.store.get_record(USER, EntityKind.EXPENSE, record_id)


class TestTombstoneCollector:
    """Tests for TombstoneCollector.purge."""

    @pytest.fixture
    def collector(self, store, clock, audit_logger):
        return TombstoneCollector(store, clock=clock, audit_logger=audit_logger, retention_days=30)

    @pytest.mark.asyncio
    async def test_nothing_purged_without_active_devices(self, collector, service, clock):
        """Test a user with no active devices keeps every tombstone."""
        await _create_and_delete(service, clock)
        clock.advance(60 * DAY)

        counts = await collector.purge(USER)

        assert counts == {"expenses": 0, "categories": 0, "budgets": 0}
        assert await service.store.get_record(USER, EntityKind.EXPENSE, "E1") is not None

    @pytest.mark.asyncio
    async def test_purged_once_all_devices_synced_and_retention_passed(self, collector, service, clock):
        """Test an old tombstone every device has seen is removed."""
        await _create_and_delete(service, clock)
        clock.advance(60 * DAY)
        await service.registry.register_device(USER, "A", "Phone", Platform.ANDROID)

        counts = await collector.purge(USER)

        assert counts["expenses"] == 1
        assert await service.store.get_record(USER, EntityKind.EXPENSE, "E1") is None

    @pytest.mark.asyncio
    async def test_lagging_device_blocks_purge(self, collector, service, clock):
        """Test a device that hasn't synced past the delete keeps it alive."""
        await service.registry.register_device(USER, "laggard", "Old Phone", Platform.ANDROID)
        await _create_and_delete(service, clock)
        clock.advance(60 * DAY)
        await service.registry.register_device(USER, "A", "Phone", Platform.ANDROID)

        counts = await collector.purge(USER)

        assert counts["expenses"] == 0

    @pytest.mark.asyncio
    async def test_inactive_device_does_not_block(self, collector, service, clock):
        """Test deactivated devices are ignored."""
        await service.registry.register_device(USER, "laggard", "Old Phone", Platform.ANDROID)
        await _create_and_delete(service, clock)
        clock.advance(60 * DAY)
        await service.registry.register_device(USER, "A", "Phone", Platform.ANDROID)
        await service.registry.deactivate_device(USER, "laggard")

        counts = await collector.purge(USER)

        assert counts["expenses"] == 1

    @pytest.mark.asyncio
    async def test_retention_window_respected(self, collector, service, clock):
        """Test a recent tombstone survives even if all devices have seen it."""
        await _create_and_delete(service, clock)
        clock.advance(DAY)
        await service.registry.register_device(USER, "A", "Phone", Platform.ANDROID)

        counts = await collector.purge(USER)

        assert counts["expenses"] == 0

    @pytest.mark.asyncio
    async def test_live_records_never_purged(self, collector, service, clock):
        """Test only tombstones are removed."""
        clock.advance()
        await service.push(USER, push_body("A", expenses=[change("E1", {"amount": 1})]))
        clock.advance(60 * DAY)
        await service.registry.register_device(USER, "A", "Phone", Platform.ANDROID)

        await collector.purge(USER)

        assert await service.store.get_record(USER, EntityKind.EXPENSE, "E1") is not None

    @pytest.mark.asyncio
    async def test_purge_is_audited(self, collector, service, clock, audit_storage):
        """Test a purge emits tombstones_purged."""
        await _create_and_delete(service, clock)
        clock.advance(60 * DAY)
        await service.registry.register_device(USER, "A", "Phone", Platform.ANDROID)

        await collector.purge(USER)
        events = await audit_storage.get_recent_events()

        assert events[0].event_type == AuditEventType.TOMBSTONES_PURGED

    @pytest.mark.asyncio
    async def test_cutoff_is_min_of_cursor_and_retention(self, collector, service, clock):
        """Test the cutoff takes the earlier of the two bounds."""
        await service.registry.register_device(USER, "A", "Phone", Platform.ANDROID)
        registered = clock.now()
        clock.advance(60 * DAY)

        assert await collector.cutoff(USER) == registered

        await service.registry.register_device(USER, "A", "Phone", Platform.ANDROID)
        assert await collector.cutoff(USER) == clock.now() - timedelta(days=30)
