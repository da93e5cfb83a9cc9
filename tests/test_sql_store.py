"""
Tests for the SQL record store

Runs against in-memory SQLite, so no database server is needed.
"""

from datetime import timedelta

import pytest

from expense_sync.audit import AuditLogger
from expense_sync.models import AuditEventType, EntityKind, Platform, SyncRecord
from expense_sync.orchestrator import SyncService
from expense_sync.storage import DuplicateError, SqlAuditStorage, SqlSyncStore, StorageError
from expense_sync.storage.sql import from_micros, records_table, to_micros

from helpers import OTHER_USER, USER, START, change, push_body


@pytest.fixture
def sql_store(clock) -> SqlSyncStore:
    return SqlSyncStore(database_url="sqlite://", clock=clock)


@pytest.fixture
def sql_service(sql_store, clock) -> SyncService:
    return SyncService(sql_store, clock=clock, audit_logger=AuditLogger(SqlAuditStorage(sql_store.engine)))


def _record(record_id="E1", **payload) -> SyncRecord:
    return SyncRecord(id=record_id, kind=EntityKind.EXPENSE, user_id=USER, payload=payload)


class TestMicros:
    """Tests for the timestamp encoding."""

    def test_round_trip_keeps_microseconds(self):
        """Test encoding is exact to the microsecond."""
        value = START + timedelta(microseconds=123456)
        assert from_micros(to_micros(value)) == value

    def test_naive_treated_as_utc(self):
        """Test naive datetimes encode as UTC."""
        assert to_micros(START.replace(tzinfo=None)) == to_micros(START)


class TestSqlSession:
    """Tests for transactional writes."""

    @pytest.mark.asyncio
    async def test_insert_and_read(self, sql_store, clock):
        """Test an inserted record reads back stamped."""
        clock.advance()
        async with sql_store.transaction() as session:
            await session.insert_record(_record(amount=10))

        record = await sql_store.get_record(USER, EntityKind.EXPENSE, "E1")

        assert record.payload == {"amount": 10}
        assert record.updated_at == clock.now()
        assert record.created_at == clock.now()

    @pytest.mark.asyncio
    async def test_duplicate_insert(self, sql_store):
        """Test inserting an existing key raises DuplicateError."""
        async with sql_store.transaction() as session:
            await session.insert_record(_record())

        with pytest.raises(DuplicateError):
            async with sql_store.transaction() as session:
                await session.insert_record(_record())

    @pytest.mark.asyncio
    async def test_conditional_update_refuses_newer_row(self, sql_store, clock):
        """Test the conditional write loses against a newer stored row."""
        clock.advance()
        async with sql_store.transaction() as session:
            await session.insert_record(_record(amount=1))
        stored = await sql_store.get_record(USER, EntityKind.EXPENSE, "E1")
        clock.advance()

        stale = stored.model_copy(deep=True)
        stale.payload["amount"] = 2
        async with sql_store.transaction() as session:
            written = await session.update_record_if_unchanged(
                stale, stored.updated_at - timedelta(seconds=1)
            )

        assert written is False
        record = await sql_store.get_record(USER, EntityKind.EXPENSE, "E1")
        assert record.payload["amount"] == 1

    @pytest.mark.asyncio
    async def test_conditional_update_applies_when_unchanged(self, sql_store, clock):
        """Test the conditional write succeeds when nothing moved."""
        clock.advance()
        async with sql_store.transaction() as session:
            await session.insert_record(_record(amount=1))
        stored = await sql_store.get_record(USER, EntityKind.EXPENSE, "E1")
        clock.advance()

        stored.payload["amount"] = 2
        async with sql_store.transaction() as session:
            written = await session.update_record_if_unchanged(stored, stored.updated_at)

        assert written is True
        record = await sql_store.get_record(USER, EntityKind.EXPENSE, "E1")
        assert record.payload["amount"] == 2
        assert record.updated_at == clock.now()

    @pytest.mark.asyncio
    async def test_exception_rolls_back(self, sql_store):
        """Test an error inside the block discards the writes."""
        with pytest.raises(RuntimeError):
            async with sql_store.transaction() as session:
                await session.insert_record(_record())
                raise RuntimeError("abort")

        assert await sql_store.get_record(USER, EntityKind.EXPENSE, "E1") is None


class TestSqlSyncFlow:
    """The sync flow end to end on the SQL backend."""

    @pytest.mark.asyncio
    async def test_push_conflict_and_feed(self, sql_service, clock):
        """Test create, stale update and feed on SQLite."""
        clock.advance()
        await sql_service.push(USER, push_body("A", expenses=[change("E1", {"amount": 10})]))
        created = await sql_service.store.get_record(USER, EntityKind.EXPENSE, "E1")
        clock.advance()

        result = await sql_service.push(USER, push_body("B", expenses=[
            change("E1", {"amount": 20}, created.updated_at - timedelta(seconds=1))
        ]))
        response = await sql_service.feed.changes_for_user(USER)

        assert len(result.conflicts) == 1
        assert response.changes.expenses[0].data["amount"] == 10
        assert response.timestamp == created.updated_at

    @pytest.mark.asyncio
    async def test_delete_and_purge(self, sql_service, clock):
        """Test soft delete then purge on SQLite."""
        clock.advance()
        await sql_service.push(USER, push_body("A", expenses=[change("E1", {"amount": 10})]))
        created = await sql_service.store.get_record(USER, EntityKind.EXPENSE, "E1")
        clock.advance()
        await sql_service.push(USER, push_body("A", expenses=[
            change("E1", client_timestamp=created.updated_at, action="delete")
        ]))
        deleted = await sql_service.store.get_record(USER, EntityKind.EXPENSE, "E1")
        assert deleted.tombstone

        clock.advance(60 * 24 * 60 * 60)
        await sql_service.registry.register_device(USER, "A", "Phone", Platform.ANDROID)
        counts = await sql_service.purge_tombstones(USER)

        assert counts["expenses"] == 1
        assert await sql_service.store.get_record(USER, EntityKind.EXPENSE, "E1") is None

    @pytest.mark.asyncio
    async def test_devices_and_cursor(self, sql_service, clock):
        """Test registration, listing and cursor updates on SQLite."""
        await sql_service.registry.register_device(USER, "A", "Phone", Platform.ANDROID)
        clock.advance()
        await sql_service.push(USER, push_body("A", expenses=[change("E1", {"amount": 1})]))

        devices = await sql_service.list_devices(USER)
        status = await sql_service.device_status(USER, "A")

        assert [d.device_id for d in devices] == ["A"]
        assert devices[0].last_sync_at == clock.now()
        assert status.needs_sync is False
        assert await sql_service.list_devices(OTHER_USER) == []

    @pytest.mark.asyncio
    async def test_audit_events_persisted(self, sql_service, clock):
        """Test audit events land in the SQL audit log."""
        clock.advance()
        await sql_service.push(USER, push_body("A", expenses=[change("E1", {"amount": 1})]))

        events = await sql_service.audit_logger.storage.get_recent_events(limit=5)

        assert {e.event_type for e in events} >= {
            AuditEventType.PUSH_RECEIVED,
            AuditEventType.PUSH_COMPLETED,
        }

    @pytest.mark.asyncio
    async def test_driver_error_rolls_back_push(self, sql_service, sql_store, clock):
        """Test a database error inside a push surfaces as StorageError and is audited."""
        records_table.drop(sql_store.engine)
        clock.advance()

        with pytest.raises(StorageError):
            await sql_service.push(USER, push_body("A", expenses=[change("E1", {"amount": 1})]))

        events = await sql_service.audit_logger.storage.get_recent_events(limit=5)
        assert AuditEventType.PUSH_ROLLED_BACK in {e.event_type for e in events}

    @pytest.mark.asyncio
    async def test_driver_error_rolls_back_resolve(self, sql_service, sql_store):
        """Test a database error inside a resolve surfaces as StorageError and is audited."""
        records_table.drop(sql_store.engine)

        with pytest.raises(StorageError):
            await sql_service.resolve_conflicts(USER, {"conflicts": [
                {"id": "E1", "type": "expense", "resolution": "local", "localData": {"amount": 1}},
            ]})

        events = await sql_service.audit_logger.storage.get_recent_events(limit=5)
        assert AuditEventType.RESOLVE_ROLLED_BACK in {e.event_type for e in events}

    @pytest.mark.asyncio
    async def test_ping(self, sql_store):
        """Test health check against a live engine."""
        assert await sql_store.ping() is True


class TestSqlStoreConfig:
    """Tests for constructing the store."""

    def test_requires_url_or_engine(self):
        """Test the store refuses to guess a database."""
        with pytest.raises(ValueError):
            SqlSyncStore()

    def test_storage_error_is_base_for_duplicates(self):
        """Test DuplicateError is handled as a StorageError."""
        assert issubclass(DuplicateError, StorageError)
