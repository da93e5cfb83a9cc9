"""
In-Memory Storage Implementation

Used for tests and single-process deployments.

Transactions are serialized with one asyncio.Lock and rolled back by
restoring a snapshot taken when the transaction opened. Everything
handed out is a copy, so callers can only change stored state by
writing through a session.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional
from uuid import UUID

from expense_sync.clock import Clock, SystemClock
from expense_sync.models.audit import AuditEvent
from expense_sync.models.records import EntityKind, SyncRecord
from expense_sync.models.sync import Device
from expense_sync.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    StoreSession,
    SyncStoreInterface,
    stamp_write,
)


RecordKey = tuple[str, EntityKind, str]


def _key(user_id: str, kind: EntityKind, record_id: str) -> RecordKey:
    return (user_id, EntityKind(kind), record_id)


class _InMemorySession(StoreSession):
    """Session bound to an open in-memory transaction."""

    def __init__(self, store: "InMemorySyncStore"):
        self._store = store

    async def get_record(
        self,
        user_id: str,
        kind: EntityKind,
        record_id: str,
    ) -> Optional[SyncRecord]:
        return self._store._read_record(_key(user_id, kind, record_id))

    async def insert_record(self, record: SyncRecord) -> SyncRecord:
        key = _key(record.user_id, record.kind, record.id)
        if key in self._store._records:
            raise DuplicateError(f"{record.kind.value} already exists: {record.id}")
        return self._store._write_record(key, record)

    async def update_record_if_unchanged(
        self,
        record: SyncRecord,
        not_newer_than: datetime,
    ) -> bool:
        key = _key(record.user_id, record.kind, record.id)
        stored = self._store._records.get(key)
        if stored is None or stored.updated_at > not_newer_than:
            return False
        self._store._write_record(key, record)
        return True

    async def save_record(self, record: SyncRecord) -> SyncRecord:
        key = _key(record.user_id, record.kind, record.id)
        return self._store._write_record(key, record)

    async def get_device(self, user_id: str, device_id: str) -> Optional[Device]:
        return self._store._read_device(user_id, device_id)

    async def save_device(self, user_id: str, device: Device) -> None:
        self._store._write_device(user_id, device)


class InMemorySyncStore(SyncStoreInterface):
    """
    Dictionary-backed record store.

    Not shared across processes; state is lost on restart.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._records: dict[RecordKey, SyncRecord] = {}
        self._devices: dict[str, dict[str, Device]] = {}
        self._lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Internal helpers (callers must hold the lock)
    # -------------------------------------------------------------------------

    def _read_record(self, key: RecordKey) -> Optional[SyncRecord]:
        stored = self._records.get(key)
        return stored.model_copy(deep=True) if stored else None

    def _write_record(self, key: RecordKey, record: SyncRecord) -> SyncRecord:
        stamp_write(record, self._clock.now())
        self._records[key] = record.model_copy(deep=True)
        return record

    def _read_device(self, user_id: str, device_id: str) -> Optional[Device]:
        device = self._devices.get(user_id, {}).get(device_id)
        return device.model_copy(deep=True) if device else None

    def _write_device(self, user_id: str, device: Device) -> None:
        self._devices.setdefault(user_id, {})[device.device_id] = device.model_copy(deep=True)

    # -------------------------------------------------------------------------
    # SyncStoreInterface
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreSession]:
        async with self._lock:
            snapshot = (copy.deepcopy(self._records), copy.deepcopy(self._devices))
            try:
                yield _InMemorySession(self)
            except BaseException:
                self._records, self._devices = snapshot
                raise

    async def get_record(
        self,
        user_id: str,
        kind: EntityKind,
        record_id: str,
    ) -> Optional[SyncRecord]:
        async with self._lock:
            return self._read_record(_key(user_id, kind, record_id))

    async def list_changed(
        self,
        user_id: str,
        kind: EntityKind,
        since: datetime,
    ) -> list[SyncRecord]:
        kind = EntityKind(kind)
        async with self._lock:
            changed = [
                record.model_copy(deep=True)
                for (owner, record_kind, _), record in self._records.items()
                if owner == user_id and record_kind == kind and record.updated_at > since
            ]
        changed.sort(key=lambda r: (r.updated_at, r.id))
        return changed

    async def count_changed(
        self,
        user_id: str,
        kind: EntityKind,
        since: datetime,
    ) -> int:
        kind = EntityKind(kind)
        async with self._lock:
            return sum(
                1
                for (owner, record_kind, _), record in self._records.items()
                if owner == user_id and record_kind == kind and record.updated_at > since
            )

    async def has_foreign_writes(
        self,
        user_id: str,
        device_id: str,
        after: datetime,
        up_to: datetime,
    ) -> bool:
        async with self._lock:
            return any(
                after < record.updated_at <= up_to and record.sync.device_id != device_id
                for (owner, _, _), record in self._records.items()
                if owner == user_id
            )

    async def purge_tombstones(
        self,
        user_id: str,
        kind: EntityKind,
        before: datetime,
    ) -> int:
        kind = EntityKind(kind)
        async with self._lock:
            doomed = [
                key
                for key, record in self._records.items()
                if key[0] == user_id
                and key[1] == kind
                and record.tombstone
                and record.tombstoned_at < before
            ]
            for key in doomed:
                del self._records[key]
        return len(doomed)

    async def list_devices(self, user_id: str) -> list[Device]:
        async with self._lock:
            return [d.model_copy(deep=True) for d in self._devices.get(user_id, {}).values()]

    async def get_device(self, user_id: str, device_id: str) -> Optional[Device]:
        async with self._lock:
            return self._read_device(user_id, device_id)

    async def save_device(self, user_id: str, device: Device) -> None:
        async with self._lock:
            self._write_device(user_id, device)

    async def ping(self) -> bool:
        return True


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of audit events."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        return [e for e in self._events if e.correlation_id == correlation_id]

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        return [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        return list(reversed(self._events))[:limit]
