"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Run against SQL in production and memory in tests
2. Keep the sync logic decoupled from the storage engine
3. Put the all-or-nothing push contract in one place (transactions)

The interface is intentionally small - we're not building an ORM.
Records are keyed by (user_id, kind, id).

Writes always go through a StoreSession obtained from transaction().
A session's writes are committed together when the block exits
normally and discarded if it raises.

Do not call store-level methods from inside a transaction block;
use the session instead.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncContextManager, Optional
from uuid import UUID

from expense_sync.models.audit import AuditEvent
from expense_sync.models.records import EntityKind, SyncRecord
from expense_sync.models.sync import Device


def stamp_write(record: SyncRecord, now: datetime) -> SyncRecord:
    """
    Apply server bookkeeping for an accepted write.

    updatedAt never moves backwards, even if the server clock does.
    """
    previous = record.updated_at
    stamped = now if previous is None or now >= previous else previous
    record.updated_at = stamped
    if record.created_at is None:
        record.created_at = stamped
    record.sync.last_synced_at = stamped
    return record


class StoreSession(ABC):
    """Operations available inside one transaction."""

    @abstractmethod
    async def get_record(
        self,
        user_id: str,
        kind: EntityKind,
        record_id: str,
    ) -> Optional[SyncRecord]:
        """
        Read a record, tombstones included.

        Returns:
            A copy of the stored record, or None
        """
        pass

    @abstractmethod
    async def insert_record(self, record: SyncRecord) -> SyncRecord:
        """
        Create a record. Stamps createdAt/updatedAt.

        Raises:
            DuplicateError: If a record with the same key exists
        """
        pass

    @abstractmethod
    async def update_record_if_unchanged(
        self,
        record: SyncRecord,
        not_newer_than: datetime,
    ) -> bool:
        """
        Conditionally overwrite an existing record.

        The write happens only if the stored updatedAt is still
        <= not_newer_than at write time. Check and write are one
        atomic step.

        Returns:
            True if written, False if the stored copy is newer or gone
        """
        pass

    @abstractmethod
    async def save_record(self, record: SyncRecord) -> SyncRecord:
        """Unconditional create-or-replace. Stamps updatedAt."""
        pass

    @abstractmethod
    async def get_device(self, user_id: str, device_id: str) -> Optional[Device]:
        pass

    @abstractmethod
    async def save_device(self, user_id: str, device: Device) -> None:
        pass


class SyncStoreInterface(ABC):
    """
    Abstract interface for the record store.

    Any storage implementation (SQL, in-memory, etc.)
    must implement these methods.
    """

    @abstractmethod
    def transaction(self) -> AsyncContextManager[StoreSession]:
        """
        Open a transaction.

        Usage:
            async with store.transaction() as session:
                record = await session.get_record(user_id, kind, record_id)
                ...

        Raises:
            StorageError: If the transaction cannot be started or committed
        """
        pass

    @abstractmethod
    async def get_record(
        self,
        user_id: str,
        kind: EntityKind,
        record_id: str,
    ) -> Optional[SyncRecord]:
        pass

    @abstractmethod
    async def list_changed(
        self,
        user_id: str,
        kind: EntityKind,
        since: datetime,
    ) -> list[SyncRecord]:
        """
        Records with updatedAt strictly after `since`.

        Returns:
            Records ordered by (updatedAt, id), tombstones included
        """
        pass

    @abstractmethod
    async def count_changed(
        self,
        user_id: str,
        kind: EntityKind,
        since: datetime,
    ) -> int:
        pass

    @abstractmethod
    async def has_foreign_writes(
        self,
        user_id: str,
        device_id: str,
        after: datetime,
        up_to: datetime,
    ) -> bool:
        """
        True if any record in (after, up_to] was last written by a
        device other than `device_id`.
        """
        pass

    @abstractmethod
    async def purge_tombstones(
        self,
        user_id: str,
        kind: EntityKind,
        before: datetime,
    ) -> int:
        """
        Physically remove tombstones deleted before `before`.

        Returns:
            Number of records removed
        """
        pass

    @abstractmethod
    async def list_devices(self, user_id: str) -> list[Device]:
        pass

    @abstractmethod
    async def get_device(self, user_id: str, device_id: str) -> Optional[Device]:
        pass

    @abstractmethod
    async def save_device(self, user_id: str, device: Device) -> None:
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """Cheap health check."""
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one push).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
