"""
Sync Engine: push path

Applies a batch of client changes to the server copy.

DESIGN DECISION: A push is all-or-nothing at the storage level but not
at the change level:
1. Every change in the batch runs inside ONE store transaction
2. A change the server holds newer state for becomes a Conflict
   result; it never blocks the rest of the batch
3. A storage error rolls the whole batch back and propagates

CONFLICT RULE:
A change is stale when the stored updatedAt is later than the client's
clientTimestamp. The check and the write are one conditional write, so
a concurrent writer that sneaks in between shows up as a conflict
instead of being overwritten.

Processing order is expenses, then categories, then budgets, each in
list order.
"""

from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

import structlog

from expense_sync.audit import AuditLogger, create_correlation_id
from expense_sync.clock import Clock, SystemClock
from expense_sync.models.records import EntityKind, SyncMeta, SyncRecord, get_behavior
from expense_sync.models.sync import (
    ChangeAction,
    ChangeItem,
    Conflict,
    ConflictReason,
    ProcessedChanges,
    PushRequest,
    PushResult,
    SyncUpdateEvent,
)
from expense_sync.storage import StorageError, StoreSession, SyncStoreInterface
from expense_sync.sync.devices import DeviceRegistry
from expense_sync.sync.notifier import LiveNotifier, NullNotifier


logger = structlog.get_logger(__name__)

CursorPolicy = Literal["high_water_mark", "wall_clock"]


class _ChangeOutcome:
    """What happened to one change."""

    __slots__ = ("conflict", "item", "written_at")

    def __init__(
        self,
        conflict: Optional[Conflict] = None,
        item: Optional[dict] = None,
        written_at: Optional[datetime] = None,
    ):
        self.conflict = conflict
        self.item = item
        self.written_at = written_at


def _deleted_item(record_id: str) -> dict:
    return {"id": record_id, "action": "deleted"}


class SyncEngine:
    """
    Processes pushes.

    Usage:
        engine = SyncEngine(store, registry)
        result = await engine.push(user_id, push_request)
    """

    def __init__(
        self,
        store: SyncStoreInterface,
        registry: DeviceRegistry,
        notifier: Optional[LiveNotifier] = None,
        clock: Optional[Clock] = None,
        audit_logger: Optional[AuditLogger] = None,
        cursor_policy: CursorPolicy = "high_water_mark",
    ):
        self._store = store
        self._registry = registry
        self._notifier = notifier or NullNotifier()
        self._clock = clock or SystemClock()
        self._audit_logger = audit_logger
        self._cursor_policy = cursor_policy

    # -------------------------------------------------------------------------
    # Per-change processing
    # -------------------------------------------------------------------------

    def _conflict(
        self,
        kind: EntityKind,
        change: ChangeItem,
        existing: SyncRecord,
        reason: ConflictReason,
    ) -> _ChangeOutcome:
        return _ChangeOutcome(conflict=Conflict(
            id=change.id,
            type=kind,
            local_data=change.data,
            remote_data=existing.to_document(),
            reason=reason,
        ))

    async def _lost_race(
        self,
        session: StoreSession,
        user_id: str,
        kind: EntityKind,
        change: ChangeItem,
        reason: ConflictReason,
    ) -> _ChangeOutcome:
        current = await session.get_record(user_id, kind, change.id)
        logger.info("conditional_write_lost", user_id=user_id, kind=kind.value, id=change.id)
        if current is None:
            raise StorageError(f"{kind.value} {change.id} disappeared during push")
        return self._conflict(kind, change, current, reason)

    async def _process_delete(
        self,
        session: StoreSession,
        user_id: str,
        device_id: str,
        kind: EntityKind,
        change: ChangeItem,
    ) -> _ChangeOutcome:
        existing = await session.get_record(user_id, kind, change.id)
        if existing is None:
            return _ChangeOutcome(item=_deleted_item(change.id))

        client_ts = change.effective_client_timestamp
        if existing.updated_at > client_ts:
            return self._conflict(kind, change, existing, ConflictReason.NEWER_VERSION_EXISTS)

        if existing.tombstone:
            return _ChangeOutcome(item=_deleted_item(change.id))

        get_behavior(kind).soft_delete(existing, self._clock.now())
        existing.sync.device_id = device_id
        existing.sync.sync_version += 1

        if not await session.update_record_if_unchanged(existing, client_ts):
            return await self._lost_race(
                session, user_id, kind, change, ConflictReason.NEWER_VERSION_EXISTS
            )
        return _ChangeOutcome(item=_deleted_item(change.id), written_at=existing.updated_at)

    async def _process_upsert(
        self,
        session: StoreSession,
        user_id: str,
        device_id: str,
        kind: EntityKind,
        change: ChangeItem,
    ) -> _ChangeOutcome:
        behavior = get_behavior(kind)
        data = change.data or {}
        existing = await session.get_record(user_id, kind, change.id)

        if existing is None:
            record = SyncRecord(
                id=change.id,
                kind=kind,
                user_id=user_id,
                sync=SyncMeta(device_id=device_id, sync_version=1),
            )
            behavior.apply_fields(record, data, self._clock.now())
            await session.insert_record(record)
            return _ChangeOutcome(item=record.to_document(), written_at=record.updated_at)

        client_ts = change.effective_client_timestamp
        if existing.updated_at > client_ts:
            return self._conflict(kind, change, existing, ConflictReason.CONCURRENT_MODIFICATION)

        behavior.apply_fields(existing, data, self._clock.now())
        existing.sync.device_id = device_id
        existing.sync.sync_version += 1

        if not await session.update_record_if_unchanged(existing, client_ts):
            return await self._lost_race(
                session, user_id, kind, change, ConflictReason.CONCURRENT_MODIFICATION
            )
        return _ChangeOutcome(item=existing.to_document(), written_at=existing.updated_at)

    async def _process_change(
        self,
        session: StoreSession,
        user_id: str,
        device_id: str,
        kind: EntityKind,
        change: ChangeItem,
    ) -> _ChangeOutcome:
        if change.action == ChangeAction.DELETE:
            return await self._process_delete(session, user_id, device_id, kind, change)
        return await self._process_upsert(session, user_id, device_id, kind, change)

    # -------------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------------

    async def push(
        self,
        user_id: str,
        request: PushRequest,
        correlation_id: Optional[UUID] = None,
    ) -> PushResult:
        """
        Apply a push.

        Returns:
            PushResult with accepted changes and conflicts

        Raises:
            StorageError: The push was rolled back; nothing was written
        """
        correlation_id = correlation_id or create_correlation_id()
        device_id = request.device_id

        if self._audit_logger:
            await self._audit_logger.log_push_received(
                user_id=user_id,
                device_id=device_id,
                change_count=request.changes.total,
                correlation_id=correlation_id,
            )

        conflicts: list[Conflict] = []
        processed = ProcessedChanges()
        high_water_mark: Optional[datetime] = None

        try:
            async with self._store.transaction() as session:
                for kind, change in request.changes.items():
                    outcome = await self._process_change(session, user_id, device_id, kind, change)
                    if outcome.conflict is not None:
                        conflicts.append(outcome.conflict)
                        continue
                    processed.add(kind, outcome.item)
                    if outcome.written_at is not None:
                        if high_water_mark is None or outcome.written_at > high_water_mark:
                            high_water_mark = outcome.written_at
        except StorageError as e:
            logger.error("push_rolled_back", user_id=user_id, device_id=device_id, error=str(e))
            if self._audit_logger:
                await self._audit_logger.log_push_rolled_back(
                    user_id=user_id,
                    device_id=device_id,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            raise

        if self._audit_logger:
            for conflict in conflicts:
                await self._audit_logger.log_conflict_detected(
                    user_id=user_id,
                    device_id=device_id,
                    entity_type=conflict.type.value,
                    entity_id=conflict.id,
                    reason=conflict.reason.value,
                    correlation_id=correlation_id,
                )
            await self._audit_logger.log_push_completed(
                user_id=user_id,
                device_id=device_id,
                processed=processed.total,
                conflicts=len(conflicts),
                correlation_id=correlation_id,
            )

        await self._update_cursor(user_id, device_id, high_water_mark)

        now = self._clock.now()
        if processed.total:
            await self._broadcast(user_id, device_id, processed, now)

        return PushResult(success=True, conflicts=conflicts, processed=processed, timestamp=now)

    async def _update_cursor(
        self,
        user_id: str,
        device_id: str,
        high_water_mark: Optional[datetime],
    ) -> None:
        """
        Move the pushing device's cursor after a committed push.

        high_water_mark: the cursor only moves to the latest write of this
        push, and only if nobody else wrote in between; otherwise the
        device still has to pull those writes.
        wall_clock: the cursor becomes "now".
        """
        if self._cursor_policy == "wall_clock":
            await self._registry.set_cursor(user_id, device_id, self._clock.now())
            return

        if high_water_mark is None:
            return
        device = await self._store.get_device(user_id, device_id)
        if device is None:
            logger.warning("push_from_unregistered_device", user_id=user_id, device_id=device_id)
            return
        if high_water_mark <= device.last_sync_at:
            return
        if await self._store.has_foreign_writes(user_id, device_id, device.last_sync_at, high_water_mark):
            logger.info(
                "cursor_held_back",
                user_id=user_id,
                device_id=device_id,
                last_sync_at=device.last_sync_at.isoformat(),
            )
            return
        await self._registry.advance_cursor(user_id, device_id, high_water_mark)

    async def _broadcast(
        self,
        user_id: str,
        device_id: str,
        processed: ProcessedChanges,
        timestamp: datetime,
    ) -> None:
        event = SyncUpdateEvent(device_id=device_id, changes=processed, timestamp=timestamp)
        try:
            delivered = await self._notifier.broadcast(user_id, event)
            logger.debug("live_broadcast", user_id=user_id, device_id=device_id, delivered=delivered)
        except Exception as e:
            logger.warning("live_broadcast_failed", user_id=user_id, error=str(e))
