"""
Conflict Resolver

Applies a client's decision for each conflict it was handed by a push.

DESIGN DECISION: A resolution is just another accepted write. The
chosen payload (local, remote or merged) is applied as an upsert that
bumps syncVersion and clears the conflict flag, so every other device
picks it up through the change feed like any other change.

MERGE POLICY:
- Start from the remote (server) copy
- Local-preferred fields overwrite when the local side defines them
- Union fields (tags, keywords) become the duplicate-free union when
  both sides hold a list, local order first
- Everything else keeps the remote value
"""

from typing import Any, Iterable, Optional
from uuid import UUID

import structlog

from expense_sync.audit import AuditLogger, create_correlation_id
from expense_sync.clock import Clock, SystemClock
from expense_sync.models.records import SyncMeta, SyncRecord, get_behavior
from expense_sync.models.sync import (
    ConflictResolutionRequest,
    ProcessedChanges,
    ResolutionStrategy,
    ResolvedItem,
    ResolveResult,
    SyncUpdateEvent,
)
from expense_sync.storage import StorageError, StoreSession, SyncStoreInterface
from expense_sync.sync.notifier import LiveNotifier, NullNotifier


logger = structlog.get_logger(__name__)


DEFAULT_LOCAL_PREFERRED_FIELDS = (
    "description",
    "amount",
    "category",
    "notes",
    "tags",
    "name",
    "color",
    "icon",
    "keywords",
)
DEFAULT_UNION_FIELDS = ("tags", "keywords")


def _union(local: list, remote: list) -> list:
    """Ordered union, local items first. Works for unhashable items."""
    merged: list = []
    for item in list(local) + list(remote):
        if item not in merged:
            merged.append(item)
    return merged


def merge_conflict_data(
    local: Optional[dict[str, Any]],
    remote: Optional[dict[str, Any]],
    local_preferred: Iterable[str] = DEFAULT_LOCAL_PREFERRED_FIELDS,
    union_fields: Iterable[str] = DEFAULT_UNION_FIELDS,
) -> dict[str, Any]:
    """
    Combine two versions of a record field by field.

    Neither input is modified.
    """
    local = local or {}
    merged = dict(remote or {})

    for field in local_preferred:
        if field in local:
            merged[field] = local[field]

    for field in union_fields:
        local_value = local.get(field)
        remote_value = (remote or {}).get(field)
        if isinstance(local_value, list) and isinstance(remote_value, list):
            merged[field] = _union(local_value, remote_value)

    return merged


class ConflictResolver:
    """Applies local/remote/merge decisions in one transaction."""

    def __init__(
        self,
        store: SyncStoreInterface,
        clock: Optional[Clock] = None,
        audit_logger: Optional[AuditLogger] = None,
        notifier: Optional[LiveNotifier] = None,
        local_preferred_fields: Iterable[str] = DEFAULT_LOCAL_PREFERRED_FIELDS,
        union_fields: Iterable[str] = DEFAULT_UNION_FIELDS,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._audit_logger = audit_logger
        self._notifier = notifier or NullNotifier()
        self._local_preferred = tuple(local_preferred_fields)
        self._union_fields = tuple(union_fields)

    def final_data(self, conflict: ConflictResolutionRequest) -> Optional[dict[str, Any]]:
        """The payload a resolution settles on. None means "deleted"."""
        if conflict.resolution == ResolutionStrategy.LOCAL:
            return conflict.local_data
        if conflict.resolution == ResolutionStrategy.REMOTE:
            return conflict.remote_data
        return merge_conflict_data(
            conflict.local_data,
            conflict.remote_data,
            self._local_preferred,
            self._union_fields,
        )

    async def _apply(
        self,
        session: StoreSession,
        user_id: str,
        conflict: ConflictResolutionRequest,
        device_id: Optional[str],
    ) -> SyncRecord:
        now = self._clock.now()
        behavior = get_behavior(conflict.type)
        final = self.final_data(conflict)

        record = await session.get_record(user_id, conflict.type, conflict.id)
        created = record is None
        if created:
            record = SyncRecord(
                id=conflict.id,
                kind=conflict.type,
                user_id=user_id,
                sync=SyncMeta(device_id=device_id, sync_version=1),
            )
        else:
            record.sync.sync_version += 1
            if device_id:
                record.sync.device_id = device_id

        if final is None:
            if not record.tombstone:
                behavior.soft_delete(record, now)
        else:
            behavior.apply_fields(record, final, now)
            # A chosen payload brings the record back unless it says otherwise
            if record.tombstone and behavior.flag_key not in final:
                behavior.restore(record)

        record.sync.conflict_resolution.has_conflict = False
        record.sync.conflict_resolution.resolved_at = now

        if created:
            return await session.insert_record(record)
        return await session.save_record(record)

    async def resolve(
        self,
        user_id: str,
        conflicts: list[ConflictResolutionRequest],
        device_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> ResolveResult:
        """
        Resolve a batch of conflicts.

        All resolutions commit together or not at all.

        Raises:
            StorageError: If the transaction fails; nothing is written
        """
        correlation_id = correlation_id or create_correlation_id()
        written: list[tuple[ConflictResolutionRequest, SyncRecord]] = []

        try:
            async with self._store.transaction() as session:
                for conflict in conflicts:
                    record = await self._apply(session, user_id, conflict, device_id)
                    written.append((conflict, record))
        except StorageError as e:
            logger.error("resolve_rolled_back", user_id=user_id, error=str(e))
            if self._audit_logger:
                await self._audit_logger.log_resolve_rolled_back(
                    user_id=user_id,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            raise

        result = ResolveResult(success=True)
        processed = ProcessedChanges()
        for conflict, record in written:
            document = record.to_document()
            result.resolved.append(ResolvedItem(
                id=conflict.id,
                type=conflict.type,
                resolution=conflict.resolution,
                data=document,
            ))
            if record.is_live:
                processed.add(conflict.type, document)
            else:
                processed.add(conflict.type, {"id": record.id, "action": "deleted"})

            if self._audit_logger:
                await self._audit_logger.log_conflict_resolved(
                    user_id=user_id,
                    entity_type=conflict.type.value,
                    entity_id=conflict.id,
                    resolution=conflict.resolution.value,
                    sync_version=record.sync.sync_version,
                    correlation_id=correlation_id,
                )

        if written:
            await self._broadcast(user_id, device_id, processed)
        return result

    async def _broadcast(
        self,
        user_id: str,
        device_id: Optional[str],
        processed: ProcessedChanges,
    ) -> None:
        event = SyncUpdateEvent(device_id=device_id, changes=processed, timestamp=self._clock.now())
        try:
            await self._notifier.broadcast(user_id, event)
        except Exception as e:
            logger.warning("live_broadcast_failed", user_id=user_id, error=str(e))
