"""
Tombstone Collector

Soft-deleted records must stay in the store until every device has
seen the delete, or a device that was offline would never learn about
it. Once that is guaranteed they can be physically removed.

A tombstone is purged when it is older than:
1. The oldest cursor among the user's ACTIVE devices, and
2. now - SYNC_TOMBSTONE_RETENTION_DAYS

With no active devices nothing is purged.
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog

from expense_sync.audit import AuditLogger
from expense_sync.clock import Clock, SystemClock
from expense_sync.models.records import KIND_ORDER
from expense_sync.storage import SyncStoreInterface


logger = structlog.get_logger(__name__)


class TombstoneCollector:
    """Purges tombstones every active device has already pulled."""

    def __init__(
        self,
        store: SyncStoreInterface,
        clock: Optional[Clock] = None,
        audit_logger: Optional[AuditLogger] = None,
        retention_days: int = 30,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._audit_logger = audit_logger
        self._retention = timedelta(days=retention_days)

    async def cutoff(self, user_id: str) -> Optional[datetime]:
        """
        Latest deletion time that is safe to purge, exclusive.

        Returns:
            The cutoff, or None if the user has no active devices
        """
        devices = [d for d in await self._store.list_devices(user_id) if d.is_active]
        if not devices:
            return None
        oldest_cursor = min(d.last_sync_at for d in devices)
        return min(oldest_cursor, self._clock.now() - self._retention)

    async def purge(self, user_id: str) -> dict[str, int]:
        """
        Remove eligible tombstones for one user.

        Returns:
            Purged counts keyed by collection name
        """
        counts = {kind.collection: 0 for kind in KIND_ORDER}
        cutoff = await self.cutoff(user_id)
        if cutoff is None:
            logger.info("tombstone_purge_skipped", user_id=user_id, reason="no_active_devices")
            return counts

        for kind in KIND_ORDER:
            counts[kind.collection] = await self._store.purge_tombstones(user_id, kind, cutoff)

        logger.info("tombstones_purged", user_id=user_id, cutoff=cutoff.isoformat(), **counts)
        if self._audit_logger:
            await self._audit_logger.log_tombstones_purged(
                user_id=user_id,
                counts=counts,
                cutoff=cutoff.isoformat(),
            )
        return counts
