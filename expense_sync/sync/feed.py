"""
Change Feed

For a user and a "since" timestamp, lists every record changed after
that timestamp. Tombstones are reported as deletes so other devices can
propagate them.

The feed has no side effects. Advancing a device's cursor after a pull
is the caller's business.
"""

from datetime import datetime
from typing import Optional

from expense_sync.clock import EPOCH, Clock, SystemClock, ensure_utc
from expense_sync.models.records import KIND_ORDER, EntityKind, SyncRecord
from expense_sync.models.sync import ChangeAction, ChangeEvent, ChangesResponse, FeedChanges
from expense_sync.storage import SyncStoreInterface


def to_change_event(record: SyncRecord) -> ChangeEvent:
    """Describe a stored record as a feed entry."""
    if record.is_live:
        return ChangeEvent(
            id=record.id,
            kind=record.kind,
            action=ChangeAction.UPSERT,
            data=record.to_document(),
            updated_at=record.updated_at,
        )
    return ChangeEvent(
        id=record.id,
        kind=record.kind,
        action=ChangeAction.DELETE,
        data=None,
        updated_at=record.updated_at,
    )


class ChangeFeed:
    """
    Produces ordered change events from the record store.

    Selection is strict (`updatedAt > since`); ordering is ascending
    updatedAt with ties broken by id.
    """

    def __init__(self, store: SyncStoreInterface, clock: Optional[Clock] = None):
        self._store = store
        self._clock = clock or SystemClock()

    async def changes(
        self,
        user_id: str,
        kind: EntityKind,
        since: Optional[datetime] = None,
    ) -> list[ChangeEvent]:
        """Change events for one entity kind."""
        since = ensure_utc(since) if since else EPOCH
        records = await self._store.list_changed(user_id, EntityKind(kind), since)
        events = [to_change_event(record) for record in records]
        # Backends already order; sort again so the contract doesn't depend on it
        events.sort(key=lambda e: (e.updated_at, e.id))
        return events

    async def changes_for_user(
        self,
        user_id: str,
        since: Optional[datetime] = None,
    ) -> ChangesResponse:
        """
        Change events for every kind.

        The response timestamp is the high-water mark: the latest
        updatedAt delivered, or `since` when nothing changed. A `since`
        ahead of the server clock is capped at now.
        """
        since = ensure_utc(since) if since else EPOCH
        changes = FeedChanges()
        high_water_mark = min(since, self._clock.now())

        for kind in KIND_ORDER:
            events = await self.changes(user_id, kind, since)
            changes.for_kind(kind).extend(events)
            if events:
                high_water_mark = max(high_water_mark, events[-1].updated_at)

        return ChangesResponse(timestamp=high_water_mark, changes=changes)
