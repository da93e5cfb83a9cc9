"""Sync core: change feed, push engine, conflict resolution, devices, live updates."""

from expense_sync.sync.devices import DeviceNotFoundError, DeviceRegistry
from expense_sync.sync.engine import SyncEngine
from expense_sync.sync.feed import ChangeFeed, to_change_event
from expense_sync.sync.notifier import (
    CONNECTED_EVENT,
    SYNC_UPDATE_EVENT,
    ConnectionManager,
    LiveNotifier,
    NullNotifier,
)
from expense_sync.sync.resolver import ConflictResolver, merge_conflict_data
from expense_sync.sync.tombstones import TombstoneCollector

__all__ = [
    "CONNECTED_EVENT",
    "SYNC_UPDATE_EVENT",
    "ChangeFeed",
    "ConflictResolver",
    "ConnectionManager",
    "DeviceNotFoundError",
    "DeviceRegistry",
    "LiveNotifier",
    "NullNotifier",
    "SyncEngine",
    "TombstoneCollector",
    "merge_conflict_data",
    "to_change_event",
]
