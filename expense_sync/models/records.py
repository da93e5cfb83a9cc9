"""
Synced Record Models

A SyncRecord is the server's copy of one Expense, Category or Budget.
The sync layer treats entity payloads as an opaque bag of fields; only
the system fields below are interpreted.

DESIGN DECISION: Entity kinds differ only in how they express deletion
(Expense sets isDeleted=true, Category/Budget set isActive=false).
That difference lives in a small closed set of EntityBehavior variants
selected by EntityKind, so nothing downstream switches on model names.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# Keys a client payload may never set directly
SYSTEM_KEYS = frozenset({
    "id",
    "_id",
    "userId",
    "createdAt",
    "updatedAt",
    "deletedAt",
    "sync",
})


# =============================================================================
# ENUMS
# =============================================================================

class EntityKind(str, Enum):
    """Entity kinds subject to sync."""
    EXPENSE = "expense"
    CATEGORY = "category"
    BUDGET = "budget"

    @property
    def collection(self) -> str:
        """Plural name used in request and response bodies."""
        return _COLLECTIONS[self]

    @classmethod
    def from_collection(cls, name: str) -> "EntityKind":
        for kind, collection in _COLLECTIONS.items():
            if collection == name:
                return kind
        raise ValueError(f"Unknown collection: {name}")


_COLLECTIONS = {
    EntityKind.EXPENSE: "expenses",
    EntityKind.CATEGORY: "categories",
    EntityKind.BUDGET: "budgets",
}

# Processing order for a push
KIND_ORDER = (EntityKind.EXPENSE, EntityKind.CATEGORY, EntityKind.BUDGET)


# =============================================================================
# SYNC METADATA
# =============================================================================

class ConflictResolutionInfo(BaseModel):
    """Conflict bookkeeping on a record."""

    has_conflict: bool = False
    resolved_at: Optional[datetime] = None


class SyncMeta(BaseModel):
    """Per-record sync metadata."""

    device_id: Optional[str] = Field(
        default=None,
        description="Device that made the last accepted write"
    )
    sync_version: int = Field(
        default=1,
        ge=1,
        description="Incremented by one on every accepted write"
    )
    last_synced_at: Optional[datetime] = None
    conflict_resolution: ConflictResolutionInfo = Field(
        default_factory=ConflictResolutionInfo
    )


class SyncRecord(BaseModel):
    """
    Server copy of one synced entity.

    `tombstone` is the kind-neutral soft-delete state; the wire flag
    (isDeleted / isActive) is derived from it by the kind's behavior.
    """

    id: str = Field(..., min_length=1)
    kind: EntityKind
    user_id: str = Field(..., min_length=1)

    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Opaque entity payload (amount, name, allocations...)"
    )

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    tombstone: bool = False
    deleted_at: Optional[datetime] = None

    sync: SyncMeta = Field(default_factory=SyncMeta)

    @property
    def behavior(self) -> "EntityBehavior":
        return get_behavior(self.kind)

    @property
    def is_live(self) -> bool:
        return self.behavior.is_live(self)

    @property
    def tombstoned_at(self) -> Optional[datetime]:
        """When the record became a tombstone, best effort."""
        if not self.tombstone:
            return None
        return self.deleted_at or self.updated_at

    def to_document(self) -> dict[str, Any]:
        """
        Render the record the way clients see it.

        Payload fields sit at the top level next to the camelCase
        system fields.
        """
        document: dict[str, Any] = {"id": self.id, "userId": self.user_id}
        document.update(self.payload)
        document["createdAt"] = _iso(self.created_at)
        document["updatedAt"] = _iso(self.updated_at)
        document[self.behavior.flag_key] = self.behavior.flag_value(self)
        if self.deleted_at is not None:
            document["deletedAt"] = _iso(self.deleted_at)
        document["sync"] = {
            "deviceId": self.sync.device_id,
            "syncVersion": self.sync.sync_version,
            "lastSyncedAt": _iso(self.sync.last_synced_at),
            "conflictResolution": {
                "hasConflict": self.sync.conflict_resolution.has_conflict,
                "resolvedAt": _iso(self.sync.conflict_resolution.resolved_at),
            },
        }
        return document


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# =============================================================================
# ENTITY BEHAVIORS
# =============================================================================

class EntityBehavior:
    """
    Kind-specific capabilities used by the sync layer.

    Subclasses only decide how deletion is spelled on the wire and
    whether a deletion timestamp is kept.
    """

    kind: EntityKind
    flag_key: str
    stamps_deleted_at: bool = False

    def is_live(self, record: SyncRecord) -> bool:
        return not record.tombstone

    def flag_value(self, record: SyncRecord) -> bool:
        raise NotImplementedError

    def tombstone_from_flag(self, value: Any) -> bool:
        raise NotImplementedError

    def soft_delete(self, record: SyncRecord, now: datetime) -> None:
        record.tombstone = True
        if self.stamps_deleted_at:
            record.deleted_at = now

    def restore(self, record: SyncRecord) -> None:
        record.tombstone = False
        record.deleted_at = None

    def apply_fields(
        self,
        record: SyncRecord,
        partial: dict[str, Any],
        now: datetime,
    ) -> None:
        """
        Shallow-overwrite payload fields onto a record.

        System keys are ignored. The kind's delete flag, when present,
        deletes or restores the record.
        """
        for key, value in partial.items():
            if key in SYSTEM_KEYS:
                continue
            if key == self.flag_key:
                if self.tombstone_from_flag(value):
                    if not record.tombstone:
                        self.soft_delete(record, now)
                elif record.tombstone:
                    self.restore(record)
                continue
            record.payload[key] = value

    def carries_delete_flag(self, partial: Optional[dict[str, Any]]) -> bool:
        """True if a payload explicitly marks the record deleted."""
        if not partial or self.flag_key not in partial:
            return False
        return self.tombstone_from_flag(partial[self.flag_key])


class ExpenseBehavior(EntityBehavior):
    kind = EntityKind.EXPENSE
    flag_key = "isDeleted"
    stamps_deleted_at = True

    def flag_value(self, record: SyncRecord) -> bool:
        return record.tombstone

    def tombstone_from_flag(self, value: Any) -> bool:
        return bool(value)


class CategoryBehavior(EntityBehavior):
    kind = EntityKind.CATEGORY
    flag_key = "isActive"

    def flag_value(self, record: SyncRecord) -> bool:
        return not record.tombstone

    def tombstone_from_flag(self, value: Any) -> bool:
        return not bool(value)


class BudgetBehavior(CategoryBehavior):
    kind = EntityKind.BUDGET


_BEHAVIORS: dict[EntityKind, EntityBehavior] = {
    EntityKind.EXPENSE: ExpenseBehavior(),
    EntityKind.CATEGORY: CategoryBehavior(),
    EntityKind.BUDGET: BudgetBehavior(),
}


def get_behavior(kind: EntityKind) -> EntityBehavior:
    """Look up the behavior variant for an entity kind."""
    return _BEHAVIORS[EntityKind(kind)]
