"""
Sync Protocol Models

Request and response shapes for the sync endpoints. Wire names are
camelCase (deviceId, clientTimestamp...); Python attributes are
snake_case. Dump with `by_alias=True` for responses.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from expense_sync.clock import EPOCH, ensure_utc
from expense_sync.models.records import KIND_ORDER, EntityKind


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    def to_response(self) -> dict[str, Any]:
        """JSON-ready dict with wire names."""
        return self.model_dump(by_alias=True, mode="json")


# =============================================================================
# ENUMS
# =============================================================================

class ChangeAction(str, Enum):
    """What a change does to a record."""
    UPSERT = "upsert"
    DELETE = "delete"


class ConflictReason(str, Enum):
    """Why a change was not applied."""
    NEWER_VERSION_EXISTS = "newer_version_exists"  # delete against newer server state
    CONCURRENT_MODIFICATION = "concurrent_modification"  # upsert against newer server state


class ResolutionStrategy(str, Enum):
    """How the client wants a conflict settled."""
    LOCAL = "local"
    REMOTE = "remote"
    MERGE = "merge"


class Platform(str, Enum):
    """Device platforms we accept."""
    WEB = "web"
    ANDROID = "android"
    IOS = "ios"
    WINDOWS = "windows"
    LINUX = "linux"
    MACOS = "macos"


# =============================================================================
# PUSH
# =============================================================================

class ChangeItem(CamelModel):
    """
    One client-asserted change.

    Any action other than "delete" (create, update, upsert or nothing)
    is treated as an upsert.
    """

    id: str = Field(..., min_length=1)
    action: ChangeAction = ChangeAction.UPSERT
    data: Optional[dict[str, Any]] = None
    client_timestamp: Optional[datetime] = Field(
        default=None,
        description="Server updatedAt the client last saw for this record"
    )

    @field_validator('id', mode='before')
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        """Numeric ids are accepted and stored as strings."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator('action', mode='before')
    @classmethod
    def normalize_action(cls, v: Any) -> ChangeAction:
        if isinstance(v, ChangeAction):
            return v
        if isinstance(v, str) and v.strip().lower() == ChangeAction.DELETE.value:
            return ChangeAction.DELETE
        return ChangeAction.UPSERT

    @field_validator('client_timestamp')
    @classmethod
    def normalize_timestamp(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    @property
    def effective_client_timestamp(self) -> datetime:
        """A missing timestamp means the client has seen nothing."""
        return self.client_timestamp or EPOCH


class ChangeSet(CamelModel):
    """Changes grouped by entity kind."""

    expenses: list[ChangeItem] = Field(default_factory=list)
    categories: list[ChangeItem] = Field(default_factory=list)
    budgets: list[ChangeItem] = Field(default_factory=list)

    def for_kind(self, kind: EntityKind) -> list[ChangeItem]:
        return getattr(self, kind.collection)

    def items(self) -> Iterator[tuple[EntityKind, ChangeItem]]:
        """Iterate changes in processing order."""
        for kind in KIND_ORDER:
            for change in self.for_kind(kind):
                yield kind, change

    @property
    def total(self) -> int:
        return len(self.expenses) + len(self.categories) + len(self.budgets)


class PushRequest(CamelModel):
    device_id: str = Field(..., min_length=1)
    changes: ChangeSet = Field(default_factory=ChangeSet)


class Conflict(CamelModel):
    """
    A change the server refused because it holds newer state.

    Conflicts are results, not errors. The client resolves them
    later through resolve-conflicts.
    """

    id: str
    type: EntityKind
    local_data: Optional[dict[str, Any]] = None
    remote_data: dict[str, Any]
    reason: ConflictReason


class ProcessedChanges(CamelModel):
    """Changes the server accepted, grouped by kind."""

    expenses: list[dict[str, Any]] = Field(default_factory=list)
    categories: list[dict[str, Any]] = Field(default_factory=list)
    budgets: list[dict[str, Any]] = Field(default_factory=list)

    def add(self, kind: EntityKind, item: dict[str, Any]) -> None:
        getattr(self, kind.collection).append(item)

    @property
    def total(self) -> int:
        return len(self.expenses) + len(self.categories) + len(self.budgets)


class PushResult(CamelModel):
    success: bool = True
    conflicts: list[Conflict] = Field(default_factory=list)
    processed: ProcessedChanges = Field(default_factory=ProcessedChanges)
    timestamp: datetime


# =============================================================================
# CHANGE FEED
# =============================================================================

class ChangeEvent(CamelModel):
    """One entry of the change feed."""

    id: str
    kind: EntityKind
    action: ChangeAction
    data: Optional[dict[str, Any]] = None
    updated_at: datetime


class FeedChanges(CamelModel):
    expenses: list[ChangeEvent] = Field(default_factory=list)
    categories: list[ChangeEvent] = Field(default_factory=list)
    budgets: list[ChangeEvent] = Field(default_factory=list)

    def for_kind(self, kind: EntityKind) -> list[ChangeEvent]:
        return getattr(self, kind.collection)

    @property
    def total(self) -> int:
        return len(self.expenses) + len(self.categories) + len(self.budgets)


class ChangesResponse(CamelModel):
    """
    Feed response.

    `timestamp` is the high-water mark of what was delivered; clients
    pass it back as the next `since`.
    """

    timestamp: datetime
    changes: FeedChanges = Field(default_factory=FeedChanges)


# =============================================================================
# CONFLICT RESOLUTION
# =============================================================================

class ConflictResolutionRequest(CamelModel):
    id: str = Field(..., min_length=1)
    type: EntityKind
    resolution: ResolutionStrategy
    local_data: Optional[dict[str, Any]] = None
    remote_data: Optional[dict[str, Any]] = None


class ResolveRequest(CamelModel):
    conflicts: list[ConflictResolutionRequest] = Field(default_factory=list)
    device_id: Optional[str] = None


class ResolvedItem(CamelModel):
    id: str
    type: EntityKind
    resolution: ResolutionStrategy
    data: dict[str, Any]


class ResolveResult(CamelModel):
    success: bool = True
    resolved: list[ResolvedItem] = Field(default_factory=list)


# =============================================================================
# DEVICES
# =============================================================================

class Device(CamelModel):
    """A registered device and its sync cursor."""

    device_id: str = Field(..., min_length=1)
    device_name: str = Field(..., min_length=1, max_length=200)
    platform: Platform
    last_sync_at: datetime
    is_active: bool = True
    registered_at: Optional[datetime] = None


class RegisterDeviceRequest(CamelModel):
    device_id: str = Field(..., min_length=1)
    device_name: str = Field(..., min_length=1, max_length=200)
    platform: Platform


class PendingChanges(CamelModel):
    expenses: int = Field(default=0, ge=0)
    categories: int = Field(default=0, ge=0)
    budgets: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        return self.expenses + self.categories + self.budgets


class DeviceStatus(CamelModel):
    device_id: str
    last_sync_at: datetime
    pending_changes: PendingChanges
    needs_sync: bool


# =============================================================================
# LIVE UPDATES
# =============================================================================

class SyncUpdateEvent(CamelModel):
    """Payload of the `sync-update` live event."""

    device_id: Optional[str] = None
    changes: ProcessedChanges
    timestamp: datetime
