"""
Data Models Package

This package contains all Pydantic models used in the Expense Sync system.
All data flowing through the system must conform to these schemas.
"""

from expense_sync.models.records import (
    KIND_ORDER,
    SYSTEM_KEYS,
    BudgetBehavior,
    CategoryBehavior,
    ConflictResolutionInfo,
    EntityBehavior,
    EntityKind,
    ExpenseBehavior,
    SyncMeta,
    SyncRecord,
    get_behavior,
)
from expense_sync.models.sync import (
    ChangeAction,
    ChangeEvent,
    ChangeItem,
    ChangeSet,
    ChangesResponse,
    Conflict,
    ConflictReason,
    ConflictResolutionRequest,
    Device,
    DeviceStatus,
    FeedChanges,
    PendingChanges,
    Platform,
    ProcessedChanges,
    PushRequest,
    PushResult,
    RegisterDeviceRequest,
    ResolutionStrategy,
    ResolvedItem,
    ResolveRequest,
    ResolveResult,
    SyncUpdateEvent,
)
from expense_sync.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from expense_sync.models.validation import ValidationIssue, ValidationResult

__all__ = [
    # Record models
    "KIND_ORDER",
    "SYSTEM_KEYS",
    "BudgetBehavior",
    "CategoryBehavior",
    "ConflictResolutionInfo",
    "EntityBehavior",
    "EntityKind",
    "ExpenseBehavior",
    "SyncMeta",
    "SyncRecord",
    "get_behavior",
    # Protocol models
    "ChangeAction",
    "ChangeEvent",
    "ChangeItem",
    "ChangeSet",
    "ChangesResponse",
    "Conflict",
    "ConflictReason",
    "ConflictResolutionRequest",
    "Device",
    "DeviceStatus",
    "FeedChanges",
    "PendingChanges",
    "Platform",
    "ProcessedChanges",
    "PushRequest",
    "PushResult",
    "RegisterDeviceRequest",
    "ResolutionStrategy",
    "ResolvedItem",
    "ResolveRequest",
    "ResolveResult",
    "SyncUpdateEvent",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
    # Validation models
    "ValidationIssue",
    "ValidationResult",
]
