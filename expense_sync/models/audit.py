"""
Audit Models for Expense Sync

Every significant sync action is logged for audit purposes.
This provides:
1. Traceability of which device changed what
2. Debugging information when devices disagree
3. A record of every conflict and how it was settled

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Each step of a sync round has its own event type.
    """
    # Push path
    PUSH_RECEIVED = "push_received"
    PUSH_COMPLETED = "push_completed"
    PUSH_ROLLED_BACK = "push_rolled_back"
    CONFLICT_DETECTED = "conflict_detected"

    # Resolution
    CONFLICT_RESOLVED = "conflict_resolved"
    RESOLVE_ROLLED_BACK = "resolve_rolled_back"

    # Pull path
    CHANGES_PULLED = "changes_pulled"

    # Devices
    DEVICE_REGISTERED = "device_registered"
    DEVICE_DEACTIVATED = "device_deactivated"

    # Housekeeping
    TOMBSTONES_PURGED = "tombstones_purged"

    # System events
    SYSTEM_ERROR = "system_error"
    STORAGE_ERROR = "storage_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=_utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Who and what
    user_id: Optional[str] = Field(
        default=None,
        description="Owner of the data involved"
    )
    device_id: Optional[str] = Field(
        default=None,
        description="Device that triggered the event"
    )
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'expense', 'device')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one push)"
    )

    # Event details
    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "user_id": self.user_id,
            "device_id": self.device_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.push_received(user_id, device_id, 12, correlation_id)
        event = AuditEventBuilder.conflict_detected(user_id, device_id, "expense", "e1", ...)
    """

    @staticmethod
    def push_received(
        user_id: str,
        device_id: str,
        change_count: int,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PUSH_RECEIVED,
            user_id=user_id,
            device_id=device_id,
            correlation_id=correlation_id,
            description=f"Push received with {change_count} changes",
            details={"change_count": change_count},
        )

    @staticmethod
    def push_completed(
        user_id: str,
        device_id: str,
        processed: int,
        conflicts: int,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PUSH_COMPLETED,
            severity=AuditSeverity.WARNING if conflicts else AuditSeverity.INFO,
            user_id=user_id,
            device_id=device_id,
            correlation_id=correlation_id,
            description=f"Push committed: {processed} processed, {conflicts} conflicts",
            details={"processed": processed, "conflicts": conflicts},
        )

    @staticmethod
    def push_rolled_back(
        user_id: str,
        device_id: str,
        error_message: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PUSH_ROLLED_BACK,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            device_id=device_id,
            correlation_id=correlation_id,
            description="Push rolled back after a storage failure",
            error_message=error_message,
        )

    @staticmethod
    def conflict_detected(
        user_id: str,
        device_id: str,
        entity_type: str,
        entity_id: str,
        reason: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONFLICT_DETECTED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            device_id=device_id,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Conflict on {entity_type} {entity_id}: {reason}",
            details={"reason": reason},
        )

    @staticmethod
    def conflict_resolved(
        user_id: str,
        entity_type: str,
        entity_id: str,
        resolution: str,
        sync_version: int,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONFLICT_RESOLVED,
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Conflict on {entity_type} {entity_id} resolved with '{resolution}'",
            details={"resolution": resolution, "sync_version": sync_version},
        )

    @staticmethod
    def resolve_rolled_back(
        user_id: str,
        error_message: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RESOLVE_ROLLED_BACK,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            correlation_id=correlation_id,
            description="Conflict resolution rolled back after a storage failure",
            error_message=error_message,
        )

    @staticmethod
    def changes_pulled(
        user_id: str,
        device_id: Optional[str],
        change_count: int,
        since: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CHANGES_PULLED,
            severity=AuditSeverity.DEBUG,
            user_id=user_id,
            device_id=device_id,
            correlation_id=correlation_id,
            description=f"Change feed delivered {change_count} changes",
            details={"change_count": change_count, "since": since},
        )

    @staticmethod
    def device_registered(
        user_id: str,
        device_id: str,
        platform: str,
        is_new: bool
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DEVICE_REGISTERED,
            user_id=user_id,
            device_id=device_id,
            entity_type="device",
            entity_id=device_id,
            description=f"Device {'registered' if is_new else 're-registered'}: {device_id}",
            details={"platform": platform, "is_new": is_new},
        )

    @staticmethod
    def device_deactivated(
        user_id: str,
        device_id: str
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DEVICE_DEACTIVATED,
            user_id=user_id,
            device_id=device_id,
            entity_type="device",
            entity_id=device_id,
            description=f"Device deactivated: {device_id}",
        )

    @staticmethod
    def tombstones_purged(
        user_id: str,
        counts: dict[str, int],
        cutoff: str
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TOMBSTONES_PURGED,
            user_id=user_id,
            description=f"Purged {sum(counts.values())} tombstones older than {cutoff}",
            details={"counts": counts, "cutoff": cutoff},
        )

    @staticmethod
    def storage_error(
        operation: str,
        error_message: str,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STORAGE_ERROR,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            description=f"Storage failure during {operation}",
            error_message=error_message,
            details={"operation": operation},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
