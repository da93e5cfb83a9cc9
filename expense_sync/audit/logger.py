"""
Audit Logger

DESIGN DECISION: Every significant sync action is logged.
This provides:
1. Traceability of which device changed what
2. Debugging capability when devices disagree
3. A history of conflicts and how they were resolved

The audit logger:
- Is async to not block the main flow
- Gracefully handles failures (a failing audit write never fails a sync)
- Supports correlation IDs to trace related events
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

import structlog

from expense_sync.models.audit import AuditEvent, AuditEventBuilder
from expense_sync.storage import AuditStorageInterface


def configure_logging(log_level: str = "INFO") -> None:
    """
    Configure stdlib logging and structlog for JSON output.

    Safe to call more than once; the last level wins.
    """
    logging.basicConfig(format="%(message)s", level=log_level.upper())
    logging.getLogger().setLevel(log_level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence), when configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("expense_sync.audit")

    @property
    def storage(self) -> Optional[AuditStorageInterface]:
        return self._storage

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        elif event.severity.value == "debug":
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_push_received(
        self,
        user_id: str,
        device_id: str,
        change_count: int,
        correlation_id: UUID,
    ) -> None:
        """Log an incoming push."""
        await self.log(AuditEventBuilder.push_received(
            user_id=user_id,
            device_id=device_id,
            change_count=change_count,
            correlation_id=correlation_id,
        ))

    async def log_push_completed(
        self,
        user_id: str,
        device_id: str,
        processed: int,
        conflicts: int,
        correlation_id: UUID,
    ) -> None:
        """Log a committed push."""
        await self.log(AuditEventBuilder.push_completed(
            user_id=user_id,
            device_id=device_id,
            processed=processed,
            conflicts=conflicts,
            correlation_id=correlation_id,
        ))

    async def log_push_rolled_back(
        self,
        user_id: str,
        device_id: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        """Log a push that was rolled back."""
        await self.log(AuditEventBuilder.push_rolled_back(
            user_id=user_id,
            device_id=device_id,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_conflict_detected(
        self,
        user_id: str,
        device_id: str,
        entity_type: str,
        entity_id: str,
        reason: str,
        correlation_id: UUID,
    ) -> None:
        """Log a detected conflict."""
        await self.log(AuditEventBuilder.conflict_detected(
            user_id=user_id,
            device_id=device_id,
            entity_type=entity_type,
            entity_id=entity_id,
            reason=reason,
            correlation_id=correlation_id,
        ))

    async def log_conflict_resolved(
        self,
        user_id: str,
        entity_type: str,
        entity_id: str,
        resolution: str,
        sync_version: int,
        correlation_id: UUID,
    ) -> None:
        """Log a conflict resolution."""
        await self.log(AuditEventBuilder.conflict_resolved(
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            resolution=resolution,
            sync_version=sync_version,
            correlation_id=correlation_id,
        ))

    async def log_resolve_rolled_back(
        self,
        user_id: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.resolve_rolled_back(
            user_id=user_id,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_changes_pulled(
        self,
        user_id: str,
        device_id: Optional[str],
        change_count: int,
        since: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.changes_pulled(
            user_id=user_id,
            device_id=device_id,
            change_count=change_count,
            since=since,
            correlation_id=correlation_id,
        ))

    async def log_device_registered(
        self,
        user_id: str,
        device_id: str,
        platform: str,
        is_new: bool,
    ) -> None:
        """Log device registration."""
        await self.log(AuditEventBuilder.device_registered(
            user_id=user_id,
            device_id=device_id,
            platform=platform,
            is_new=is_new,
        ))

    async def log_device_deactivated(
        self,
        user_id: str,
        device_id: str,
    ) -> None:
        await self.log(AuditEventBuilder.device_deactivated(
            user_id=user_id,
            device_id=device_id,
        ))

    async def log_tombstones_purged(
        self,
        user_id: str,
        counts: dict[str, int],
        cutoff: str,
    ) -> None:
        await self.log(AuditEventBuilder.tombstones_purged(
            user_id=user_id,
            counts=counts,
            cutoff=cutoff,
        ))

    async def log_storage_error(
        self,
        operation: str,
        error_message: str,
        user_id: Optional[str] = None,
    ) -> None:
        """Log a storage failure that reached the request boundary."""
        await self.log(AuditEventBuilder.storage_error(
            operation=operation,
            error_message=error_message,
            user_id=user_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new request (e.g., a push).
    Pass it through all subsequent operations.
    """
    return uuid4()
