"""
Main Orchestrator for Expense Sync

This module ties together all the components and defines the
end-to-end flows for:
1. Push (validate -> apply in one transaction -> advance cursor -> broadcast)
2. Pull (feed since cursor -> advance cursor to high-water mark)
3. Resolve (apply decisions in one transaction -> broadcast)
4. Device management and tombstone purging

DESIGN DECISION: The orchestrator enforces the boundaries:
- Nothing is written unless the request validated
- A push or resolve is committed whole or not at all
- Every step is audited

The HTTP layer only talks to SyncService.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import structlog

from expense_sync.audit import AuditLogger, create_correlation_id
from expense_sync.clock import EPOCH, Clock, SystemClock, ensure_utc
from expense_sync.config import Settings, get_settings
from expense_sync.models.sync import (
    ChangesResponse,
    Device,
    DeviceStatus,
    PushResult,
    ResolveResult,
)
from expense_sync.storage import (
    AuditStorageInterface,
    InMemoryAuditStorage,
    InMemorySyncStore,
    SqlAuditStorage,
    SqlSyncStore,
    SyncStoreInterface,
)
from expense_sync.sync import (
    ChangeFeed,
    ConflictResolver,
    ConnectionManager,
    DeviceRegistry,
    LiveNotifier,
    NullNotifier,
    SyncEngine,
    TombstoneCollector,
)
from expense_sync.validation import SyncRequestValidator


logger = structlog.get_logger(__name__)


class SyncService:
    """
    Facade over the sync components.

    Request bodies come in as plain dicts and are validated here, so
    every entry point (HTTP, tests, scripts) gets the same checks.
    """

    def __init__(
        self,
        store: SyncStoreInterface,
        clock: Optional[Clock] = None,
        audit_logger: Optional[AuditLogger] = None,
        notifier: Optional[LiveNotifier] = None,
        validator: Optional[SyncRequestValidator] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self._store = store
        self._clock = clock or SystemClock()
        self._audit_logger = audit_logger or AuditLogger()
        self._notifier = notifier or NullNotifier()
        self._validator = validator or SyncRequestValidator(settings.sync.max_batch_size)

        self.registry = DeviceRegistry(store, self._clock, self._audit_logger)
        self.feed = ChangeFeed(store, clock=self._clock)
        self.engine = SyncEngine(
            store,
            self.registry,
            notifier=self._notifier,
            clock=self._clock,
            audit_logger=self._audit_logger,
            cursor_policy=settings.sync.device_cursor_policy,
        )
        self.resolver = ConflictResolver(
            store,
            clock=self._clock,
            audit_logger=self._audit_logger,
            notifier=self._notifier,
            local_preferred_fields=settings.sync.local_preferred_list,
            union_fields=settings.sync.union_list,
        )
        self.tombstones = TombstoneCollector(
            store,
            clock=self._clock,
            audit_logger=self._audit_logger,
            retention_days=settings.sync.tombstone_retention_days,
        )

    @property
    def store(self) -> SyncStoreInterface:
        return self._store

    @property
    def notifier(self) -> LiveNotifier:
        return self._notifier

    @property
    def audit_logger(self) -> AuditLogger:
        return self._audit_logger

    async def push(
        self,
        user_id: str,
        body: Any,
        correlation_id: Optional[UUID] = None,
    ) -> PushResult:
        """
        Validate and apply a push.

        Raises:
            RequestValidationError: Malformed body; nothing written
            StorageError: Push rolled back
        """
        request = self._validator.validate_push(body)
        return await self.engine.push(user_id, request, correlation_id=correlation_id)

    async def pull_changes(
        self,
        user_id: str,
        device_id: Optional[str] = None,
        since: Optional[datetime] = None,
        correlation_id: Optional[UUID] = None,
    ) -> ChangesResponse:
        """
        Changes since `since` (epoch when omitted).

        A registered device's cursor moves up to the returned timestamp.
        """
        correlation_id = correlation_id or create_correlation_id()
        since = ensure_utc(since) if since else EPOCH
        response = await self.feed.changes_for_user(user_id, since)

        if device_id:
            await self.registry.advance_cursor(user_id, device_id, response.timestamp)

        await self._audit_logger.log_changes_pulled(
            user_id=user_id,
            device_id=device_id,
            change_count=response.changes.total,
            since=since.isoformat(),
            correlation_id=correlation_id,
        )
        return response

    async def resolve_conflicts(
        self,
        user_id: str,
        body: Any,
        correlation_id: Optional[UUID] = None,
    ) -> ResolveResult:
        request = self._validator.validate_resolve(body)
        return await self.resolver.resolve(
            user_id,
            request.conflicts,
            device_id=request.device_id,
            correlation_id=correlation_id,
        )

    async def register_device(self, user_id: str, body: Any) -> Device:
        request = self._validator.validate_register(body)
        return await self.registry.register_device(
            user_id,
            request.device_id,
            request.device_name,
            request.platform,
        )

    async def list_devices(self, user_id: str) -> list[Device]:
        return await self.registry.list_devices(user_id)

    async def deactivate_device(self, user_id: str, device_id: str) -> Device:
        return await self.registry.deactivate_device(user_id, device_id)

    async def device_status(self, user_id: str, device_id: str) -> DeviceStatus:
        return await self.registry.status(user_id, device_id)

    async def purge_tombstones(self, user_id: str) -> dict[str, int]:
        return await self.tombstones.purge(user_id)

    async def health(self) -> dict[str, str]:
        error = None
        try:
            healthy = await self._store.ping()
        except Exception as e:
            healthy = False
            error = str(e)

        if not healthy:
            error = error or "Storage did not answer ping"
            logger.error("health_check_failed", error=error)
            await self._audit_logger.log_error(error_type="health_check_failed", error_message=error)
        return {
            "status": "ok" if healthy else "degraded",
            "storage": "up" if healthy else "down",
        }


def create_app_components(
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
) -> SyncService:
    """
    Factory function to create all application components.

    Args:
        settings: Settings to build from. Defaults to get_settings().
        clock: Clock shared by every component. Defaults to the system clock.

    Returns:
        A wired SyncService
    """
    settings = settings or get_settings()
    clock = clock or SystemClock()

    audit_storage: AuditStorageInterface
    if settings.storage.backend == "sql":
        store = SqlSyncStore(
            database_url=settings.storage.database_url,
            clock=clock,
            echo=settings.storage.echo,
        )
        audit_storage = SqlAuditStorage(store.engine)
    else:
        store = InMemorySyncStore(clock=clock)
        audit_storage = InMemoryAuditStorage()

    notifier: LiveNotifier
    if settings.sync.live_updates_enabled:
        notifier = ConnectionManager(max_connections=settings.sync.max_live_connections)
    else:
        notifier = NullNotifier()

    logger.info(
        "components_created",
        storage_backend=settings.storage.backend,
        cursor_policy=settings.sync.device_cursor_policy,
        live_updates=settings.sync.live_updates_enabled,
    )

    return SyncService(
        store,
        clock=clock,
        audit_logger=AuditLogger(audit_storage),
        notifier=notifier,
        settings=settings,
    )
