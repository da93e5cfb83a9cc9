"""
Device Registry

Tracks each device's identity and its sync cursor (lastSyncAt). The
cursor decides which changes a device still has to pull.
"""

from datetime import datetime
from typing import Optional

import structlog

from expense_sync.audit import AuditLogger
from expense_sync.clock import Clock, SystemClock, ensure_utc
from expense_sync.models.records import KIND_ORDER
from expense_sync.models.sync import Device, DeviceStatus, PendingChanges, Platform
from expense_sync.storage import NotFoundError, SyncStoreInterface


logger = structlog.get_logger(__name__)


class DeviceNotFoundError(NotFoundError):
    """The device is not registered for this user."""

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__("Device not found")


class DeviceRegistry:
    """Registers devices and reports what each one still has to sync."""

    def __init__(
        self,
        store: SyncStoreInterface,
        clock: Optional[Clock] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._audit_logger = audit_logger

    async def register_device(
        self,
        user_id: str,
        device_id: str,
        device_name: str,
        platform: Platform,
    ) -> Device:
        """
        Register a device, or refresh it if already known.

        A known device gets its cursor refreshed to now and is marked
        active again.
        """
        now = self._clock.now()
        platform = Platform(platform)
        device = await self._store.get_device(user_id, device_id)
        is_new = device is None

        if is_new:
            device = Device(
                device_id=device_id,
                device_name=device_name,
                platform=platform,
                last_sync_at=now,
                is_active=True,
                registered_at=now,
            )
        else:
            device.device_name = device_name
            device.platform = platform
            device.last_sync_at = now
            device.is_active = True

        await self._store.save_device(user_id, device)

        if self._audit_logger:
            await self._audit_logger.log_device_registered(
                user_id=user_id,
                device_id=device_id,
                platform=platform.value,
                is_new=is_new,
            )
        return device

    async def get_device(self, user_id: str, device_id: str) -> Device:
        device = await self._store.get_device(user_id, device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        return device

    async def list_devices(self, user_id: str) -> list[Device]:
        return await self._store.list_devices(user_id)

    async def deactivate_device(self, user_id: str, device_id: str) -> Device:
        """
        Mark a device inactive.

        Inactive devices no longer hold back tombstone purging.
        """
        device = await self.get_device(user_id, device_id)
        device.is_active = False
        await self._store.save_device(user_id, device)
        if self._audit_logger:
            await self._audit_logger.log_device_deactivated(user_id=user_id, device_id=device_id)
        return device

    async def status(self, user_id: str, device_id: str) -> DeviceStatus:
        """
        Count records changed since the device's cursor, per kind.

        Tombstones count too: a pending delete still needs syncing.

        Raises:
            DeviceNotFoundError: If the device is unknown
        """
        device = await self.get_device(user_id, device_id)
        counts = {}
        for kind in KIND_ORDER:
            counts[kind.collection] = await self._store.count_changed(
                user_id, kind, device.last_sync_at
            )
        pending = PendingChanges(**counts)
        return DeviceStatus(
            device_id=device_id,
            last_sync_at=device.last_sync_at,
            pending_changes=pending,
            needs_sync=pending.total > 0,
        )

    async def advance_cursor(
        self,
        user_id: str,
        device_id: str,
        mark: datetime,
    ) -> Optional[Device]:
        """
        Move a device's cursor forward to `mark`. Never moves it back.

        Returns:
            The device, or None if it isn't registered
        """
        device = await self._store.get_device(user_id, device_id)
        if device is None:
            logger.warning("cursor_advance_unknown_device", user_id=user_id, device_id=device_id)
            return None
        mark = ensure_utc(mark)
        if mark > device.last_sync_at:
            device.last_sync_at = mark
            await self._store.save_device(user_id, device)
        return device

    async def set_cursor(
        self,
        user_id: str,
        device_id: str,
        value: datetime,
    ) -> Optional[Device]:
        """Overwrite a device's cursor (wall-clock policy)."""
        device = await self._store.get_device(user_id, device_id)
        if device is None:
            logger.warning("cursor_set_unknown_device", user_id=user_id, device_id=device_id)
            return None
        device.last_sync_at = ensure_utc(value)
        await self._store.save_device(user_id, device)
        return device
