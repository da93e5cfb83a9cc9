"""Shared fixtures for the sync tests."""

import pytest

from expense_sync.audit import AuditLogger
from expense_sync.clock import ManualClock
from expense_sync.orchestrator import SyncService
from expense_sync.storage import InMemoryAuditStorage, InMemorySyncStore
from expense_sync.sync import ConnectionManager

from helpers import START


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def store(clock) -> InMemorySyncStore:
    return InMemorySyncStore(clock=clock)


@pytest.fixture
def audit_storage() -> InMemoryAuditStorage:
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage) -> AuditLogger:
    return AuditLogger(audit_storage)


@pytest.fixture
def notifier() -> ConnectionManager:
    return ConnectionManager(max_connections=10)


@pytest.fixture
def service(store, clock, audit_logger, notifier) -> SyncService:
    return SyncService(store, clock=clock, audit_logger=audit_logger, notifier=notifier)
