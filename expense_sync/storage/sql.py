"""
SQL Storage Implementation

DESIGN DECISION: SQLAlchemy Core over a relational database.
Each record is one row keyed by (user_id, kind, id). The full record is
kept as a JSON document; the columns we filter and order on are
denormalized next to it.

TRADEOFFS:
- Timestamps are stored as integer microseconds since the epoch so
  ordering and comparison are exact on every backend (SQLite has no
  native timezone-aware datetime).
- Calls are synchronous inside async methods. Fine for the request
  volumes of a personal finance app.

The conditional update (`... WHERE updated_at_us <= :client_ts`) is what
makes the stale-check-and-write atomic.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Optional
from uuid import UUID

import structlog
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    delete,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from expense_sync.clock import EPOCH, Clock, SystemClock, ensure_utc
from expense_sync.models.audit import AuditEvent, AuditEventType, AuditSeverity
from expense_sync.models.records import EntityKind, SyncRecord
from expense_sync.models.sync import Device, Platform
from expense_sync.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    StorageError,
    StoreSession,
    SyncStoreInterface,
    stamp_write,
)


logger = structlog.get_logger(__name__)

metadata = MetaData()

records_table = Table(
    "sync_records",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("kind", String(16), primary_key=True),
    Column("id", String(128), primary_key=True),
    Column("updated_at_us", BigInteger, nullable=False, index=True),
    Column("tombstone", Boolean, nullable=False, default=False),
    Column("tombstoned_at_us", BigInteger, nullable=True),
    Column("last_device_id", String(128), nullable=True),
    Column("document", JSON, nullable=False),
)

devices_table = Table(
    "sync_devices",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("device_id", String(128), primary_key=True),
    Column("device_name", String(200), nullable=False),
    Column("platform", String(16), nullable=False),
    Column("last_sync_at_us", BigInteger, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("registered_at_us", BigInteger, nullable=True),
)

audit_table = Table(
    "sync_audit_log",
    metadata,
    Column("event_id", String(36), primary_key=True),
    Column("timestamp_us", BigInteger, nullable=False, index=True),
    Column("event_type", String(64), nullable=False),
    Column("severity", String(16), nullable=False),
    Column("user_id", String(64), nullable=True),
    Column("device_id", String(128), nullable=True),
    Column("entity_type", String(32), nullable=True),
    Column("entity_id", String(128), nullable=True),
    Column("correlation_id", String(36), nullable=True, index=True),
    Column("description", String(500), nullable=False),
    Column("details", JSON, nullable=False),
    Column("error_message", Text, nullable=True),
)


def to_micros(value: datetime) -> int:
    """Datetime -> integer microseconds since the epoch."""
    delta = ensure_utc(value) - EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def from_micros(value: int) -> datetime:
    return EPOCH + timedelta(microseconds=value)


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine; in-memory SQLite shares one connection."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def _record_row(record: SyncRecord) -> dict:
    tombstoned_at = record.tombstoned_at
    return {
        "user_id": record.user_id,
        "kind": record.kind.value,
        "id": record.id,
        "updated_at_us": to_micros(record.updated_at),
        "tombstone": record.tombstone,
        "tombstoned_at_us": to_micros(tombstoned_at) if tombstoned_at else None,
        "last_device_id": record.sync.device_id,
        "document": record.model_dump(mode="json"),
    }


def _record_key(user_id: str, kind: EntityKind, record_id: str):
    return and_(
        records_table.c.user_id == user_id,
        records_table.c.kind == EntityKind(kind).value,
        records_table.c.id == record_id,
    )


def _device_row(user_id: str, device: Device) -> dict:
    return {
        "user_id": user_id,
        "device_id": device.device_id,
        "device_name": device.device_name,
        "platform": device.platform.value,
        "last_sync_at_us": to_micros(device.last_sync_at),
        "is_active": device.is_active,
        "registered_at_us": to_micros(device.registered_at) if device.registered_at else None,
    }


def _row_to_device(row) -> Device:
    return Device(
        device_id=row.device_id,
        device_name=row.device_name,
        platform=Platform(row.platform),
        last_sync_at=from_micros(row.last_sync_at_us),
        is_active=row.is_active,
        registered_at=from_micros(row.registered_at_us) if row.registered_at_us is not None else None,
    )


def _read_device(conn: Connection, user_id: str, device_id: str) -> Optional[Device]:
    row = conn.execute(
        select(devices_table).where(
            devices_table.c.user_id == user_id,
            devices_table.c.device_id == device_id,
        )
    ).first()
    return _row_to_device(row) if row else None


def _write_device(conn: Connection, user_id: str, device: Device) -> None:
    row = _device_row(user_id, device)
    result = conn.execute(
        update(devices_table)
        .where(
            devices_table.c.user_id == user_id,
            devices_table.c.device_id == device.device_id,
        )
        .values(**row)
    )
    if result.rowcount == 0:
        conn.execute(insert(devices_table).values(**row))


class _SqlSession(StoreSession):
    """
    Session bound to one open database transaction.

    Driver errors surface as StorageError so callers roll back and
    report them like any other storage failure.
    """

    def __init__(self, conn: Connection, clock: Clock):
        self._conn = conn
        self._clock = clock

    def _execute(self, statement, action: str):
        try:
            return self._conn.execute(statement)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to {action}: {e}") from e

    async def get_record(
        self,
        user_id: str,
        kind: EntityKind,
        record_id: str,
    ) -> Optional[SyncRecord]:
        row = self._execute(
            select(records_table.c.document).where(_record_key(user_id, kind, record_id)),
            "read record",
        ).first()
        return SyncRecord.model_validate(row.document) if row else None

    async def insert_record(self, record: SyncRecord) -> SyncRecord:
        stamp_write(record, self._clock.now())
        try:
            self._conn.execute(insert(records_table).values(**_record_row(record)))
        except IntegrityError as e:
            raise DuplicateError(f"{record.kind.value} already exists: {record.id}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to insert record: {e}") from e
        return record

    async def update_record_if_unchanged(
        self,
        record: SyncRecord,
        not_newer_than: datetime,
    ) -> bool:
        stamp_write(record, self._clock.now())
        result = self._execute(
            update(records_table)
            .where(
                _record_key(record.user_id, record.kind, record.id),
                records_table.c.updated_at_us <= to_micros(not_newer_than),
            )
            .values(**_record_row(record)),
            "update record",
        )
        return result.rowcount == 1

    async def save_record(self, record: SyncRecord) -> SyncRecord:
        stamp_write(record, self._clock.now())
        row = _record_row(record)
        result = self._execute(
            update(records_table)
            .where(_record_key(record.user_id, record.kind, record.id))
            .values(**row),
            "save record",
        )
        if result.rowcount == 0:
            self._execute(insert(records_table).values(**row), "save record")
        return record

    async def get_device(self, user_id: str, device_id: str) -> Optional[Device]:
        try:
            return _read_device(self._conn, user_id, device_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read device: {e}") from e

    async def save_device(self, user_id: str, device: Device) -> None:
        try:
            _write_device(self._conn, user_id, device)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to save device: {e}") from e


class SqlSyncStore(SyncStoreInterface):
    """
    SQLAlchemy implementation of the record store.

    Tables are created on first use if missing.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        engine: Optional[Engine] = None,
        clock: Optional[Clock] = None,
        echo: bool = False,
    ):
        if engine is None and database_url is None:
            raise ValueError("Either database_url or engine is required")
        self._engine = engine or build_engine(database_url, echo=echo)
        self._clock = clock or SystemClock()
        # SQLite allows one writer at a time; serialize our own transactions
        self._lock = asyncio.Lock() if self._engine.dialect.name == "sqlite" else None
        metadata.create_all(self._engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    @retry(
        retry=retry_if_exception_type(OperationalError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        reraise=True,
    )
    def _connect(self) -> Connection:
        return self._engine.connect()

    def _open(self) -> Connection:
        try:
            return self._connect()
        except OperationalError as e:
            raise ConnectionError(f"Failed to connect to database: {e}") from e

    @asynccontextmanager
    async def _serialized(self) -> AsyncIterator[None]:
        if self._lock is None:
            yield
        else:
            async with self._lock:
                yield

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreSession]:
        async with self._serialized():
            conn = self._open()
            try:
                trans = conn.begin()
                try:
                    yield _SqlSession(conn, self._clock)
                except BaseException:
                    trans.rollback()
                    raise
                try:
                    trans.commit()
                except SQLAlchemyError as e:
                    logger.error("transaction_commit_failed", error=str(e))
                    raise StorageError(f"Failed to commit transaction: {e}") from e
            finally:
                conn.close()

    def _read(self, statement):
        try:
            with self._engine.connect() as conn:
                return conn.execute(statement).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read from database: {e}") from e

    async def get_record(
        self,
        user_id: str,
        kind: EntityKind,
        record_id: str,
    ) -> Optional[SyncRecord]:
        rows = self._read(
            select(records_table.c.document).where(_record_key(user_id, kind, record_id))
        )
        return SyncRecord.model_validate(rows[0].document) if rows else None

    async def list_changed(
        self,
        user_id: str,
        kind: EntityKind,
        since: datetime,
    ) -> list[SyncRecord]:
        rows = self._read(
            select(records_table.c.document)
            .where(
                records_table.c.user_id == user_id,
                records_table.c.kind == EntityKind(kind).value,
                records_table.c.updated_at_us > to_micros(since),
            )
            .order_by(records_table.c.updated_at_us, records_table.c.id)
        )
        return [SyncRecord.model_validate(row.document) for row in rows]

    async def count_changed(
        self,
        user_id: str,
        kind: EntityKind,
        since: datetime,
    ) -> int:
        rows = self._read(
            select(func.count())
            .select_from(records_table)
            .where(
                records_table.c.user_id == user_id,
                records_table.c.kind == EntityKind(kind).value,
                records_table.c.updated_at_us > to_micros(since),
            )
        )
        return int(rows[0][0])

    async def has_foreign_writes(
        self,
        user_id: str,
        device_id: str,
        after: datetime,
        up_to: datetime,
    ) -> bool:
        rows = self._read(
            select(records_table.c.id)
            .where(
                records_table.c.user_id == user_id,
                records_table.c.updated_at_us > to_micros(after),
                records_table.c.updated_at_us <= to_micros(up_to),
                or_(
                    records_table.c.last_device_id.is_(None),
                    records_table.c.last_device_id != device_id,
                ),
            )
            .limit(1)
        )
        return bool(rows)

    async def purge_tombstones(
        self,
        user_id: str,
        kind: EntityKind,
        before: datetime,
    ) -> int:
        async with self._serialized():
            try:
                with self._engine.begin() as conn:
                    result = conn.execute(
                        delete(records_table).where(
                            records_table.c.user_id == user_id,
                            records_table.c.kind == EntityKind(kind).value,
                            records_table.c.tombstone.is_(True),
                            records_table.c.tombstoned_at_us < to_micros(before),
                        )
                    )
                    return result.rowcount
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to purge tombstones: {e}") from e

    async def list_devices(self, user_id: str) -> list[Device]:
        rows = self._read(
            select(devices_table)
            .where(devices_table.c.user_id == user_id)
            .order_by(devices_table.c.registered_at_us, devices_table.c.device_id)
        )
        return [_row_to_device(row) for row in rows]

    async def get_device(self, user_id: str, device_id: str) -> Optional[Device]:
        try:
            with self._engine.connect() as conn:
                return _read_device(conn, user_id, device_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read device: {e}") from e

    async def save_device(self, user_id: str, device: Device) -> None:
        async with self.transaction() as session:
            await session.save_device(user_id, device)

    async def ping(self) -> bool:
        try:
            self._read(select(1))
            return True
        except StorageError:
            return False


class SqlAuditStorage(AuditStorageInterface):
    """
    SQL implementation of audit storage.

    Shares the engine (and tables) with SqlSyncStore.
    """

    def __init__(self, engine: Engine):
        self._engine = engine
        metadata.create_all(self._engine)

    def _event_to_row(self, event: AuditEvent) -> dict:
        return {
            "event_id": str(event.event_id),
            "timestamp_us": to_micros(event.timestamp),
            "event_type": event.event_type.value,
            "severity": event.severity.value,
            "user_id": event.user_id,
            "device_id": event.device_id,
            "entity_type": event.entity_type,
            "entity_id": event.entity_id,
            "correlation_id": str(event.correlation_id) if event.correlation_id else None,
            "description": event.description,
            "details": event.details,
            "error_message": event.error_message,
        }

    def _row_to_event(self, row) -> AuditEvent:
        return AuditEvent(
            event_id=UUID(row.event_id),
            timestamp=from_micros(row.timestamp_us),
            event_type=AuditEventType(row.event_type),
            severity=AuditSeverity(row.severity),
            user_id=row.user_id,
            device_id=row.device_id,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            correlation_id=UUID(row.correlation_id) if row.correlation_id else None,
            description=row.description,
            details=row.details or {},
            error_message=row.error_message,
        )

    def _select(self, statement) -> list[AuditEvent]:
        try:
            with self._engine.connect() as conn:
                return [self._row_to_event(row) for row in conn.execute(statement)]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read audit log: {e}") from e

    async def append_event(self, event: AuditEvent) -> bool:
        try:
            with self._engine.begin() as conn:
                conn.execute(insert(audit_table).values(**self._event_to_row(event)))
            return True
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to append audit event: {e}") from e

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        return self._select(
            select(audit_table)
            .where(audit_table.c.correlation_id == str(correlation_id))
            .order_by(audit_table.c.timestamp_us)
        )

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        return self._select(
            select(audit_table)
            .where(
                audit_table.c.entity_type == entity_type,
                audit_table.c.entity_id == entity_id,
            )
            .order_by(audit_table.c.timestamp_us)
        )

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        return self._select(
            select(audit_table)
            .order_by(audit_table.c.timestamp_us.desc())
            .limit(limit)
        )
