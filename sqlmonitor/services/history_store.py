"""
Slow query history and index operation log

Invariant: at most one unresolved slow query record exists per
(query_text, database_name). Upserts for the same identity are serialized
with a per-key asyncio lock; the SQL store also carries a filtered unique
index so a second writer process cannot create a duplicate.
"""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    BigInteger,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    false,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from sqlmonitor.core.config import Settings
from sqlmonitor.core.constants import Severity, ReindexType
from sqlmonitor.core.exceptions import HistoryStoreError
from sqlmonitor.core.logger import get_logger
from sqlmonitor.models.monitor_models import (
    SlowQueryObservation,
    SlowQueryHistoryRecord,
    IndexOperationRecord,
)

logger = get_logger('services.history_store')

MEMORY_URL = "memory://"

Clock = Callable[[], datetime]


def query_hash(query_text: str) -> str:
    """Fixed-width digest of the query text for indexing"""
    return hashlib.sha256(query_text.encode('utf-8')).hexdigest()


class HistoryStore(ABC):
    """
    Persistence contract for slow query history and the index operation log
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock: Clock = clock or datetime.now
        # Per-identity locks live only while an upsert holds or awaits them
        self._key_locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._lock_users: Dict[Tuple[str, str], int] = {}

    def _acquire_lock_ref(self, identity: Tuple[str, str]) -> asyncio.Lock:
        lock = self._key_locks.get(identity)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[identity] = lock
        self._lock_users[identity] = self._lock_users.get(identity, 0) + 1
        return lock

    def _release_lock_ref(self, identity: Tuple[str, str]) -> None:
        remaining = self._lock_users[identity] - 1
        if remaining:
            self._lock_users[identity] = remaining
        else:
            del self._lock_users[identity]
            del self._key_locks[identity]

    async def upsert_slow_query(
        self,
        observation: SlowQueryObservation,
        severity: Severity,
    ) -> SlowQueryHistoryRecord:
        """
        Insert or refresh the unresolved record for the observation's identity

        An existing unresolved record keeps its first_seen; last_seen, metrics,
        plan and severity are overwritten. Otherwise a new record is created
        with first_seen = last_seen = now.
        """
        identity = observation.identity
        lock = self._acquire_lock_ref(identity)
        try:
            async with lock:
                return await self._upsert_slow_query(observation, severity, self._clock())
        finally:
            self._release_lock_ref(identity)

    @abstractmethod
    async def _upsert_slow_query(
        self,
        observation: SlowQueryObservation,
        severity: Severity,
        now: datetime,
    ) -> SlowQueryHistoryRecord:
        pass

    @abstractmethod
    async def append_index_operation(self, record: IndexOperationRecord) -> IndexOperationRecord:
        """Append one remediation attempt; records are never updated"""
        pass

    @abstractmethod
    async def set_optimization_suggestion(self, record_id: int, suggestion: str) -> None:
        pass

    @abstractmethod
    async def resolve_slow_query(self, record_id: int, resolution: str) -> None:
        """Mark a record resolved; a later observation then opens a new record"""
        pass

    @abstractmethod
    async def get_slow_query(self, record_id: int) -> Optional[SlowQueryHistoryRecord]:
        pass

    @abstractmethod
    async def get_unresolved_slow_queries(
        self,
        database_name: Optional[str] = None,
    ) -> List[SlowQueryHistoryRecord]:
        pass

    @abstractmethod
    async def get_index_operations(
        self,
        database_name: Optional[str] = None,
        limit: int = 100,
    ) -> List[IndexOperationRecord]:
        """Most recent operations first"""
        pass

    async def close(self) -> None:
        pass


# =============================================================================
# In-memory implementation
# =============================================================================


class InMemoryHistoryStore(HistoryStore):
    """Process-local store; returned records are copies"""

    def __init__(self, clock: Optional[Clock] = None):
        super().__init__(clock)
        self._records: Dict[int, SlowQueryHistoryRecord] = {}
        self._unresolved: Dict[Tuple[str, str], int] = {}
        self._operations: List[IndexOperationRecord] = []
        self._next_id = 1
        self._next_operation_id = 1

    async def _upsert_slow_query(
        self,
        observation: SlowQueryObservation,
        severity: Severity,
        now: datetime,
    ) -> SlowQueryHistoryRecord:
        record_id = self._unresolved.get(observation.identity)
        if record_id is not None:
            record = self._records[record_id]
            record.last_seen = now
            record.avg_duration_ms = observation.avg_duration_ms
            record.execution_count = observation.execution_count
            record.query_plan = observation.query_plan
            record.severity = severity
        else:
            record = SlowQueryHistoryRecord(
                id=self._next_id,
                query_text=observation.query_text,
                database_name=observation.database_name,
                avg_duration_ms=observation.avg_duration_ms,
                execution_count=observation.execution_count,
                first_seen=now,
                last_seen=now,
                severity=severity,
                query_plan=observation.query_plan,
            )
            self._next_id += 1
            self._records[record.id] = record
            self._unresolved[observation.identity] = record.id
        return replace(record)

    async def append_index_operation(self, record: IndexOperationRecord) -> IndexOperationRecord:
        stored = replace(record, id=self._next_operation_id)
        self._next_operation_id += 1
        self._operations.append(stored)
        return replace(stored)

    def _require(self, record_id: int) -> SlowQueryHistoryRecord:
        record = self._records.get(record_id)
        if record is None:
            raise HistoryStoreError(f"Slow query record {record_id} not found", {"id": record_id})
        return record

    async def set_optimization_suggestion(self, record_id: int, suggestion: str) -> None:
        self._require(record_id).optimization_suggestion = suggestion

    async def resolve_slow_query(self, record_id: int, resolution: str) -> None:
        record = self._require(record_id)
        if record.is_resolved:
            return
        record.is_resolved = True
        record.resolution = resolution
        record.resolved_at = self._clock()
        self._unresolved.pop(record.identity, None)

    async def get_slow_query(self, record_id: int) -> Optional[SlowQueryHistoryRecord]:
        record = self._records.get(record_id)
        return replace(record) if record else None

    async def get_unresolved_slow_queries(
        self,
        database_name: Optional[str] = None,
    ) -> List[SlowQueryHistoryRecord]:
        return [
            replace(r) for r in self._records.values()
            if not r.is_resolved and (database_name is None or r.database_name == database_name)
        ]

    async def get_index_operations(
        self,
        database_name: Optional[str] = None,
        limit: int = 100,
    ) -> List[IndexOperationRecord]:
        matching = [
            replace(op) for op in reversed(self._operations)
            if database_name is None or op.database_name == database_name
        ]
        return matching[:limit]


# =============================================================================
# SQLAlchemy implementation
# =============================================================================

metadata = MetaData()

slow_query_history = Table(
    "slow_query_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("query_hash", String(64), nullable=False),
    Column("query_text", Text, nullable=False),
    Column("database_name", String(128), nullable=False),
    Column("avg_duration_ms", Float, nullable=False),
    Column("execution_count", BigInteger, nullable=False),
    Column("first_seen", DateTime, nullable=False),
    Column("last_seen", DateTime, nullable=False),
    Column("query_plan", Text),
    Column("optimization_suggestion", Text),
    Column("severity", String(16), nullable=False),
    Column("is_resolved", Boolean, nullable=False, default=False),
    Column("resolution", Text),
    Column("resolved_at", DateTime),
)

Index(
    "ux_slow_query_history_unresolved",
    slow_query_history.c.query_hash,
    slow_query_history.c.database_name,
    unique=True,
    sqlite_where=slow_query_history.c.is_resolved == false(),
    mssql_where=slow_query_history.c.is_resolved == false(),
    postgresql_where=slow_query_history.c.is_resolved == false(),
)

index_operation_log = Table(
    "index_operation_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("database_name", String(128), nullable=False),
    Column("schema_name", String(128), nullable=False),
    Column("table_name", String(128), nullable=False),
    Column("index_name", String(128), nullable=False),
    Column("fragmentation_percent", Float, nullable=False),
    Column("page_count", BigInteger, nullable=False),
    Column("operation_type", String(16), nullable=False),
    Column("operation_date", DateTime, nullable=False),
    Column("duration_ms", Integer),
    Column("success", Boolean, nullable=False),
    Column("error_message", Text, nullable=False, default=""),
)


def _row_to_slow_query(row) -> SlowQueryHistoryRecord:
    m = row._mapping
    return SlowQueryHistoryRecord(
        id=m["id"],
        query_text=m["query_text"],
        database_name=m["database_name"],
        avg_duration_ms=m["avg_duration_ms"],
        execution_count=m["execution_count"],
        first_seen=m["first_seen"],
        last_seen=m["last_seen"],
        severity=Severity(m["severity"]),
        query_plan=m["query_plan"],
        optimization_suggestion=m["optimization_suggestion"],
        is_resolved=bool(m["is_resolved"]),
        resolution=m["resolution"],
        resolved_at=m["resolved_at"],
    )


def _row_to_operation(row) -> IndexOperationRecord:
    m = row._mapping
    return IndexOperationRecord(
        id=m["id"],
        database_name=m["database_name"],
        schema_name=m["schema_name"],
        table_name=m["table_name"],
        index_name=m["index_name"],
        fragmentation_percent=m["fragmentation_percent"],
        page_count=m["page_count"],
        operation_type=ReindexType(m["operation_type"]),
        operation_date=m["operation_date"],
        duration_ms=m["duration_ms"],
        success=bool(m["success"]),
        error_message=m["error_message"] or "",
    )


class SqlAlchemyHistoryStore(HistoryStore):
    """
    History store on any SQLAlchemy database (SQLite file by default)

    Blocking engine calls run in worker threads.
    """

    def __init__(self, engine: Engine, clock: Optional[Clock] = None):
        super().__init__(clock)
        self._engine = engine
        try:
            metadata.create_all(engine)
        except SQLAlchemyError as e:
            raise HistoryStoreError(f"Failed to initialize history schema: {e}") from e

    @classmethod
    def from_url(cls, url: str, echo: bool = False,
                 clock: Optional[Clock] = None) -> 'SqlAlchemyHistoryStore':
        parsed = make_url(url)
        if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        return cls(create_engine(url, echo=echo), clock=clock)

    @property
    def engine(self) -> Engine:
        return self._engine

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except SQLAlchemyError as e:
            raise HistoryStoreError(f"History store operation failed: {e}") from e

    @staticmethod
    def _unresolved_clause(observation: SlowQueryObservation):
        t = slow_query_history.c
        return (
            (t.query_hash == query_hash(observation.query_text))
            & (t.query_text == observation.query_text)
            & (t.database_name == observation.database_name)
            & (t.is_resolved == false())
        )

    def _upsert_sync(
        self,
        observation: SlowQueryObservation,
        severity: Severity,
        now: datetime,
    ) -> SlowQueryHistoryRecord:
        where = self._unresolved_clause(observation)
        refreshed = {
            "last_seen": now,
            "avg_duration_ms": observation.avg_duration_ms,
            "execution_count": observation.execution_count,
            "query_plan": observation.query_plan,
            "severity": severity.value,
        }

        with self._engine.begin() as conn:
            existing = conn.execute(select(slow_query_history.c.id).where(where)).first()
            if existing is not None:
                conn.execute(update(slow_query_history).where(slow_query_history.c.id == existing.id)
                             .values(**refreshed))
                return _row_to_slow_query(conn.execute(
                    select(slow_query_history).where(slow_query_history.c.id == existing.id)).one())

        try:
            with self._engine.begin() as conn:
                result = conn.execute(insert(slow_query_history).values(
                    query_hash=query_hash(observation.query_text),
                    query_text=observation.query_text,
                    database_name=observation.database_name,
                    first_seen=now,
                    is_resolved=False,
                    **refreshed,
                ))
                new_id = result.inserted_primary_key[0]
                return _row_to_slow_query(conn.execute(
                    select(slow_query_history).where(slow_query_history.c.id == new_id)).one())
        except IntegrityError:
            # Another writer inserted the same identity first
            logger.debug(f"Concurrent insert for {observation.display_name}, re-reading")

        with self._engine.begin() as conn:
            conn.execute(update(slow_query_history).where(where).values(**refreshed))
            return _row_to_slow_query(conn.execute(select(slow_query_history).where(where)).one())

    async def _upsert_slow_query(
        self,
        observation: SlowQueryObservation,
        severity: Severity,
        now: datetime,
    ) -> SlowQueryHistoryRecord:
        return await self._run(self._upsert_sync, observation, severity, now)

    def _append_sync(self, record: IndexOperationRecord) -> IndexOperationRecord:
        with self._engine.begin() as conn:
            result = conn.execute(insert(index_operation_log).values(
                database_name=record.database_name,
                schema_name=record.schema_name,
                table_name=record.table_name,
                index_name=record.index_name,
                fragmentation_percent=record.fragmentation_percent,
                page_count=record.page_count,
                operation_type=record.operation_type.value,
                operation_date=record.operation_date,
                duration_ms=record.duration_ms,
                success=record.success,
                error_message=record.error_message or "",
            ))
            return replace(record, id=result.inserted_primary_key[0])

    async def append_index_operation(self, record: IndexOperationRecord) -> IndexOperationRecord:
        return await self._run(self._append_sync, record)

    def _update_record_sync(self, record_id: int, values: dict, unresolved_only: bool = False) -> None:
        stmt = update(slow_query_history).where(slow_query_history.c.id == record_id)
        if unresolved_only:
            stmt = stmt.where(slow_query_history.c.is_resolved == false())
        with self._engine.begin() as conn:
            exists = conn.execute(
                select(slow_query_history.c.id).where(slow_query_history.c.id == record_id)
            ).first()
            if exists is None:
                raise HistoryStoreError(f"Slow query record {record_id} not found", {"id": record_id})
            conn.execute(stmt.values(**values))

    async def set_optimization_suggestion(self, record_id: int, suggestion: str) -> None:
        await self._run(self._update_record_sync, record_id, {"optimization_suggestion": suggestion})

    async def resolve_slow_query(self, record_id: int, resolution: str) -> None:
        values = {"is_resolved": True, "resolution": resolution, "resolved_at": self._clock()}
        await self._run(self._update_record_sync, record_id, values, True)

    def _get_sync(self, record_id: int) -> Optional[SlowQueryHistoryRecord]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(slow_query_history).where(slow_query_history.c.id == record_id)
            ).first()
        return _row_to_slow_query(row) if row else None

    async def get_slow_query(self, record_id: int) -> Optional[SlowQueryHistoryRecord]:
        return await self._run(self._get_sync, record_id)

    def _unresolved_sync(self, database_name: Optional[str]) -> List[SlowQueryHistoryRecord]:
        stmt = select(slow_query_history).where(slow_query_history.c.is_resolved == false())
        if database_name is not None:
            stmt = stmt.where(slow_query_history.c.database_name == database_name)
        with self._engine.connect() as conn:
            rows = conn.execute(stmt.order_by(slow_query_history.c.id)).all()
        return [_row_to_slow_query(r) for r in rows]

    async def get_unresolved_slow_queries(
        self,
        database_name: Optional[str] = None,
    ) -> List[SlowQueryHistoryRecord]:
        return await self._run(self._unresolved_sync, database_name)

    def _operations_sync(self, database_name: Optional[str], limit: int) -> List[IndexOperationRecord]:
        stmt = select(index_operation_log)
        if database_name is not None:
            stmt = stmt.where(index_operation_log.c.database_name == database_name)
        stmt = stmt.order_by(index_operation_log.c.id.desc()).limit(limit)
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [_row_to_operation(r) for r in rows]

    async def get_index_operations(
        self,
        database_name: Optional[str] = None,
        limit: int = 100,
    ) -> List[IndexOperationRecord]:
        return await self._run(self._operations_sync, database_name, limit)

    async def close(self) -> None:
        await asyncio.to_thread(self._engine.dispose)


def create_history_store(settings: Settings, clock: Optional[Clock] = None) -> HistoryStore:
    """Select the history store implementation from settings.history.url"""
    url = settings.history_url
    if url == MEMORY_URL:
        logger.info("Using in-memory history store")
        return InMemoryHistoryStore(clock=clock)

    logger.info(f"Using SQL history store: {make_url(url).render_as_string(hide_password=True)}")
    return SqlAlchemyHistoryStore.from_url(url, echo=settings.history.echo_sql, clock=clock)
