"""
Monitor Service - detection cycle and remediation orchestration

Per database a cycle walks Collecting -> Classifying -> Upserting ->
Remediating -> Analyzing. Databases run concurrently up to
max_parallel_databases; a failure in one database never affects the others.
"""

import asyncio
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlmonitor.ai.analysis_service import AIQueryAnalysisService, is_analysis_error
from sqlmonitor.core.config import MonitoringSettings
from sqlmonitor.core.constants import CycleState, FixType, ReindexType
from sqlmonitor.core.exceptions import SQLMonitorError, QueryNotFoundError
from sqlmonitor.core.logger import get_logger, log_exception, LogContext
from sqlmonitor.database.base import QueryExecutor
from sqlmonitor.database.queries import MonitorQueries
from sqlmonitor.models.monitor_models import (
    SlowQueryObservation,
    SlowQueryHistoryRecord,
    IndexFragmentationObservation,
    IndexOperationRecord,
    PerformanceSnapshot,
    QueryFixResult,
    DatabaseCycleResult,
    CycleReport,
)
from sqlmonitor.services.collectors import (
    SlowQueryCollector,
    IndexFragmentationCollector,
    MissingIndexCollector,
)
from sqlmonitor.services.history_store import HistoryStore
from sqlmonitor.services.reindex_policy import ReindexPolicy, build_reindex_command
from sqlmonitor.services.severity_classifier import SeverityThresholds, classify

logger = get_logger('services.monitor')

MASTER_DATABASE = "master"

# SQL Server messages for editions or indexes that cannot rebuild online
ONLINE_UNSUPPORTED_MARKERS = (
    "online index operations can only be performed",
    "an online operation cannot be performed",
)


def compute_improvement(before_ms: float, after_ms: float) -> float:
    """Percentage saved by the optimized query; 0 when there is no baseline"""
    if before_ms <= 0:
        return 0.0
    return round((1 - after_ms / before_ms) * 100, 2)


def _is_online_rebuild_unsupported(error: SQLMonitorError) -> bool:
    # message only; details carry the failed statement, which names ONLINE itself
    message = error.message.lower()
    return any(marker in message for marker in ONLINE_UNSUPPORTED_MARKERS)


class MonitorOrchestrator:
    """
    Entry point for detection cycles and the four boundary operations:
    detect_slow_queries, detect_fragmented_indexes, apply_fix and reindex
    """

    def __init__(
        self,
        executor: QueryExecutor,
        history_store: HistoryStore,
        settings: MonitoringSettings,
        ai_service: Optional[AIQueryAnalysisService] = None,
        perf_counter: Callable[[], float] = time.perf_counter,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.executor = executor
        self.history = history_store
        self.settings = settings
        self.ai_service = ai_service
        self._perf_counter = perf_counter
        self._clock = clock

        self.thresholds = SeverityThresholds.from_settings(settings)
        self.policy = ReindexPolicy.from_settings(settings)
        self.slow_query_collector = SlowQueryCollector(executor)
        self.index_collector = IndexFragmentationCollector(
            executor, policy=self.policy, min_page_count=settings.min_page_count
        )
        self.missing_index_collector = MissingIndexCollector(
            executor, min_improvement=settings.missing_index_min_improvement
        )
        self._cycle_number = 0

    # ------------------------------------------------------------------
    # Database discovery
    # ------------------------------------------------------------------

    async def get_monitored_databases(self) -> List[str]:
        """Configured databases, or every online user database when none are configured"""
        if self.settings.monitored_databases:
            return list(self.settings.monitored_databases)

        try:
            rows = await self.executor.fetch_all(
                MASTER_DATABASE, MonitorQueries.LIST_ONLINE_USER_DATABASES
            )
        except SQLMonitorError as e:
            logger.warning(f"Database discovery failed: {e}")
            return []
        return [row["database_name"] for row in rows if row.get("database_name")]

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def _collect_slow_queries(self, database: str) -> List[SlowQueryObservation]:
        return [
            observation async for observation in self.slow_query_collector.collect(
                database, self.settings.slow_query_threshold_ms
            )
        ]

    async def _record_slow_queries(
        self,
        observations: List[SlowQueryObservation],
    ) -> List[SlowQueryHistoryRecord]:
        records = []
        for observation in observations:
            severity = classify(observation.avg_duration_ms, self.thresholds)
            record = await self.history.upsert_slow_query(observation, severity)
            records.append(record)
        return records

    async def _collect_fragmented_indexes(self, database: str) -> List[IndexFragmentationObservation]:
        return [
            observation async for observation in self.index_collector.collect(
                database, self.settings.fragmentation_threshold
            )
        ]

    async def detect_slow_queries(self) -> List[SlowQueryHistoryRecord]:
        """Collect, classify and record slow queries for every monitored database"""
        records: List[SlowQueryHistoryRecord] = []
        for database in await self.get_monitored_databases():
            try:
                observations = await self._collect_slow_queries(database)
                records.extend(await self._record_slow_queries(observations))
            except Exception as e:
                log_exception(logger, e, f"Slow query detection failed for [{database}]")
        return records

    async def detect_fragmented_indexes(self) -> List[IndexFragmentationObservation]:
        """Fragmented indexes across all monitored databases, each tagged with its reindex type"""
        indexes: List[IndexFragmentationObservation] = []
        for database in await self.get_monitored_databases():
            try:
                indexes.extend(await self._collect_fragmented_indexes(database))
            except Exception as e:
                log_exception(logger, e, f"Fragmentation detection failed for [{database}]")
        return indexes

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _enter(self, database: str, state: CycleState) -> None:
        logger.debug(f"[{database}] {state.value}")

    async def _process_database(self, database: str, stop_event: asyncio.Event) -> DatabaseCycleResult:
        result = DatabaseCycleResult(database_name=database)

        self._enter(database, CycleState.COLLECTING)
        observations = await self._collect_slow_queries(database)
        fragmented = await self._collect_fragmented_indexes(database)
        result.fragmented_indexes = fragmented

        self._enter(database, CycleState.CLASSIFYING)
        self._enter(database, CycleState.UPSERTING)
        result.slow_queries = await self._record_slow_queries(observations)
        by_identity: Dict[tuple, SlowQueryObservation] = {o.identity: o for o in observations}

        if stop_event.is_set():
            return result

        if self.settings.auto_reindex:
            self._enter(database, CycleState.REMEDIATING)
            for index in fragmented:
                if stop_event.is_set():
                    return result
                if not index.needs_reindexing or index.page_count <= self.settings.min_page_count:
                    continue
                operation = await self.reindex(index)
                if operation is not None:
                    result.index_operations.append(operation)

        if self.settings.missing_index_enabled:
            async for suggestion in self.missing_index_collector.collect(database):
                result.missing_indexes.append(suggestion)
                if self.missing_index_collector.is_significant(suggestion):
                    logger.info(
                        f"[{database}] Missing index on {suggestion.table_name} "
                        f"({suggestion.improvement_percent}% estimated improvement): "
                        f"{suggestion.create_statement}"
                    )

        if stop_event.is_set():
            return result

        if self.settings.ai_analysis_enabled and self.ai_service and self.ai_service.is_configured:
            self._enter(database, CycleState.ANALYZING)
            min_rank = self.settings.ai_analysis_min_severity.rank
            analyzed_ids = set()
            for record in result.slow_queries:
                if stop_event.is_set():
                    return result
                if record.severity.rank < min_rank or record.optimization_suggestion:
                    continue
                if record.id in analyzed_ids:
                    continue
                analyzed_ids.add(record.id)
                suggestion = await self.ai_service.analyze(by_identity[record.identity])
                if is_analysis_error(suggestion):
                    # Left empty so the next cycle retries
                    logger.warning(f"[{database}] AI analysis skipped for history record {record.id}: {suggestion}")
                    continue
                await self.history.set_optimization_suggestion(record.id, suggestion)
                record.optimization_suggestion = suggestion
                result.analyzed_count += 1

        self._enter(database, CycleState.IDLE)
        return result

    async def run_cycle(self, stop_event: Optional[asyncio.Event] = None) -> CycleReport:
        """
        Run one detection cycle over all monitored databases

        Returns:
            CycleReport; failed databases are listed, never raised
        """
        stop_event = stop_event or asyncio.Event()
        self._cycle_number += 1
        report = CycleReport(cycle_number=self._cycle_number, started_at=self._clock())
        semaphore = asyncio.Semaphore(self.settings.max_parallel_databases)

        async def guarded(database: str) -> DatabaseCycleResult:
            async with semaphore:
                if stop_event.is_set():
                    return DatabaseCycleResult(database_name=database, skipped=True)
                try:
                    return await self._process_database(database, stop_event)
                except Exception as e:
                    log_exception(logger, e, f"Detection cycle failed for [{database}]")
                    return DatabaseCycleResult(database_name=database, error=str(e))

        with LogContext(logger, f"Detection cycle #{self._cycle_number}"):
            databases = await self.get_monitored_databases()
            if not databases:
                logger.warning("No databases to monitor")
            report.databases = list(await asyncio.gather(*(guarded(db) for db in databases)))

        report.cancelled = stop_event.is_set()
        report.finished_at = self._clock()
        for failed in report.failed_databases:
            logger.warning(f"Database [{failed}] failed in cycle #{report.cycle_number}")
        return report

    # ------------------------------------------------------------------
    # Remediation
    # ------------------------------------------------------------------

    async def reindex(self, observation: IndexFragmentationObservation) -> Optional[IndexOperationRecord]:
        """
        Rebuild or reorganize one index and log the attempt

        Returns:
            The stored operation record, or None when no reindex is needed
        """
        reindex_type = observation.reindex_type
        if reindex_type == ReindexType.NONE:
            logger.debug(f"No reindex needed for {observation.qualified_name}")
            return None

        online = reindex_type == ReindexType.REBUILD and self.settings.online_rebuild
        command = build_reindex_command(
            observation.schema_name,
            observation.table_name,
            observation.index_name,
            reindex_type,
            online=online,
        )

        logger.info(
            f"Reindexing {observation.qualified_name} with {reindex_type.value.upper()} "
            f"({observation.fragmentation_percent:.1f}% fragmented, {observation.page_count} pages)"
        )
        success = True
        error_message = ""
        start = self._perf_counter()
        try:
            await self.executor.execute(observation.database_name, command)
        except SQLMonitorError as e:
            if online and _is_online_rebuild_unsupported(e):
                logger.warning(f"Online rebuild rejected for {observation.qualified_name}, retrying offline")
                offline = build_reindex_command(
                    observation.schema_name,
                    observation.table_name,
                    observation.index_name,
                    reindex_type,
                    online=False,
                )
                try:
                    await self.executor.execute(observation.database_name, offline)
                except SQLMonitorError as offline_error:
                    success = False
                    error_message = str(offline_error)
            else:
                success = False
                error_message = str(e)
        duration_ms = int((self._perf_counter() - start) * 1000)

        if success:
            logger.info(f"Successfully reindexed {observation.qualified_name} in {duration_ms} ms")
        else:
            logger.error(f"Reindex failed for {observation.qualified_name}: {error_message}")

        record = IndexOperationRecord(
            database_name=observation.database_name,
            schema_name=observation.schema_name,
            table_name=observation.table_name,
            index_name=observation.index_name,
            fragmentation_percent=observation.fragmentation_percent,
            page_count=observation.page_count,
            operation_type=reindex_type,
            operation_date=self._clock(),
            duration_ms=duration_ms,
            success=success,
            error_message=error_message,
        )
        return await self.history.append_index_operation(record)

    async def _resolve_query(
        self, database: str, query_id: str
    ) -> Tuple[Optional[str], Optional[SlowQueryObservation]]:
        """
        History record id first, then Query Store query_id

        Returns:
            (query text, observation rebuilt from the history record or None)
        """
        if not query_id or not str(query_id).isdigit():
            return None, None

        record = await self.history.get_slow_query(int(query_id))
        if record is not None and record.database_name == database:
            observation = SlowQueryObservation(
                query_id=str(record.id),
                query_text=record.query_text,
                database_name=record.database_name,
                avg_duration_ms=record.avg_duration_ms,
                execution_count=record.execution_count,
                last_execution_time=record.last_seen,
                query_plan=record.query_plan,
            )
            return record.query_text, observation

        try:
            rows = await self.executor.fetch_all(
                database, MonitorQueries.QUERY_TEXT_BY_QUERY_ID, {"query_id": int(query_id)}
            )
        except SQLMonitorError as e:
            logger.warning(f"Query Store lookup failed for query {query_id} in [{database}]: {e}")
            return None, None
        if rows and rows[0].get("query_text"):
            return rows[0]["query_text"], None
        return None, None

    async def _measure(self, database: str, query: str) -> PerformanceSnapshot:
        start = self._perf_counter()
        try:
            await self.executor.fetch_all(database, query)
        except SQLMonitorError as e:
            elapsed = (self._perf_counter() - start) * 1000
            logger.warning(f"Query execution failed during measurement in [{database}]: {e}")
            return PerformanceSnapshot(execution_time_ms=elapsed, succeeded=False, error=str(e))
        elapsed = (self._perf_counter() - start) * 1000
        return PerformanceSnapshot(execution_time_ms=elapsed, succeeded=True)

    async def _resolve_history(self, database: str, query: str, resolution: str) -> None:
        for record in await self.history.get_unresolved_slow_queries(database):
            if record.query_text == query:
                await self.history.resolve_slow_query(record.id, resolution)

    async def apply_fix(
        self,
        database: str,
        query_id: str,
        fix_type: str = FixType.AI.value,
        query_text: Optional[str] = None,
    ) -> QueryFixResult:
        """
        Optimize a query (AI or manual pass-through) and measure the effect

        Raises:
            QueryNotFoundError: The query text is absent and cannot be resolved
        """
        # Anything but "ai" is a manual pass-through
        fix = FixType.AI if str(fix_type).lower() == FixType.AI.value else FixType.MANUAL

        query, observation = query_text, None
        if not query:
            query, observation = await self._resolve_query(database, query_id)
        if not query:
            raise QueryNotFoundError(database, str(query_id))

        logger.info(f"Applying {fix.value} fix to query {query_id} in [{database}]")
        before = await self._measure(database, query)

        optimized = query
        explanation = "Manual fix: query executed unchanged"
        recommendations: List[str] = []
        ai_powered = False
        if fix == FixType.AI:
            if self.ai_service is None:
                explanation = "AI service unavailable; query executed unchanged"
            else:
                ai_result = await self.ai_service.optimize(query, database, observation=observation)
                optimized = ai_result.optimized_query
                explanation = ai_result.explanation
                recommendations = ai_result.index_recommendations
                ai_powered = not ai_result.is_simulated

        if optimized != query:
            after = await self._measure(database, optimized)
        else:
            after = before

        improvement = compute_improvement(before.execution_time_ms, after.execution_time_ms)
        if not (before.succeeded and after.succeeded):
            improvement = 0.0

        if ai_powered and after.succeeded and improvement > 0:
            await self._resolve_history(
                database, query, f"AI fix applied ({improvement}% faster)"
            )

        if ai_powered:
            message = "Query optimized with AI"
        elif fix == FixType.AI:
            message = "AI optimization unavailable; original query kept"
        else:
            message = "Manual fix applied"

        return QueryFixResult(
            message=message,
            fix_type=fix.value,
            original_query=query,
            optimized_query=optimized,
            explanation=explanation,
            index_recommendations=recommendations,
            performance_before=before,
            performance_after=after,
            improvement_percent=improvement,
            ai_powered=ai_powered,
            optimized_query_works=after.succeeded,
        )
