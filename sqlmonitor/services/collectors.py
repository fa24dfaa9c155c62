"""
Collectors - lazy, finite sequences of observations per database

Each data source failure (Query Store disabled, permissions, connectivity)
is logged as a warning and yields nothing; it never aborts the cycle.
"""

import re
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlmonitor.core.constants import (
    ObservationSource,
    SLOW_QUERY_TOP_N,
    DEFAULT_MIN_PAGE_COUNT,
    DEFAULT_MISSING_INDEX_MIN_IMPROVEMENT,
)
from sqlmonitor.core.exceptions import SQLMonitorError, QueryStoreDisabledError
from sqlmonitor.core.logger import get_logger
from sqlmonitor.database.base import QueryExecutor
from sqlmonitor.database.queries import MonitorQueries
from sqlmonitor.models.monitor_models import (
    SlowQueryObservation,
    IndexFragmentationObservation,
    MissingIndexObservation,
)
from sqlmonitor.services.reindex_policy import ReindexPolicy, DEFAULT_REINDEX_POLICY

logger = get_logger('services.collectors')


class BaseCollector:
    """Shared soft-failure wrapper around the executor"""

    name = "collector"

    def __init__(self, executor: QueryExecutor):
        self.executor = executor

    async def _fetch(
        self,
        database: str,
        query: str,
        params: Optional[Dict[str, Any]] = None,
        source: str = "",
    ) -> List[Dict[str, Any]]:
        try:
            return await self.executor.fetch_all(database, query, params)
        except SQLMonitorError as e:
            logger.warning(f"{self.name}: {source or 'query'} unavailable for [{database}]: {e}")
            return []


class SlowQueryCollector(BaseCollector):
    """
    Slow queries from live DMV statistics, with Query Store as fallback

    Query Store is consulted only when the DMV source returned no rows.
    """

    name = "slow_queries"

    def __init__(
        self,
        executor: QueryExecutor,
        top_n: int = SLOW_QUERY_TOP_N,
        query_store_fallback: bool = True,
    ):
        super().__init__(executor)
        self.top_n = top_n
        self.query_store_fallback = query_store_fallback

    async def _query_store_enabled(self, database: str) -> bool:
        rows = await self._fetch(database, MonitorQueries.CHECK_QUERY_STORE_ENABLED,
                                 source="query store options")
        return bool(rows)

    async def _fetch_query_store(self, database: str, threshold_ms: float) -> List[Dict[str, Any]]:
        if not await self._query_store_enabled(database):
            logger.warning(f"{self.name}: {QueryStoreDisabledError(database)}")
            return []
        return await self._fetch(
            database,
            MonitorQueries.get_slow_queries_sql(use_query_store=True),
            {"threshold_ms": threshold_ms, "top_n": self.top_n},
            source="query store",
        )

    async def collect(self, database: str, threshold_ms: float) -> AsyncIterator[SlowQueryObservation]:
        params = {"threshold_ms": threshold_ms, "top_n": self.top_n, "database_name": database}
        rows = await self._fetch(
            database,
            MonitorQueries.get_slow_queries_sql(use_query_store=False),
            params,
            source="dmv statistics",
        )
        source = ObservationSource.DMV

        if not rows and self.query_store_fallback:
            logger.debug(f"{self.name}: no DMV rows for [{database}], trying Query Store")
            rows = await self._fetch_query_store(database, threshold_ms)
            source = ObservationSource.QUERY_STORE

        for row in rows:
            query_text = row.get("query_text")
            if not query_text:
                continue
            yield SlowQueryObservation(
                query_text=query_text,
                database_name=row.get("database_name") or database,
                avg_duration_ms=float(row.get("avg_duration_ms") or 0.0),
                execution_count=int(row.get("execution_count") or 0),
                last_execution_time=row.get("last_execution_time"),
                query_plan=row.get("query_plan"),
                query_id=str(row["query_id"]) if row.get("query_id") is not None else None,
                source=source,
            )


class IndexFragmentationCollector(BaseCollector):
    """Fragmented user-table indexes above the page-count floor"""

    name = "index_fragmentation"

    def __init__(
        self,
        executor: QueryExecutor,
        policy: ReindexPolicy = DEFAULT_REINDEX_POLICY,
        min_page_count: int = DEFAULT_MIN_PAGE_COUNT,
    ):
        super().__init__(executor)
        self.policy = policy
        self.min_page_count = min_page_count

    async def collect(
        self,
        database: str,
        threshold_percent: float,
    ) -> AsyncIterator[IndexFragmentationObservation]:
        rows = await self._fetch(
            database,
            MonitorQueries.FRAGMENTED_INDEXES,
            {"threshold_percent": threshold_percent, "min_page_count": self.min_page_count},
            source="index physical stats",
        )
        for row in rows:
            page_count = int(row.get("page_count") or 0)
            if page_count <= self.min_page_count:
                continue
            fragmentation = float(row.get("fragmentation_percent") or 0.0)
            yield IndexFragmentationObservation(
                database_name=row.get("database_name") or database,
                schema_name=row.get("schema_name") or "dbo",
                table_name=row["table_name"],
                index_name=row["index_name"],
                fragmentation_percent=fragmentation,
                page_count=page_count,
                last_reindexed=row.get("last_reindexed"),
                reindex_type=self.policy.decide(fragmentation),
            )


def _strip_brackets(columns: str) -> str:
    return re.sub(r"[\[\]]", "", columns).replace(", ", "_").replace(",", "_")


def build_create_index_statement(
    table_name: str,
    qualified_table: str,
    equality_columns: Optional[str],
    inequality_columns: Optional[str],
    included_columns: Optional[str],
) -> str:
    key_columns = ", ".join(c for c in (equality_columns, inequality_columns) if c)
    statement = (
        f"CREATE INDEX IX_{table_name}_{_strip_brackets(key_columns)} "
        f"ON {qualified_table} ({key_columns})"
    )
    if included_columns:
        statement += f" INCLUDE ({included_columns})"
    return statement


class MissingIndexCollector(BaseCollector):
    """Missing index suggestions recorded by the query optimizer"""

    name = "missing_indexes"

    def __init__(
        self,
        executor: QueryExecutor,
        min_improvement: int = DEFAULT_MISSING_INDEX_MIN_IMPROVEMENT,
    ):
        super().__init__(executor)
        self.min_improvement = min_improvement

    def is_significant(self, observation: MissingIndexObservation) -> bool:
        return observation.improvement_percent >= self.min_improvement

    async def collect(self, database: str) -> AsyncIterator[MissingIndexObservation]:
        rows = await self._fetch(
            database,
            MonitorQueries.MISSING_INDEXES,
            {"database_name": database},
            source="missing index DMVs",
        )
        for row in rows:
            table_name = row.get("table_name")
            if not table_name:
                continue
            equality = row.get("equality_columns")
            inequality = row.get("inequality_columns")
            if not equality and not inequality:
                continue
            yield MissingIndexObservation(
                database_name=database,
                table_name=table_name,
                equality_columns=equality,
                inequality_columns=inequality,
                included_columns=row.get("included_columns"),
                improvement_percent=int(row.get("improvement_percent") or 0),
                create_statement=build_create_index_statement(
                    table_name,
                    row.get("qualified_table") or f"[{table_name}]",
                    equality,
                    inequality,
                    row.get("included_columns"),
                ),
            )
