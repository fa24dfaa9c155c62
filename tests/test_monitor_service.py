"""Tests for the monitor orchestrator: cycles, reindexing and query fixes."""

import asyncio
import json
from datetime import timedelta

import pytest

from sqlmonitor.ai.analysis_service import AIQueryAnalysisService
from sqlmonitor.core.config import AISettings, MonitoringSettings
from sqlmonitor.core.constants import ReindexType, Severity
from sqlmonitor.core.exceptions import PermissionDeniedError, QueryExecutionError, QueryNotFoundError
from sqlmonitor.database.queries import MonitorQueries
from sqlmonitor.models.monitor_models import IndexFragmentationObservation, SlowQueryObservation
from sqlmonitor.services.monitor_service import MonitorOrchestrator, compute_improvement

from conftest import ScriptedTransport, chat_response

ORDERS_QUERY = "SELECT * FROM dbo.Orders WHERE CustomerId = 42"
OPTIMIZED_QUERY = "SELECT OrderId, OrderDate FROM dbo.Orders WHERE CustomerId = 42"
AI_ANSWER = f"```sql\n{OPTIMIZED_QUERY}\n```\nSelect only the needed columns."

ONLINE_REBUILD = "ALTER INDEX [IX_Orders_Date] ON [dbo].[Orders] REBUILD WITH (ONLINE = ON)"
OFFLINE_REBUILD = "ALTER INDEX [IX_Orders_Date] ON [dbo].[Orders] REBUILD"


class FakePerfCounter:
    """Returns scripted perf_counter readings in order"""

    def __init__(self, *readings):
        self.readings = list(readings)

    def __call__(self) -> float:
        return self.readings.pop(0)


def orders_index(fragmentation: float = 45.0, page_count: int = 500) -> IndexFragmentationObservation:
    return IndexFragmentationObservation(
        database_name="SalesDb",
        schema_name="dbo",
        table_name="Orders",
        index_name="IX_Orders_Date",
        fragmentation_percent=fragmentation,
        page_count=page_count,
    )


def critical_observation(query: str) -> SlowQueryObservation:
    return SlowQueryObservation(query_text=query, database_name="SalesDb",
                                avg_duration_ms=6000.0, execution_count=3)


def slow_row(duration_ms: float, query: str = ORDERS_QUERY) -> dict:
    return {
        "query_text": query,
        "database_name": "SalesDb",
        "avg_duration_ms": duration_ms,
        "execution_count": 25,
    }


def ai_service_for(azure_settings, fake_sleep, *responses):
    transport = ScriptedTransport(*responses)
    service = AIQueryAnalysisService.from_settings(
        azure_settings, http_client=transport.client(), sleep=fake_sleep
    )
    return service, transport


@pytest.fixture
def orchestrator(fake_executor, memory_store, monitoring_settings, fake_clock):
    return MonitorOrchestrator(fake_executor, memory_store, monitoring_settings, clock=fake_clock)


def test_compute_improvement():
    assert compute_improvement(200.0, 50.0) == 75.0
    assert compute_improvement(100.0, 150.0) == -50.0
    assert compute_improvement(0.0, 10.0) == 0.0


class TestReindex:
    @pytest.mark.asyncio
    async def test_heavily_fragmented_index_is_rebuilt_online(self, orchestrator, fake_executor, memory_store):
        observation = orders_index(45.0, 500)
        assert observation.reindex_type == ReindexType.REBUILD

        record = await orchestrator.reindex(observation)

        assert fake_executor.executed == [("SalesDb", ONLINE_REBUILD)]
        assert record.success is True
        assert record.operation_type == ReindexType.REBUILD
        assert record.error_message == ""
        assert [op.id for op in await memory_store.get_index_operations()] == [record.id]

    @pytest.mark.asyncio
    async def test_online_rejection_retries_offline(self, orchestrator, fake_executor):
        fake_executor.execute_errors[ONLINE_REBUILD] = QueryExecutionError(
            "Query failed: Online index operations can only be performed in Enterprise edition of SQL Server.",
            query=ONLINE_REBUILD,
        )

        record = await orchestrator.reindex(orders_index())

        assert [statement for _, statement in fake_executor.executed] == [ONLINE_REBUILD, OFFLINE_REBUILD]
        assert record.success is True

    @pytest.mark.asyncio
    async def test_unrelated_online_failure_is_not_retried_offline(self, orchestrator, fake_executor):
        fake_executor.execute_errors[ONLINE_REBUILD] = PermissionDeniedError(
            "Permission denied: Cannot find the object \"dbo.Orders\" because it does not exist "
            "or you do not have permissions.",
            query=ONLINE_REBUILD,
        )

        record = await orchestrator.reindex(orders_index())

        assert [statement for _, statement in fake_executor.executed] == [ONLINE_REBUILD]
        assert record.success is False
        assert record.error_message.startswith("Permission denied")

    @pytest.mark.asyncio
    async def test_failure_is_recorded(self, orchestrator, fake_executor, memory_store):
        reorganize = "ALTER INDEX [IX_Orders_Date] ON [dbo].[Orders] REORGANIZE"
        fake_executor.execute_errors[reorganize] = QueryExecutionError("Lock request time out period exceeded.")

        record = await orchestrator.reindex(orders_index(20.0))

        assert record.success is False
        assert "Lock request time out" in record.error_message
        stored = await memory_store.get_index_operations()
        assert stored[0].operation_type == ReindexType.REORGANIZE
        assert stored[0].success is False

    @pytest.mark.asyncio
    async def test_no_reindex_below_threshold(self, orchestrator, fake_executor, memory_store):
        assert await orchestrator.reindex(orders_index(10.0)) is None
        assert fake_executor.executed == []
        assert await memory_store.get_index_operations() == []

    @pytest.mark.asyncio
    async def test_offline_rebuild_setting(self, fake_executor, memory_store, fake_clock):
        settings = MonitoringSettings(monitored_databases=["SalesDb"], online_rebuild=False)
        orchestrator = MonitorOrchestrator(fake_executor, memory_store, settings, clock=fake_clock)

        await orchestrator.reindex(orders_index())

        assert fake_executor.executed == [("SalesDb", OFFLINE_REBUILD)]


class TestDetectionCycle:
    @pytest.mark.asyncio
    async def test_repeat_observation_escalates_severity(self, orchestrator, fake_executor,
                                                        memory_store, fake_clock):
        durations = [2500.0]
        fake_executor.on(MonitorQueries.SLOW_QUERIES_DMV, lambda db, params: [slow_row(durations[0])])
        started = fake_clock.now

        first = await orchestrator.run_cycle()
        fake_clock.advance(minutes=15)
        durations[0] = 6000.0
        second = await orchestrator.run_cycle()

        assert first.databases[0].slow_queries[0].severity == Severity.WARNING
        record = second.databases[0].slow_queries[0]
        assert record.severity == Severity.CRITICAL
        assert record.first_seen == started
        assert record.last_seen == started + timedelta(minutes=15)
        assert len(await memory_store.get_unresolved_slow_queries()) == 1
        assert second.cycle_number == 2

    @pytest.mark.asyncio
    async def test_cycle_reindexes_fragmented_indexes(self, orchestrator, fake_executor):
        fake_executor.on(MonitorQueries.FRAGMENTED_INDEXES, [
            {"schema_name": "dbo", "table_name": "Orders", "index_name": "IX_Orders_Date",
             "fragmentation_percent": 45.0, "page_count": 500},
        ])

        report = await orchestrator.run_cycle()

        assert report.index_operation_count == 1
        assert report.databases[0].fragmented_indexes[0].reindex_type == ReindexType.REBUILD
        assert fake_executor.executed == [("SalesDb", ONLINE_REBUILD)]

    @pytest.mark.asyncio
    async def test_auto_reindex_disabled(self, fake_executor, memory_store, fake_clock):
        fake_executor.on(MonitorQueries.FRAGMENTED_INDEXES, [
            {"schema_name": "dbo", "table_name": "Orders", "index_name": "IX_Orders_Date",
             "fragmentation_percent": 45.0, "page_count": 500},
        ])
        settings = MonitoringSettings(monitored_databases=["SalesDb"], auto_reindex=False)
        orchestrator = MonitorOrchestrator(fake_executor, memory_store, settings, clock=fake_clock)

        report = await orchestrator.run_cycle()

        assert len(report.databases[0].fragmented_indexes) == 1
        assert fake_executor.executed == []

    @pytest.mark.asyncio
    async def test_one_failing_database_does_not_affect_others(self, fake_executor, memory_store, fake_clock):
        def slow_queries(database, params):
            if database == "Inventory":
                return RuntimeError("driver crashed")
            return [slow_row(2500.0)]

        fake_executor.on(MonitorQueries.SLOW_QUERIES_DMV, slow_queries)
        settings = MonitoringSettings(
            monitored_databases=["SalesDb", "Inventory"],
            warning_threshold_ms=2000,
            critical_threshold_ms=5000,
        )
        orchestrator = MonitorOrchestrator(fake_executor, memory_store, settings, clock=fake_clock)

        report = await orchestrator.run_cycle()

        assert report.failed_databases == ["Inventory"]
        assert report.slow_query_count == 1
        assert len(await memory_store.get_unresolved_slow_queries("SalesDb")) == 1

    @pytest.mark.asyncio
    async def test_stop_requested_before_cycle_skips_databases(self, orchestrator, fake_executor):
        stop = asyncio.Event()
        stop.set()

        report = await orchestrator.run_cycle(stop)

        assert report.cancelled is True
        assert [d.skipped for d in report.databases] == [True]
        assert fake_executor.fetch_calls == []

    @pytest.mark.asyncio
    async def test_databases_are_discovered_when_not_configured(self, fake_executor, memory_store):
        fake_executor.on(MonitorQueries.LIST_ONLINE_USER_DATABASES, [
            {"database_name": "Inventory"}, {"database_name": "SalesDb"},
        ])
        orchestrator = MonitorOrchestrator(fake_executor, memory_store, MonitoringSettings())

        assert await orchestrator.get_monitored_databases() == ["Inventory", "SalesDb"]
        database, _, _ = fake_executor.queries_for(MonitorQueries.LIST_ONLINE_USER_DATABASES)[0]
        assert database == "master"

    @pytest.mark.asyncio
    async def test_discovery_failure_monitors_nothing(self, fake_executor, memory_store):
        fake_executor.on(MonitorQueries.LIST_ONLINE_USER_DATABASES, QueryExecutionError("login failed"))
        orchestrator = MonitorOrchestrator(fake_executor, memory_store, MonitoringSettings())

        report = await orchestrator.run_cycle()

        assert report.databases == []

    @pytest.mark.asyncio
    async def test_critical_queries_are_analyzed_once(self, fake_executor, memory_store, fake_clock,
                                                      azure_settings, fake_sleep):
        fake_executor.on(MonitorQueries.SLOW_QUERIES_DMV, [
            slow_row(6000.0),
            slow_row(2500.0, query="SELECT * FROM dbo.Customers"),
        ])
        service, transport = ai_service_for(azure_settings, fake_sleep, chat_response("Add an index on CustomerId."))
        settings = MonitoringSettings(monitored_databases=["SalesDb"], ai_analysis_enabled=True,
                                      missing_index_enabled=False)
        orchestrator = MonitorOrchestrator(fake_executor, memory_store, settings,
                                           ai_service=service, clock=fake_clock)

        first = await orchestrator.run_cycle()
        await orchestrator.run_cycle()

        assert first.databases[0].analyzed_count == 1
        assert len(transport.requests) == 1
        suggestions = {r.query_text: r.optimization_suggestion
                       for r in await memory_store.get_unresolved_slow_queries()}
        assert suggestions == {
            ORDERS_QUERY: "Add an index on CustomerId.",
            "SELECT * FROM dbo.Customers": None,
        }

    @pytest.mark.asyncio
    async def test_failed_analysis_is_retried_next_cycle(self, fake_executor, memory_store, fake_clock,
                                                         azure_settings, fake_sleep):
        fake_executor.on(MonitorQueries.SLOW_QUERIES_DMV, [slow_row(6000.0)])
        service, transport = ai_service_for(
            azure_settings, fake_sleep,
            chat_response("Access denied", status_code=401),
            chat_response("Add an index on CustomerId."),
        )
        settings = MonitoringSettings(monitored_databases=["SalesDb"], ai_analysis_enabled=True,
                                      missing_index_enabled=False)
        orchestrator = MonitorOrchestrator(fake_executor, memory_store, settings,
                                           ai_service=service, clock=fake_clock)

        first = await orchestrator.run_cycle()
        [record] = await memory_store.get_unresolved_slow_queries()
        assert first.databases[0].analyzed_count == 0
        assert record.optimization_suggestion is None

        second = await orchestrator.run_cycle()

        assert second.databases[0].analyzed_count == 1
        assert len(transport.requests) == 2
        [record] = await memory_store.get_unresolved_slow_queries()
        assert record.optimization_suggestion == "Add an index on CustomerId."

    @pytest.mark.asyncio
    async def test_detect_operations(self, orchestrator, fake_executor):
        fake_executor.on(MonitorQueries.SLOW_QUERIES_DMV, [slow_row(2500.0)])
        fake_executor.on(MonitorQueries.FRAGMENTED_INDEXES, [
            {"schema_name": "dbo", "table_name": "Orders", "index_name": "IX_Orders_Date",
             "fragmentation_percent": 15.0, "page_count": 500},
        ])

        slow = await orchestrator.detect_slow_queries()
        fragmented = await orchestrator.detect_fragmented_indexes()

        assert [r.severity for r in slow] == [Severity.WARNING]
        assert [i.reindex_type for i in fragmented] == [ReindexType.REORGANIZE]
        assert fake_executor.executed == []


class TestApplyFix:
    @pytest.mark.asyncio
    async def test_ai_fix_measures_improvement_and_resolves_history(
        self, fake_executor, memory_store, monitoring_settings, fake_clock, azure_settings, fake_sleep
    ):
        service, transport = ai_service_for(azure_settings, fake_sleep, chat_response(AI_ANSWER))
        orchestrator = MonitorOrchestrator(
            fake_executor, memory_store, monitoring_settings, ai_service=service,
            perf_counter=FakePerfCounter(0.0, 0.2, 1.0, 1.05), clock=fake_clock,
        )
        record = await memory_store.upsert_slow_query(
            critical_observation(ORDERS_QUERY), Severity.CRITICAL
        )

        result = await orchestrator.apply_fix("SalesDb", str(record.id), "ai")

        assert result.ai_powered is True
        assert result.message == "Query optimized with AI"
        assert result.original_query == ORDERS_QUERY
        assert result.optimized_query == OPTIMIZED_QUERY
        assert result.improvement_percent == 75.0
        assert result.optimized_query_works is True
        assert result.to_dict()["performanceBefore"] == {"executionTime": 200.0}
        assert [q for _, q, _ in fake_executor.fetch_calls] == [ORDERS_QUERY, OPTIMIZED_QUERY]
        assert (await memory_store.get_slow_query(record.id)).is_resolved is True

        prompt = json.loads(transport.requests[0].content)["messages"][1]["content"]
        assert "Average duration: 6000.00 ms" in prompt
        assert "Execution count: 3" in prompt

    @pytest.mark.asyncio
    async def test_simulated_ai_keeps_original_query(
        self, fake_executor, memory_store, monitoring_settings, fake_clock
    ):
        service = AIQueryAnalysisService.from_settings(AISettings())
        orchestrator = MonitorOrchestrator(
            fake_executor, memory_store, monitoring_settings, ai_service=service,
            perf_counter=FakePerfCounter(0.0, 0.3), clock=fake_clock,
        )

        result = await orchestrator.apply_fix("SalesDb", "7", "ai", query_text=ORDERS_QUERY)

        assert result.ai_powered is False
        assert result.message == "AI optimization unavailable; original query kept"
        assert result.optimized_query == ORDERS_QUERY
        assert result.improvement_percent == 0.0
        assert len(fake_executor.fetch_calls) == 1

    @pytest.mark.asyncio
    async def test_manual_fix_uses_query_store_text(self, fake_executor, orchestrator):
        fake_executor.on(MonitorQueries.QUERY_TEXT_BY_QUERY_ID, [{"query_text": "SELECT 2"}])
        orchestrator._perf_counter = FakePerfCounter(0.0, 0.1)

        result = await orchestrator.apply_fix("SalesDb", "42", "manual")

        assert result.message == "Manual fix applied"
        assert result.original_query == "SELECT 2"
        assert result.optimized_query == "SELECT 2"
        assert result.improvement_percent == 0.0
        _, _, params = fake_executor.queries_for(MonitorQueries.QUERY_TEXT_BY_QUERY_ID)[0]
        assert params == {"query_id": 42}

    @pytest.mark.asyncio
    async def test_unresolvable_query_raises(self, orchestrator):
        with pytest.raises(QueryNotFoundError):
            await orchestrator.apply_fix("SalesDb", "42", "manual")
        with pytest.raises(QueryNotFoundError):
            await orchestrator.apply_fix("SalesDb", "0x0200AB", "ai")

    @pytest.mark.asyncio
    async def test_non_ai_fix_type_is_manual_pass_through(
        self, fake_executor, memory_store, monitoring_settings, fake_clock, azure_settings, fake_sleep
    ):
        service, transport = ai_service_for(azure_settings, fake_sleep, chat_response(AI_ANSWER))
        orchestrator = MonitorOrchestrator(
            fake_executor, memory_store, monitoring_settings, ai_service=service,
            perf_counter=FakePerfCounter(0.0, 0.1), clock=fake_clock,
        )

        result = await orchestrator.apply_fix("SalesDb", "1", "index", query_text="SELECT 1")

        assert result.message == "Manual fix applied"
        assert result.fix_type == "manual"
        assert result.optimized_query == result.original_query == "SELECT 1"
        assert result.ai_powered is False
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_failing_optimized_query_reports_no_improvement(
        self, fake_executor, memory_store, monitoring_settings, fake_clock, azure_settings, fake_sleep
    ):
        service, _ = ai_service_for(azure_settings, fake_sleep, chat_response(AI_ANSWER))
        fake_executor.on(OPTIMIZED_QUERY, QueryExecutionError("Invalid column name 'OrderDate'."))
        orchestrator = MonitorOrchestrator(
            fake_executor, memory_store, monitoring_settings, ai_service=service,
            perf_counter=FakePerfCounter(0.0, 0.2, 1.0, 1.01), clock=fake_clock,
        )
        record = await memory_store.upsert_slow_query(critical_observation(ORDERS_QUERY), Severity.CRITICAL)

        result = await orchestrator.apply_fix("SalesDb", str(record.id), "ai")

        assert result.ai_powered is True
        assert result.optimized_query_works is False
        assert result.performance_after.error is not None
        assert result.improvement_percent == 0.0
        assert (await memory_store.get_slow_query(record.id)).is_resolved is False
