"""Tests for AIQueryAnalysisService and prompt construction."""

import json

import pytest

from sqlmonitor.ai.analysis_service import AIQueryAnalysisService, is_analysis_error
from sqlmonitor.ai.prompts import PromptType, build_database_context, build_messages, truncate_plan
from sqlmonitor.core.config import AISettings
from sqlmonitor.models.monitor_models import SlowQueryObservation

from conftest import ScriptedTransport, chat_response, rate_limit_response

ORIGINAL = "SELECT * FROM dbo.Orders WHERE CustomerId = 42"

ANSWER = (
    "```sql\nSELECT OrderId, OrderDate FROM dbo.Orders WHERE CustomerId = 42\n```\n"
    "CREATE INDEX IX_Orders_CustomerId ON dbo.Orders (CustomerId)\n"
    "Projects only the needed columns."
)


def make_service(settings, transport, sleep):
    return AIQueryAnalysisService.from_settings(settings, http_client=transport.client(), sleep=sleep)


@pytest.fixture
def observation():
    return SlowQueryObservation(
        query_text=ORIGINAL,
        database_name="SalesDb",
        avg_duration_ms=6200.5,
        execution_count=17,
        query_plan="<ShowPlanXML>" + "x" * 50 + "</ShowPlanXML>",
    )


class TestOptimize:
    @pytest.mark.asyncio
    async def test_rate_limited_then_success_is_not_simulated(self, azure_settings, fake_sleep):
        transport = ScriptedTransport(
            rate_limit_response("Please retry after 5 seconds."),
            chat_response(ANSWER),
        )
        service = make_service(azure_settings, transport, fake_sleep)

        result = await service.optimize(ORIGINAL, "SalesDb")

        assert result.is_simulated is False
        assert result.optimized_query == "SELECT OrderId, OrderDate FROM dbo.Orders WHERE CustomerId = 42"
        assert result.index_recommendations == ["CREATE INDEX IX_Orders_CustomerId ON dbo.Orders (CustomerId)"]
        assert fake_sleep.calls == [5.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_fall_back_to_original(self, azure_settings, fake_sleep):
        transport = ScriptedTransport(rate_limit_response())
        service = make_service(azure_settings, transport, fake_sleep)

        result = await service.optimize(ORIGINAL, "SalesDb")

        assert result.is_simulated is True
        assert result.optimized_query == ORIGINAL
        assert result.explanation.startswith("Error optimizing query:")
        assert len(transport.requests) == 4

    @pytest.mark.asyncio
    async def test_unconfigured_service_is_simulated_without_calls(self):
        service = AIQueryAnalysisService.from_settings(AISettings())

        result = await service.optimize(ORIGINAL, "SalesDb")

        assert service.is_configured is False
        assert result.is_simulated is True
        assert result.optimized_query == ORIGINAL
        assert await service.check_connection() is False

    @pytest.mark.asyncio
    async def test_prompt_carries_query_and_database(self, azure_settings, fake_sleep):
        transport = ScriptedTransport(chat_response(ANSWER))
        service = make_service(azure_settings, transport, fake_sleep)

        await service.optimize(ORIGINAL, "SalesDb")

        body = json.loads(transport.requests[0].content)
        user = body["messages"][1]["content"]
        assert user.startswith("Optimize this SQL query for a SQL Server database:\n\n" + ORIGINAL)
        assert "Database context: SalesDb" in user


class TestAnalyze:
    @pytest.mark.asyncio
    async def test_analysis_prompt_includes_timings_and_plan(self, azure_settings, fake_sleep, observation):
        transport = ScriptedTransport(chat_response("Add an index on CustomerId."))
        service = make_service(azure_settings, transport, fake_sleep)

        analysis = await service.analyze(observation)

        assert analysis == "Add an index on CustomerId."
        user = json.loads(transport.requests[0].content)["messages"][1]["content"]
        assert user.startswith("Analyze this SQL query")
        assert "Average duration: 6200.50 ms" in user
        assert "Execution count: 17" in user
        assert "<ShowPlanXML>" in user

    @pytest.mark.asyncio
    async def test_failure_becomes_error_message(self, azure_settings, fake_sleep, observation):
        transport = ScriptedTransport(chat_response("unused", status_code=400))
        service = make_service(azure_settings, transport, fake_sleep)

        analysis = await service.analyze(observation)

        assert analysis.startswith("Error analyzing query:")


class TestPrompts:
    def test_plan_is_truncated(self):
        plan = "p" * 100
        assert truncate_plan(plan, 10) == "p" * 10 + "\n... (plan truncated)"
        assert truncate_plan(plan, 0) is None
        assert truncate_plan(None) is None

    def test_context_without_observation_is_database_name(self):
        assert build_database_context(None, "SalesDb") == "SalesDb"

    def test_messages_are_deterministic(self, observation):
        context = build_database_context(observation, "SalesDb", 20)
        first = build_messages(PromptType.QUERY_OPTIMIZATION, ORIGINAL, context)
        second = build_messages(PromptType.QUERY_OPTIMIZATION, ORIGINAL, context)
        assert first == second
        assert first[0]["role"] == "system"
        assert "CREATE INDEX" in first[1]["content"]


def test_analysis_error_detection():
    assert is_analysis_error("Error analyzing query: azure_openai rejected the request with status 401")
    assert not is_analysis_error("Add an index on CustomerId.")
    assert not is_analysis_error(None)
