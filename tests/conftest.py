"""Test configuration and fixtures for sqlmonitor."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx
import pytest

from sqlmonitor.core.config import AISettings, MonitoringSettings
from sqlmonitor.database.base import QueryExecutor
from sqlmonitor.services.history_store import InMemoryHistoryStore


class FakeExecutor(QueryExecutor):
    """
    Scripted QueryExecutor

    responses maps a SQL template to rows, an exception, or a callable
    (database, params) -> rows.
    """

    def __init__(self):
        self.responses: Dict[str, Any] = {}
        self.execute_errors: Dict[str, Exception] = {}
        self.fetch_calls: List[tuple] = []
        self.executed: List[tuple] = []

    def on(self, query: str, result: Any) -> None:
        self.responses[query] = result

    async def fetch_all(self, database: str, query: str,
                        params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        self.fetch_calls.append((database, query, params))
        result = self.responses.get(query, [])
        if callable(result):
            result = result(database, params)
        if isinstance(result, Exception):
            raise result
        return [dict(row) for row in result]

    async def execute(self, database: str, statement: str,
                      params: Optional[Dict[str, Any]] = None) -> int:
        self.executed.append((database, statement))
        error = self.execute_errors.get(statement)
        if error is not None:
            raise error
        return -1

    def queries_for(self, query: str) -> List[tuple]:
        return [call for call in self.fetch_calls if call[1] == query]


class FakeClock:
    """Manually advanced wall clock"""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeSleep:
    """Records requested sleeps instead of waiting"""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def chat_response(content: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


def rate_limit_response(message: str = "Rate limit exceeded.") -> httpx.Response:
    return httpx.Response(429, json={"error": {"code": "429", "message": message}})


class ScriptedTransport:
    """httpx MockTransport handler returning queued responses in order"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            item = self.responses.pop(0)
        else:
            item = self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def memory_store(fake_clock):
    return InMemoryHistoryStore(clock=fake_clock)


@pytest.fixture
def monitoring_settings():
    return MonitoringSettings(
        monitored_databases=["SalesDb"],
        warning_threshold_ms=2000,
        critical_threshold_ms=5000,
        missing_index_enabled=False,
    )


@pytest.fixture
def azure_settings():
    return AISettings(
        provider="AzureOpenAI",
        api_key="test-key",
        endpoint="contoso.openai.azure.com/",
        deployment="gpt4-deployment",
        max_retries=3,
        initial_retry_delay=1.0,
        rate_limit_default_wait=60.0,
    )
