"""
AI Query Analysis Service - optimize and analyze slow queries

This is the boundary between the provider client and the orchestrator:
every failure is turned into a simulated result or an error string.
Task cancellation is the only thing that propagates.
"""

from typing import Optional

import httpx

from sqlmonitor.ai.llm_client import BaseLLMProvider, Sleeper, create_llm_provider
from sqlmonitor.ai.prompts import PromptType, build_database_context, build_messages
from sqlmonitor.ai.response_parser import parse_optimization_response
from sqlmonitor.core.config import AISettings
from sqlmonitor.core.logger import get_logger
from sqlmonitor.models.monitor_models import AIOptimizationResult, SlowQueryObservation

logger = get_logger('ai.analysis')

NOT_CONFIGURED_MESSAGE = "AI provider is not configured; returning the original query"
ANALYSIS_ERROR_PREFIX = "Error analyzing query:"


def is_analysis_error(text: Optional[str]) -> bool:
    """True for the message analyze() returns instead of an analysis"""
    return bool(text) and text.startswith(ANALYSIS_ERROR_PREFIX)


class AIQueryAnalysisService:
    """
    SQL query optimization through the configured LLM provider

    Example:
        >>> service = AIQueryAnalysisService.from_settings(settings.ai)
        >>> result = await service.optimize("SELECT * FROM Orders", "Sales")
        >>> result.is_simulated
        False
    """

    def __init__(
        self,
        provider: Optional[BaseLLMProvider],
        max_plan_chars: int = 4000,
    ):
        self.provider = provider
        self.max_plan_chars = max_plan_chars

    @classmethod
    def from_settings(
        cls,
        settings: AISettings,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Optional[Sleeper] = None,
    ) -> 'AIQueryAnalysisService':
        provider = None
        if settings.is_configured:
            provider = create_llm_provider(settings, http_client=http_client, sleep=sleep)
        else:
            logger.warning("AI API key missing, optimization results will be simulated")
        return cls(provider, max_plan_chars=settings.max_plan_chars)

    @property
    def is_configured(self) -> bool:
        return self.provider is not None

    async def optimize(
        self,
        query: str,
        database_context: str,
        observation: Optional[SlowQueryObservation] = None,
    ) -> AIOptimizationResult:
        """
        Ask the provider for an optimized version of the query

        Returns:
            Parsed result, or a simulated result carrying the original query
            when the provider is unavailable or fails permanently
        """
        if self.provider is None:
            return AIOptimizationResult.simulated(query, NOT_CONFIGURED_MESSAGE)

        if observation is not None:
            database_context = build_database_context(observation, database_context, self.max_plan_chars)
        messages = build_messages(PromptType.QUERY_OPTIMIZATION, query, database_context)

        logger.info(f"Optimizing query with {self.provider.name} ({self.provider.model})")
        try:
            response_text = await self.provider.complete(messages)
        except Exception as e:
            logger.error(f"Error optimizing query with AI: {e}")
            return AIOptimizationResult.simulated(query, f"Error optimizing query: {e}")

        return parse_optimization_response(response_text, query)

    async def analyze(self, observation: SlowQueryObservation) -> str:
        """Free-text analysis of a slow query, or an "Error analyzing query" message"""
        if self.provider is None:
            return f"{ANALYSIS_ERROR_PREFIX} {NOT_CONFIGURED_MESSAGE}"

        database_context = build_database_context(
            observation, observation.database_name, self.max_plan_chars
        )
        messages = build_messages(PromptType.QUERY_ANALYSIS, observation.query_text, database_context)

        logger.info(f"Analyzing slow query in [{observation.database_name}]: {observation.display_name}")
        try:
            analysis = await self.provider.complete(messages)
        except Exception as e:
            logger.error(f"Error analyzing query with AI: {e}")
            return f"{ANALYSIS_ERROR_PREFIX} {e}"

        return analysis or "No analysis available"

    async def check_connection(self) -> bool:
        if self.provider is None:
            return False
        return await self.provider.check_connection()

    async def close(self) -> None:
        if self.provider is not None:
            await self.provider.close()
