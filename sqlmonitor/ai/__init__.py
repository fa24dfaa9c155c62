"""
AI module - LLM providers, prompts and optimization parsing
"""

from sqlmonitor.ai.llm_client import (
    LLMProviderType,
    LLMConfig,
    BaseLLMProvider,
    AzureOpenAIProvider,
    OpenAIProvider,
    AnthropicProvider,
    create_llm_provider,
)
from sqlmonitor.ai.response_parser import parse_optimization_response
from sqlmonitor.ai.analysis_service import AIQueryAnalysisService

__all__ = [
    "LLMProviderType",
    "LLMConfig",
    "BaseLLMProvider",
    "AzureOpenAIProvider",
    "OpenAIProvider",
    "AnthropicProvider",
    "create_llm_provider",
    "parse_optimization_response",
    "AIQueryAnalysisService",
]
