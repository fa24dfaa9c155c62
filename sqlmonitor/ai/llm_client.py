"""
LLM Client - closed set of chat-completion providers

Supported providers:
- Azure OpenAI (api-key header, deployment URL)
- OpenAI (bearer token)
- Anthropic (x-api-key + anthropic-version headers)

The provider is selected once from settings. All providers share one
long-lived httpx.AsyncClient and the same retry/backoff loop; headers are
built per request and never set on the shared client.
"""

import asyncio
import httpx
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional, Callable, Awaitable
from dataclasses import dataclass
from enum import Enum

from sqlmonitor.core.config import AISettings
from sqlmonitor.core.constants import ANTHROPIC_API_VERSION
from sqlmonitor.core.exceptions import (
    SQLMonitorError,
    ConfigurationError,
    LLMConnectionError,
    LLMResponseError,
    RetryExhaustedError,
)
from sqlmonitor.core.logger import get_logger
from sqlmonitor.core.retry import RetryConfig, RetryState, parse_retry_after

logger = get_logger('ai.llm_client')

Message = Dict[str, str]
Sleeper = Callable[[float], Awaitable[None]]


class LLMProviderType(Enum):
    """Supported LLM provider types"""
    AZURE_OPENAI = "azure_openai"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


@dataclass
class LLMConfig:
    """LLM provider configuration"""
    provider_type: LLMProviderType
    model: str
    api_key: str = ""
    endpoint: str = ""
    deployment: str = ""
    api_version: str = ""
    temperature: float = 0.0
    max_tokens: int = 8000
    timeout: int = 60

    @classmethod
    def from_settings(cls, settings: AISettings) -> 'LLMConfig':
        try:
            provider_type = LLMProviderType(settings.provider)
        except ValueError as e:
            raise ConfigurationError(
                f"Unsupported AI provider: {settings.provider}",
                {"supported": [p.value for p in LLMProviderType]},
            ) from e
        return cls(
            provider_type=provider_type,
            model=settings.model,
            api_key=settings.api_key,
            endpoint=settings.endpoint,
            deployment=settings.deployment,
            api_version=settings.api_version,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            timeout=settings.timeout,
        )


def clone_request(request: httpx.Request) -> httpx.Request:
    """Fresh copy of a request with the same method, URL, headers and body"""
    return httpx.Request(
        request.method,
        request.url,
        headers=request.headers.copy(),
        content=request.content,
    )


class BaseLLMProvider(ABC):
    """
    Base class for LLM providers

    Subclasses define the endpoint, auth headers and payload; the retry
    loop and response envelope unwrapping live here.
    """

    def __init__(
        self,
        config: LLMConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_config: Optional[RetryConfig] = None,
        sleep: Optional[Sleeper] = None,
    ):
        self.config = config
        self.retry_config = retry_config or RetryConfig()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=config.timeout)
        self._sleep: Sleeper = sleep or asyncio.sleep

    @property
    def name(self) -> str:
        return self.config.provider_type.value

    @property
    def model(self) -> str:
        return self.config.model

    @abstractmethod
    def build_url(self) -> str:
        pass

    @abstractmethod
    def build_headers(self) -> Dict[str, str]:
        """Auth and content headers for a single request"""
        pass

    def build_payload(self, messages: List[Message]) -> Dict[str, Any]:
        return {
            "model": self.config.model,
            "messages": messages,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
        }

    def build_request(self, messages: List[Message]) -> httpx.Request:
        return self._client.build_request(
            "POST",
            self.build_url(),
            headers=self.build_headers(),
            json=self.build_payload(messages),
        )

    @staticmethod
    def extract_text(data: Any) -> str:
        """Unwrap choices[0].message.content, or Anthropic's content[0].text"""
        if isinstance(data, dict):
            choices = data.get("choices")
            if isinstance(choices, list) and choices:
                message = choices[0].get("message") if isinstance(choices[0], dict) else None
                if isinstance(message, dict) and isinstance(message.get("content"), str):
                    return message["content"]
            content = data.get("content")
            if isinstance(content, list) and content and isinstance(content[0], dict):
                if isinstance(content[0].get("text"), str):
                    return content[0]["text"]
        raise LLMResponseError("Response envelope carries no message content")

    async def _wait(self, state: RetryState, reason: str) -> None:
        logger.warning(
            f"{self.name}: {reason}; retrying in {state.wait_seconds:.1f}s "
            f"(attempt {state.attempt_number}/{self.retry_config.max_retries})"
        )
        await self._sleep(state.wait_seconds)
        state.advance()

    async def complete(self, messages: List[Message]) -> str:
        """
        Send a chat completion and return the response text

        Raises:
            RetryExhaustedError: 429 / transient failures outlasted the retry budget
            LLMResponseError: Non-retryable status or malformed envelope
        """
        template = self.build_request(messages)
        state = RetryState(self.retry_config)
        last_body = ""

        while True:
            request = clone_request(template)
            try:
                response = await self._client.send(request)
            except httpx.TransportError as e:
                error = LLMConnectionError(f"{self.name} request failed: {e}")
                if state.exhausted:
                    raise RetryExhaustedError(
                        f"{self.name}: retry budget exhausted",
                        attempts=state.attempt_number,
                        last_exception=error,
                        last_response_body=last_body,
                    ) from e
                state.schedule_backoff()
                await self._wait(state, f"transport error ({type(e).__name__})")
                continue

            last_body = response.text

            if response.is_success:
                try:
                    data = response.json()
                except ValueError as e:
                    raise LLMResponseError(
                        "Response body is not valid JSON",
                        status_code=response.status_code,
                        response_body=last_body,
                    ) from e
                return self.extract_text(data)

            if response.status_code == 429:
                if state.exhausted:
                    raise RetryExhaustedError(
                        f"{self.name}: rate limited, retry budget exhausted",
                        attempts=state.attempt_number,
                        last_response_body=last_body,
                    )
                state.schedule_rate_limit(parse_retry_after(last_body))
                await self._wait(state, "rate limited (429)")
                continue

            if response.status_code >= 500:
                if state.exhausted:
                    raise RetryExhaustedError(
                        f"{self.name}: server error {response.status_code}, retry budget exhausted",
                        attempts=state.attempt_number,
                        last_response_body=last_body,
                    )
                state.schedule_backoff()
                await self._wait(state, f"server error {response.status_code}")
                continue

            raise LLMResponseError(
                f"{self.name} rejected the request with status {response.status_code}",
                status_code=response.status_code,
                response_body=last_body,
            )

    async def check_connection(self) -> bool:
        """Send a minimal completion to verify endpoint and credentials"""
        if not self.config.api_key:
            return False
        try:
            await self.complete([{"role": "user", "content": "Hello"}])
        except SQLMonitorError as e:
            logger.error(f"{self.name} connection check failed: {e}")
            return False
        return True

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class AzureOpenAIProvider(BaseLLMProvider):
    """Azure OpenAI API provider"""

    def build_url(self) -> str:
        if not self.config.endpoint:
            raise ConfigurationError("Azure OpenAI endpoint is not configured")
        deployment = self.config.deployment or self.config.model
        return (
            f"{self.config.endpoint}/openai/deployments/{deployment}"
            f"/chat/completions?api-version={self.config.api_version}"
        )

    def build_headers(self) -> Dict[str, str]:
        return {
            "api-key": self.config.api_key,
            "Content-Type": "application/json",
        }


class OpenAIProvider(BaseLLMProvider):
    """OpenAI API provider"""

    BASE_URL = "https://api.openai.com/v1"

    def build_url(self) -> str:
        base = self.config.endpoint or self.BASE_URL
        return f"{base}/chat/completions"

    def build_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }


class AnthropicProvider(BaseLLMProvider):
    """Anthropic Claude API provider"""

    BASE_URL = "https://api.anthropic.com/v1"

    def build_url(self) -> str:
        base = self.config.endpoint or self.BASE_URL
        return f"{base}/messages"

    def build_headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.config.api_key,
            "anthropic-version": ANTHROPIC_API_VERSION,
            "Content-Type": "application/json",
        }

    def build_payload(self, messages: List[Message]) -> Dict[str, Any]:
        # System prompt is a top-level field in the Messages API
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        payload = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": [m for m in messages if m["role"] != "system"],
        }
        if system:
            payload["system"] = system
        return payload


PROVIDER_MAP = {
    LLMProviderType.AZURE_OPENAI: AzureOpenAIProvider,
    LLMProviderType.OPENAI: OpenAIProvider,
    LLMProviderType.ANTHROPIC: AnthropicProvider,
}


def create_llm_provider(
    settings: AISettings,
    http_client: Optional[httpx.AsyncClient] = None,
    sleep: Optional[Sleeper] = None,
) -> BaseLLMProvider:
    """Build the configured provider"""
    config = LLMConfig.from_settings(settings)
    retry_config = RetryConfig(
        max_retries=settings.max_retries,
        initial_delay=settings.initial_retry_delay,
        rate_limit_default_wait=settings.rate_limit_default_wait,
    )
    provider_class = PROVIDER_MAP[config.provider_type]
    logger.info(f"Using LLM provider: {config.provider_type.value} (model: {config.model})")
    return provider_class(config, http_client=http_client, retry_config=retry_config, sleep=sleep)
