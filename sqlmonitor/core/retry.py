"""
Retry policy primitives for outbound calls

RetryConfig holds the limits, RetryState tracks one call sequence
(attempt counter + the wait computed for the next resend).
"""

import json
import re
from dataclasses import dataclass
from typing import Optional

from sqlmonitor.core.constants import (
    MAX_RETRY_ATTEMPTS,
    INITIAL_RETRY_DELAY,
    RATE_LIMIT_DEFAULT_WAIT,
)

RETRY_AFTER_PATTERN = re.compile(r"retry after (\d+) seconds?", re.IGNORECASE)


@dataclass(frozen=True)
class RetryConfig:
    """Retry limits shared by every call sequence of a client"""
    max_retries: int = MAX_RETRY_ATTEMPTS
    initial_delay: float = INITIAL_RETRY_DELAY
    rate_limit_default_wait: float = RATE_LIMIT_DEFAULT_WAIT

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff: initial_delay * 2^attempt"""
        return self.initial_delay * (2 ** attempt)


@dataclass
class RetryState:
    """Per-request retry bookkeeping; never shared between requests"""
    config: RetryConfig
    attempt: int = 0
    wait_seconds: float = 0.0

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.config.max_retries

    @property
    def attempt_number(self) -> int:
        """1-based attempt number for log messages"""
        return self.attempt + 1

    def schedule_backoff(self) -> float:
        """Compute the wait after a transient failure"""
        self.wait_seconds = self.config.backoff_delay(self.attempt)
        return self.wait_seconds

    def schedule_rate_limit(self, hinted_wait: Optional[float]) -> float:
        """Compute the wait after a 429, preferring the server's hint"""
        if hinted_wait is None:
            hinted_wait = self.config.rate_limit_default_wait
        self.wait_seconds = hinted_wait
        return self.wait_seconds

    def advance(self) -> None:
        self.attempt += 1


def _extract_error_message(body: str) -> str:
    """Pull error.message out of a JSON error envelope, else the raw body"""
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        return body or ""

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
        if isinstance(payload.get("message"), str):
            return payload["message"]
    return body


def parse_retry_after(body: str) -> Optional[float]:
    """
    Parse "retry after N seconds" out of a rate-limit response body

    Returns:
        Wait time in seconds, or None when the body carries no hint
    """
    message = _extract_error_message(body)
    match = RETRY_AFTER_PATTERN.search(message)
    if not match:
        return None
    return float(match.group(1))
