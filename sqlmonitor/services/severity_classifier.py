"""
Slow query severity classification
"""

from dataclasses import dataclass

from sqlmonitor.core.config import MonitoringSettings
from sqlmonitor.core.constants import (
    Severity,
    DEFAULT_WARNING_THRESHOLD_MS,
    DEFAULT_CRITICAL_THRESHOLD_MS,
)


@dataclass(frozen=True)
class SeverityThresholds:
    """Duration thresholds in milliseconds; warning_ms <= critical_ms"""
    warning_ms: float = DEFAULT_WARNING_THRESHOLD_MS
    critical_ms: float = DEFAULT_CRITICAL_THRESHOLD_MS

    def __post_init__(self) -> None:
        if self.warning_ms > self.critical_ms:
            raise ValueError(
                f"warning threshold ({self.warning_ms}) exceeds critical threshold ({self.critical_ms})"
            )

    @classmethod
    def from_settings(cls, settings: MonitoringSettings) -> 'SeverityThresholds':
        return cls(
            warning_ms=settings.warning_threshold_ms,
            critical_ms=settings.critical_threshold_ms,
        )


def classify(duration_ms: float, thresholds: SeverityThresholds) -> Severity:
    """
    Map an average duration to a severity tier

    CRITICAL when duration >= critical, WARNING when duration >= warning,
    NORMAL otherwise. Monotonic in duration.
    """
    if duration_ms >= thresholds.critical_ms:
        return Severity.CRITICAL
    if duration_ms >= thresholds.warning_ms:
        return Severity.WARNING
    return Severity.NORMAL
