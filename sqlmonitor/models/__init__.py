"""
Data models module
"""

from sqlmonitor.models.monitor_models import (
    SlowQueryObservation,
    SlowQueryHistoryRecord,
    IndexFragmentationObservation,
    IndexOperationRecord,
    MissingIndexObservation,
    AIOptimizationResult,
    PerformanceSnapshot,
    QueryFixResult,
    DatabaseCycleResult,
    CycleReport,
)

__all__ = [
    "SlowQueryObservation",
    "SlowQueryHistoryRecord",
    "IndexFragmentationObservation",
    "IndexOperationRecord",
    "MissingIndexObservation",
    "AIOptimizationResult",
    "PerformanceSnapshot",
    "QueryFixResult",
    "DatabaseCycleResult",
    "CycleReport",
]
