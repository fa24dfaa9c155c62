"""
Services module - detection, classification, history and remediation
"""

from sqlmonitor.services.severity_classifier import SeverityThresholds, classify
from sqlmonitor.services.reindex_policy import (
    ReindexPolicy,
    DEFAULT_REINDEX_POLICY,
    build_reindex_command,
)
from sqlmonitor.services.history_store import (
    HistoryStore,
    InMemoryHistoryStore,
    SqlAlchemyHistoryStore,
    create_history_store,
)
from sqlmonitor.services.collectors import (
    SlowQueryCollector,
    IndexFragmentationCollector,
    MissingIndexCollector,
)
from sqlmonitor.services.scheduler import (
    Ticker,
    IntervalTicker,
    ManualTicker,
    MonitorScheduler,
)
from sqlmonitor.services.monitor_service import MonitorOrchestrator, compute_improvement

__all__ = [
    "SeverityThresholds",
    "classify",
    "ReindexPolicy",
    "DEFAULT_REINDEX_POLICY",
    "build_reindex_command",
    "HistoryStore",
    "InMemoryHistoryStore",
    "SqlAlchemyHistoryStore",
    "create_history_store",
    "SlowQueryCollector",
    "IndexFragmentationCollector",
    "MissingIndexCollector",
    "Ticker",
    "IntervalTicker",
    "ManualTicker",
    "MonitorScheduler",
    "MonitorOrchestrator",
    "compute_improvement",
]
