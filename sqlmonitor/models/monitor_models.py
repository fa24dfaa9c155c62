"""
Monitoring Data Models

Observations are produced fresh by the collectors every cycle; history and
index operation records are what the history store keeps.
"""

from typing import Optional, List, Dict, Any
from dataclasses import dataclass, field
from datetime import datetime

from sqlmonitor.core.constants import (
    Severity,
    ReindexType,
    ObservationSource,
)


@dataclass
class SlowQueryObservation:
    """
    One slow query seen in a collection cycle (not persisted directly)
    """
    query_text: str
    database_name: str
    avg_duration_ms: float = 0.0
    execution_count: int = 0
    last_execution_time: Optional[datetime] = None
    query_plan: Optional[str] = None
    query_id: Optional[str] = None
    source: ObservationSource = ObservationSource.DMV

    @property
    def identity(self) -> tuple[str, str]:
        """Dedup key used by the history store"""
        return (self.query_text, self.database_name)

    @property
    def display_name(self) -> str:
        text = " ".join(self.query_text.split())[:60]
        return text + "..." if len(self.query_text) > 60 else text


@dataclass
class SlowQueryHistoryRecord:
    """
    Persistent slow query history row

    At most one unresolved record exists per (query_text, database_name).
    """
    query_text: str
    database_name: str
    avg_duration_ms: float
    execution_count: int
    first_seen: datetime
    last_seen: datetime
    severity: Severity
    query_plan: Optional[str] = None
    optimization_suggestion: Optional[str] = None
    is_resolved: bool = False
    resolution: Optional[str] = None
    resolved_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def identity(self) -> tuple[str, str]:
        return (self.query_text, self.database_name)


@dataclass
class IndexFragmentationObservation:
    """
    Fragmented index seen in a collection cycle

    reindex_type is derived by the reindex policy; when not supplied the
    default 10% / 30% thresholds apply.
    """
    database_name: str
    schema_name: str
    table_name: str
    index_name: str
    fragmentation_percent: float
    page_count: int = 0
    last_reindexed: Optional[datetime] = None
    reindex_type: Optional[ReindexType] = None

    def __post_init__(self) -> None:
        if self.reindex_type is None:
            from sqlmonitor.services.reindex_policy import DEFAULT_REINDEX_POLICY
            self.reindex_type = DEFAULT_REINDEX_POLICY.decide(self.fragmentation_percent)

    @property
    def needs_reindexing(self) -> bool:
        return self.reindex_type != ReindexType.NONE

    @property
    def qualified_name(self) -> str:
        return f"{self.database_name}.{self.schema_name}.{self.table_name}.{self.index_name}"


@dataclass
class IndexOperationRecord:
    """
    Append-only log entry for one remediation attempt
    """
    database_name: str
    schema_name: str
    table_name: str
    index_name: str
    fragmentation_percent: float
    page_count: int
    operation_type: ReindexType
    operation_date: datetime
    duration_ms: Optional[int] = None
    success: bool = False
    error_message: str = ""
    id: Optional[int] = None


@dataclass
class MissingIndexObservation:
    """
    Missing index suggestion from the optimizer DMVs
    """
    database_name: str
    table_name: str
    equality_columns: Optional[str] = None
    inequality_columns: Optional[str] = None
    included_columns: Optional[str] = None
    improvement_percent: int = 0
    create_statement: str = ""


@dataclass
class AIOptimizationResult:
    """
    Structured view of a free-text optimization answer

    is_simulated is True when no real provider call succeeded; the
    optimized query then equals the original one.
    """
    optimized_query: str
    explanation: str = ""
    index_recommendations: List[str] = field(default_factory=list)
    is_simulated: bool = False

    @classmethod
    def simulated(cls, original_query: str, explanation: str) -> 'AIOptimizationResult':
        return cls(
            optimized_query=original_query,
            explanation=explanation,
            index_recommendations=[],
            is_simulated=True,
        )


@dataclass
class PerformanceSnapshot:
    """Wall-clock measurement of one query execution"""
    execution_time_ms: float = 0.0
    succeeded: bool = False
    error: Optional[str] = None


@dataclass
class QueryFixResult:
    """
    Outcome of ApplyFix: optimized query plus before/after timings
    """
    message: str
    fix_type: str
    original_query: str
    optimized_query: str
    explanation: str = ""
    index_recommendations: List[str] = field(default_factory=list)
    performance_before: PerformanceSnapshot = field(default_factory=PerformanceSnapshot)
    performance_after: PerformanceSnapshot = field(default_factory=PerformanceSnapshot)
    improvement_percent: float = 0.0
    ai_powered: bool = False
    optimized_query_works: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "fixType": self.fix_type,
            "originalQuery": self.original_query,
            "optimizedQuery": self.optimized_query,
            "explanation": self.explanation,
            "indexRecommendations": list(self.index_recommendations),
            "performanceBefore": {"executionTime": round(self.performance_before.execution_time_ms, 2)},
            "performanceAfter": {"executionTime": round(self.performance_after.execution_time_ms, 2)},
            "improvementPercent": self.improvement_percent,
            "aiPowered": self.ai_powered,
            "optimizedQueryWorks": self.optimized_query_works,
        }


@dataclass
class DatabaseCycleResult:
    """What one database contributed to a detection cycle"""
    database_name: str
    slow_queries: List[SlowQueryHistoryRecord] = field(default_factory=list)
    fragmented_indexes: List[IndexFragmentationObservation] = field(default_factory=list)
    index_operations: List[IndexOperationRecord] = field(default_factory=list)
    missing_indexes: List[MissingIndexObservation] = field(default_factory=list)
    analyzed_count: int = 0
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class CycleReport:
    """
    Summary of one detection cycle
    """
    cycle_number: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    databases: List[DatabaseCycleResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed_databases(self) -> List[str]:
        return [d.database_name for d in self.databases if d.error]

    @property
    def slow_query_count(self) -> int:
        return sum(len(d.slow_queries) for d in self.databases)

    @property
    def index_operation_count(self) -> int:
        return sum(len(d.index_operations) for d in self.databases)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def summary(self) -> str:
        return (
            f"cycle={self.cycle_number} databases={len(self.databases)} "
            f"failed={len(self.failed_databases)} slow_queries={self.slow_query_count} "
            f"reindexed={self.index_operation_count} cancelled={self.cancelled}"
        )
