"""
Application constants and enumerations
"""

from enum import Enum
from typing import Final

# =============================================================================
# Application Info
# =============================================================================

APP_NAME: Final[str] = "SQL Monitor AI"
APP_VERSION: Final[str] = "1.0.0"

# =============================================================================
# File Paths
# =============================================================================

CONFIG_FILE: Final[str] = "settings.json"
HISTORY_DB_FILE: Final[str] = "history.db"
LOG_FILE: Final[str] = "sqlmonitor.log"

# =============================================================================
# Database Constants
# =============================================================================

DEFAULT_QUERY_TIMEOUT: Final[int] = 30  # seconds
DEFAULT_CONNECTION_TIMEOUT: Final[int] = 15  # seconds
DEFAULT_SQL_PORT: Final[int] = 1433

# ODBC Driver preferences (newest to oldest)
ODBC_DRIVER_PREFERENCES: Final[list[str]] = [
    "ODBC Driver 18 for SQL Server",
    "ODBC Driver 17 for SQL Server",
    "ODBC Driver 13 for SQL Server",
    "SQL Server Native Client 11.0",
    "SQL Server",
]

# =============================================================================
# Monitoring Constants
# =============================================================================

DEFAULT_MONITORING_INTERVAL_MINUTES: Final[int] = 15
DEFAULT_SLOW_QUERY_THRESHOLD_MS: Final[int] = 1000
DEFAULT_WARNING_THRESHOLD_MS: Final[int] = 1000
DEFAULT_CRITICAL_THRESHOLD_MS: Final[int] = 5000

DEFAULT_REORGANIZE_THRESHOLD: Final[float] = 10.0  # percent
DEFAULT_REBUILD_THRESHOLD: Final[float] = 30.0  # percent
DEFAULT_MIN_PAGE_COUNT: Final[int] = 100
DEFAULT_MISSING_INDEX_MIN_IMPROVEMENT: Final[int] = 50  # percent

SLOW_QUERY_TOP_N: Final[int] = 20
DEFAULT_MAX_PARALLEL_DATABASES: Final[int] = 4

# =============================================================================
# AI/LLM Constants
# =============================================================================

DEFAULT_API_VERSION: Final[str] = "2023-05-15"
DEFAULT_MODEL: Final[str] = "gpt-4"
DEFAULT_TEMPERATURE: Final[float] = 0.0
DEFAULT_MAX_TOKENS: Final[int] = 8000
AI_RESPONSE_TIMEOUT: Final[int] = 60  # seconds
MAX_RETRY_ATTEMPTS: Final[int] = 3
INITIAL_RETRY_DELAY: Final[float] = 1.0  # seconds
RATE_LIMIT_DEFAULT_WAIT: Final[float] = 60.0  # seconds
MAX_PLAN_CHARS: Final[int] = 4000
ANTHROPIC_API_VERSION: Final[str] = "2023-06-01"

# =============================================================================
# Enumerations
# =============================================================================


class Severity(str, Enum):
    """Slow query severity tiers, ordered NORMAL < WARNING < CRITICAL"""
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: Final[dict[Severity, int]] = {
    Severity.NORMAL: 0,
    Severity.WARNING: 1,
    Severity.CRITICAL: 2,
}


class ReindexType(str, Enum):
    """Index remediation verbs"""
    NONE = "none"
    REORGANIZE = "reorganize"
    REBUILD = "rebuild"


class FixType(str, Enum):
    """Query fix modes"""
    AI = "ai"
    MANUAL = "manual"


class ObservationSource(str, Enum):
    """Where a slow query observation came from"""
    DMV = "dmv"
    QUERY_STORE = "query_store"


class CycleState(str, Enum):
    """Per-database detection cycle states"""
    IDLE = "idle"
    COLLECTING = "collecting"
    CLASSIFYING = "classifying"
    UPSERTING = "upserting"
    REMEDIATING = "remediating"
    ANALYZING = "analyzing"
