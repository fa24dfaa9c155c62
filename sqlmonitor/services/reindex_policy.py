"""
Index remediation decision rule and command builder
"""

from dataclasses import dataclass

from sqlmonitor.core.config import MonitoringSettings
from sqlmonitor.core.constants import (
    ReindexType,
    DEFAULT_REORGANIZE_THRESHOLD,
    DEFAULT_REBUILD_THRESHOLD,
)


def quote_identifier(name: str) -> str:
    """Bracket-quote a T-SQL identifier"""
    return "[" + name.replace("]", "]]") + "]"


@dataclass(frozen=True)
class ReindexPolicy:
    """
    Fragmentation thresholds in percent

    Boundary values resolve to the lower tier: exactly 10% is NONE and
    exactly 30% is REORGANIZE with the defaults.
    """
    reorganize_threshold: float = DEFAULT_REORGANIZE_THRESHOLD
    rebuild_threshold: float = DEFAULT_REBUILD_THRESHOLD

    def __post_init__(self) -> None:
        if self.reorganize_threshold >= self.rebuild_threshold:
            raise ValueError("reorganize_threshold must be lower than rebuild_threshold")

    @classmethod
    def from_settings(cls, settings: MonitoringSettings) -> 'ReindexPolicy':
        return cls(
            reorganize_threshold=settings.reorganize_threshold,
            rebuild_threshold=settings.rebuild_threshold,
        )

    def decide(self, fragmentation_percent: float) -> ReindexType:
        if fragmentation_percent > self.rebuild_threshold:
            return ReindexType.REBUILD
        if fragmentation_percent > self.reorganize_threshold:
            return ReindexType.REORGANIZE
        return ReindexType.NONE


def build_reindex_command(
    schema_name: str,
    table_name: str,
    index_name: str,
    reindex_type: ReindexType,
    online: bool = True,
) -> str:
    """
    Build the ALTER INDEX statement for a remediation

    Raises:
        ValueError: For ReindexType.NONE
    """
    target = (
        f"ALTER INDEX {quote_identifier(index_name)} "
        f"ON {quote_identifier(schema_name)}.{quote_identifier(table_name)}"
    )
    if reindex_type == ReindexType.REBUILD:
        if online:
            return f"{target} REBUILD WITH (ONLINE = ON)"
        return f"{target} REBUILD"
    if reindex_type == ReindexType.REORGANIZE:
        return f"{target} REORGANIZE"
    raise ValueError("No reindex command for ReindexType.NONE")


DEFAULT_REINDEX_POLICY = ReindexPolicy()
