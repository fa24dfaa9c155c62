"""
Data source abstraction used by collectors and the orchestrator
"""

from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any


class QueryExecutor(ABC):
    """
    Runs SQL against one database of the monitored server

    Every call opens its own connection and releases it before returning.
    Failures are raised as DatabaseError subclasses.
    """

    @abstractmethod
    async def fetch_all(
        self,
        database: str,
        query: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Run a query and return rows as dictionaries"""
        pass

    @abstractmethod
    async def execute(
        self,
        database: str,
        statement: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Run a statement and return the affected row count"""
        pass

