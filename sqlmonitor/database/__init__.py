"""
Database module - data source abstraction and SQL templates

The pyodbc-backed executor lives in sqlmonitor.database.connection and is
imported explicitly by the entry point.
"""

from sqlmonitor.database.base import QueryExecutor
from sqlmonitor.database.queries import MonitorQueries

__all__ = [
    "QueryExecutor",
    "MonitorQueries",
]
