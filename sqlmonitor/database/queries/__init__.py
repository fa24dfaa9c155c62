"""
SQL query templates
"""

from sqlmonitor.database.queries.monitor_queries import MonitorQueries

__all__ = ["MonitorQueries"]
