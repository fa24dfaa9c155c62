"""
SQL Monitor AI - slow query and index fragmentation monitoring for SQL Server
"""

from sqlmonitor.core.constants import APP_NAME, APP_VERSION

__app_name__ = APP_NAME
__version__ = APP_VERSION
