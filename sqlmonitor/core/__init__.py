"""
Core module - Configuration, constants, exceptions, and utilities

Provides:
- Settings/Config management
- Custom exceptions
- Retry policy primitives
- Logging
"""

from sqlmonitor.core.config import Settings
from sqlmonitor.core.constants import *
from sqlmonitor.core.exceptions import *
from sqlmonitor.core.retry import (
    RetryConfig,
    RetryState,
    parse_retry_after,
)
from sqlmonitor.core.logger import (
    setup_logging,
    get_logger,
    log_exception,
    LogContext,
)
