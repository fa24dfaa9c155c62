"""
Logging for SQL Monitor AI

All module loggers are children of the APP_NAME logger. setup_logging()
attaches a console handler and, when a log directory is given, a daily
rotated file that keeps `retention_days` files.
"""

import sys
import time
import logging
from pathlib import Path
from typing import Optional, TextIO
from logging.handlers import TimedRotatingFileHandler

from sqlmonitor.core.constants import APP_NAME, LOG_FILE

CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(filename)s:%(lineno)d | %(message)s"


class ColoredFormatter(logging.Formatter):
    """Console formatter that colours the level name on interactive terminals"""

    LEVEL_COLORS = {
        logging.DEBUG: '\033[36m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, stream: TextIO, fmt: str = CONSOLE_FORMAT, datefmt: str = "%H:%M:%S"):
        super().__init__(fmt, datefmt)
        # Service managers and log shippers capture stdout; no escape codes there
        self.use_colors = hasattr(stream, 'isatty') and stream.isatty()

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        color = self.LEVEL_COLORS.get(record.levelno)
        if not self.use_colors or color is None:
            return text
        return text.replace(record.levelname, f"{color}{record.levelname}{self.RESET}", 1)


def _console_handler(level: int, stream: TextIO) -> logging.Handler:
    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.setFormatter(ColoredFormatter(stream))
    return handler


def _file_handler(log_dir: Path, retention_days: int) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        log_dir / LOG_FILE,
        when='midnight',
        backupCount=max(1, retention_days),
        encoding='utf-8',
    )
    handler.suffix = "%Y-%m-%d"
    # The file keeps DEBUG detail regardless of the console level
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, "%Y-%m-%d %H:%M:%S"))
    return handler


class SQLMonitorLogger:
    """Owns the handlers attached to the application logger"""

    _instance: Optional['SQLMonitorLogger'] = None

    def __new__(cls):
        if cls._instance is None:
            instance = super().__new__(cls)
            instance.logger = logging.getLogger(APP_NAME)
            instance._handlers = []
            cls._instance = instance
        return cls._instance

    def setup(
        self,
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        file_enabled: bool = True,
        retention_days: int = 7,
        stream: Optional[TextIO] = None,
    ) -> logging.Logger:
        """
        (Re)configure handlers; safe to call more than once

        Args:
            level: Console level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for the rotated log file; None disables it
            file_enabled: Attach the file handler when log_dir is set
            retention_days: Rotated files to keep
            stream: Console stream, stdout by default
        """
        for handler in self._handlers:
            self.logger.removeHandler(handler)
            handler.close()

        console_level = getattr(logging, level.upper(), logging.INFO)
        self._handlers = [_console_handler(console_level, stream or sys.stdout)]
        if file_enabled and log_dir:
            self._handlers.append(_file_handler(Path(log_dir), int(retention_days)))

        # Logger passes everything; handlers filter
        self.logger.setLevel(logging.DEBUG if len(self._handlers) > 1 else console_level)
        for handler in self._handlers:
            self.logger.addHandler(handler)
        return self.logger


def setup_logging(
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    file_enabled: bool = True,
    retention_days: int = 7,
) -> logging.Logger:
    """Configure application logging once at startup"""
    return SQLMonitorLogger().setup(
        level=level,
        log_dir=log_dir,
        file_enabled=file_enabled,
        retention_days=retention_days,
    )


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Child logger of the application logger

    Usable before setup_logging(); records then propagate to the root logger.

    Example:
        >>> logger = get_logger('services.collectors')
        >>> logger.info('Collected 3 slow queries')
    """
    root = logging.getLogger(APP_NAME)
    return root.getChild(name) if name else root


def log_exception(logger: logging.Logger, exc: BaseException, message: str = "") -> None:
    """Log an exception with its traceback"""
    logger.error(f"{message or 'Exception occurred'}: {exc}", exc_info=exc)


class LogContext:
    """
    Logs start and elapsed time of a block

    Example:
        >>> with LogContext(logger, "Detection cycle #3"):
        ...     await orchestrator.run_cycle()
    """

    def __init__(self, logger: logging.Logger, operation: str, level: int = logging.INFO):
        self.logger = logger
        self.operation = operation
        self.level = level
        self._started: Optional[float] = None

    @property
    def elapsed_seconds(self) -> float:
        if self._started is None:
            return 0.0
        return time.monotonic() - self._started

    def __enter__(self):
        self._started = time.monotonic()
        self.logger.log(self.level, f"{self.operation}... started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        elapsed = self.elapsed_seconds
        if exc_type is None:
            self.logger.log(self.level, f"{self.operation}... completed in {elapsed:.2f}s")
        else:
            self.logger.error(f"{self.operation}... failed after {elapsed:.2f}s: {exc_val!r}")
        return False
