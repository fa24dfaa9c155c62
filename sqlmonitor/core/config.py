"""
Application configuration management using Pydantic Settings
"""

import json
import os
import sys
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sqlmonitor.core.constants import (
    APP_NAME,
    CONFIG_FILE,
    HISTORY_DB_FILE,
    Severity,
    DEFAULT_QUERY_TIMEOUT,
    DEFAULT_CONNECTION_TIMEOUT,
    DEFAULT_SQL_PORT,
    DEFAULT_MONITORING_INTERVAL_MINUTES,
    DEFAULT_SLOW_QUERY_THRESHOLD_MS,
    DEFAULT_WARNING_THRESHOLD_MS,
    DEFAULT_CRITICAL_THRESHOLD_MS,
    DEFAULT_REORGANIZE_THRESHOLD,
    DEFAULT_REBUILD_THRESHOLD,
    DEFAULT_MIN_PAGE_COUNT,
    DEFAULT_MISSING_INDEX_MIN_IMPROVEMENT,
    DEFAULT_MAX_PARALLEL_DATABASES,
    DEFAULT_API_VERSION,
    DEFAULT_MODEL,
    DEFAULT_TEMPERATURE,
    DEFAULT_MAX_TOKENS,
    AI_RESPONSE_TIMEOUT,
    MAX_RETRY_ATTEMPTS,
    INITIAL_RETRY_DELAY,
    RATE_LIMIT_DEFAULT_WAIT,
    MAX_PLAN_CHARS,
)


def get_app_dir() -> Path:
    """
    Get application data directory.
    SQLMONITOR_HOME overrides the OS-specific user data folder.
    """
    override = os.environ.get('SQLMONITOR_HOME')
    if override:
        return Path(override)

    if sys.platform == 'win32':
        base = Path(os.environ.get('LOCALAPPDATA', Path.home() / 'AppData' / 'Local'))
    elif sys.platform == 'darwin':
        base = Path.home() / 'Library' / 'Application Support'
    else:
        base = Path.home() / '.config'

    return base / APP_NAME.replace(' ', '')


def ensure_app_dirs() -> Path:
    """Create necessary application directories"""
    app_dir = get_app_dir()

    (app_dir / 'config').mkdir(parents=True, exist_ok=True)
    (app_dir / 'data').mkdir(parents=True, exist_ok=True)
    (app_dir / 'logs').mkdir(parents=True, exist_ok=True)

    return app_dir


class DatabaseSettings(BaseModel):
    """Monitored SQL Server connection settings"""

    server: str = Field(default="localhost")
    port: int = Field(default=DEFAULT_SQL_PORT, ge=1, le=65535)
    username: str = Field(default="")
    password: str = Field(default="")
    driver: Optional[str] = Field(default=None)
    trusted_connection: bool = Field(default=False)
    encrypt: bool = Field(default=True)
    trust_server_certificate: bool = Field(default=True)
    application_name: str = Field(default=APP_NAME)
    query_timeout: int = Field(default=DEFAULT_QUERY_TIMEOUT, ge=1, le=600)
    connection_timeout: int = Field(default=DEFAULT_CONNECTION_TIMEOUT, ge=1, le=120)
    echo_sql: bool = Field(default=False)


class MonitoringSettings(BaseModel):
    """Detection cycle, classification and remediation settings"""

    interval_minutes: float = Field(default=DEFAULT_MONITORING_INTERVAL_MINUTES, gt=0)
    slow_query_threshold_ms: float = Field(default=DEFAULT_SLOW_QUERY_THRESHOLD_MS, ge=0)
    warning_threshold_ms: float = Field(default=DEFAULT_WARNING_THRESHOLD_MS, ge=0)
    critical_threshold_ms: float = Field(default=DEFAULT_CRITICAL_THRESHOLD_MS, ge=0)

    reorganize_threshold: float = Field(default=DEFAULT_REORGANIZE_THRESHOLD, ge=0, le=100)
    rebuild_threshold: float = Field(default=DEFAULT_REBUILD_THRESHOLD, ge=0, le=100)
    fragmentation_threshold: float = Field(default=DEFAULT_REORGANIZE_THRESHOLD, ge=0, le=100)
    min_page_count: int = Field(default=DEFAULT_MIN_PAGE_COUNT, ge=0)
    auto_reindex: bool = Field(default=True)
    online_rebuild: bool = Field(default=True)

    ai_analysis_enabled: bool = Field(default=False)
    ai_analysis_min_severity: Severity = Field(default=Severity.CRITICAL)

    missing_index_enabled: bool = Field(default=True)
    missing_index_min_improvement: int = Field(
        default=DEFAULT_MISSING_INDEX_MIN_IMPROVEMENT, ge=0, le=100
    )

    max_parallel_databases: int = Field(default=DEFAULT_MAX_PARALLEL_DATABASES, ge=1, le=32)
    # Empty list means "discover all online user databases"
    monitored_databases: list[str] = Field(default_factory=list)

    @model_validator(mode='after')
    def validate_thresholds(self) -> 'MonitoringSettings':
        if self.warning_threshold_ms > self.critical_threshold_ms:
            raise ValueError("warning_threshold_ms must not exceed critical_threshold_ms")
        if self.reorganize_threshold >= self.rebuild_threshold:
            raise ValueError("reorganize_threshold must be lower than rebuild_threshold")
        return self


class AISettings(BaseModel):
    """AI/LLM provider settings"""

    provider: str = Field(default="azure_openai")
    api_key: str = Field(default="")
    endpoint: str = Field(default="")
    deployment: str = Field(default="")
    model: str = Field(default=DEFAULT_MODEL)
    api_version: str = Field(default=DEFAULT_API_VERSION)
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, ge=1, le=128000)
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0, le=2.0)
    timeout: int = Field(default=AI_RESPONSE_TIMEOUT, ge=1, le=600)

    max_retries: int = Field(default=MAX_RETRY_ATTEMPTS, ge=0, le=10)
    initial_retry_delay: float = Field(default=INITIAL_RETRY_DELAY, ge=0)
    rate_limit_default_wait: float = Field(default=RATE_LIMIT_DEFAULT_WAIT, ge=0)
    max_plan_chars: int = Field(default=MAX_PLAN_CHARS, ge=0)

    @field_validator('provider')
    @classmethod
    def validate_provider(cls, v: str) -> str:
        aliases = {
            'azureopenai': 'azure_openai',
            'azure': 'azure_openai',
            'claude': 'anthropic',
        }
        key = v.strip().lower().replace('-', '_')
        return aliases.get(key.replace('_', ''), key)

    @field_validator('endpoint')
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        v = v.strip()
        if v and not v.startswith(('http://', 'https://')):
            v = f"https://{v}"
        return v.rstrip('/')

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)


class HistorySettings(BaseModel):
    """History store settings"""

    # SQLAlchemy URL; "memory://" keeps history in process memory only.
    # Empty means a SQLite file under the app data directory.
    url: str = Field(default="")
    echo_sql: bool = Field(default=False)


class LoggingSettings(BaseModel):
    """Logging settings"""

    level: str = Field(default="INFO")
    file_enabled: bool = Field(default=True)
    retention_days: int = Field(default=7, ge=1, le=30)

    @field_validator('level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v = v.upper()
        if v not in valid_levels:
            v = 'INFO'
        return v


class Settings(BaseSettings):
    """Main application settings"""

    model_config = SettingsConfigDict(
        env_prefix='SQLMONITOR_',
        env_nested_delimiter='__',
        extra='ignore',
    )

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    ai: AISettings = Field(default_factory=AISettings)
    history: HistorySettings = Field(default_factory=HistorySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    app_dir: Path = Field(default_factory=get_app_dir)

    @property
    def config_dir(self) -> Path:
        return self.app_dir / 'config'

    @property
    def data_dir(self) -> Path:
        return self.app_dir / 'data'

    @property
    def logs_dir(self) -> Path:
        return self.app_dir / 'logs'

    @property
    def settings_file(self) -> Path:
        return self.config_dir / CONFIG_FILE

    @property
    def history_url(self) -> str:
        if self.history.url:
            return self.history.url
        return f"sqlite:///{self.data_dir / HISTORY_DB_FILE}"

    def save(self) -> None:
        """Save settings to JSON file"""
        self.config_dir.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude={'app_dir'}, mode='json')
        with open(self.settings_file, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, default=str)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> 'Settings':
        """
        Load settings from a JSON file.

        Environment variables (SQLMONITOR_*) still override file values for
        any field the file does not set.
        """
        if path is None:
            path = ensure_app_dirs() / 'config' / CONFIG_FILE

        if path.exists():
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            return cls(**data)

        return cls()

