"""
Settings for the workflow automation engine.

Every field of ``AppConfig`` can be set through an environment variable named
after it, e.g. ``WORKFLOW_AUTOMATION_MAX_CONCURRENT_EXECUTIONS=4``. A ``.env``
file is read first when present.
"""

import os
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "WORKFLOW_AUTOMATION_"
SUPPORTED_DATABASES = ("sqlite", "postgresql", "mysql")
MAX_WORKERS_LIMIT = 100
_TRUTHY = {"true", "1", "yes", "on"}


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AdmissionPolicy(str, Enum):
    """What to do with a new execution when the pool and its queue are full."""
    REJECT = "reject"
    WAIT = "wait"


class AppConfig(BaseModel):
    """Engine settings. The defaults suit a single-process SQLite deployment."""

    app_name: str = "Workflow Automation"
    app_version: str = "1.0.0"
    debug: bool = False

    # HTTP server
    host: str = "0.0.0.0"
    port: int = Field(8000, ge=1, le=65535)
    reload: bool = False

    # Engine storage
    database_url: str = Field("sqlite:///./workflow_automation.db", description="SQLAlchemy URL of the engine's store")
    database_echo: bool = Field(False, description="Echo SQL statements")

    # Execution pool
    max_concurrent_executions: int = Field(10, ge=1, description="Worker threads running traversals")
    execution_queue_size: int = Field(100, ge=0, description="Admitted executions waiting for a worker")
    admission_policy: AdmissionPolicy = AdmissionPolicy.REJECT
    admission_timeout: float = Field(5.0, gt=0, description="Seconds to wait for a slot under the wait policy")
    validate_on_start: bool = Field(True, description="Check workflow structure before the first node runs")

    # Node executors
    http_timeout: float = Field(30.0, gt=0, description="Default HttpRequest timeout in seconds")
    script_timeout: float = Field(30.0, gt=0, description="Default Script timeout in seconds")
    smtp_timeout: float = Field(30.0, gt=0, description="Email send timeout in seconds")

    # Cron scheduler
    scheduler_enabled: bool = True
    scheduler_timezone: str = Field("UTC", description="Timezone cron expressions are evaluated in")
    scheduler_misfire_grace_time: int = Field(60, ge=1, description="Seconds a late trigger may still fire")

    # Logging
    log_level: LogLevel = LogLevel.INFO
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_file: Optional[str] = None
    log_max_size: int = Field(10 * 1024 * 1024, description="Bytes before the log file rotates")
    log_backup_count: int = 5
    structured_logging: bool = Field(False, description="Emit one JSON object per log line")

    # Request handling
    slow_request_threshold: float = Field(5.0, gt=0, description="Seconds after which a request is logged as slow")
    enable_request_logging: bool = Field(True, description="Install the request ID and timing middleware")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    cors_methods: List[str] = Field(default_factory=lambda: ["GET", "POST", "PUT", "DELETE"])

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, url):
        if not url:
            raise ValueError("Database URL cannot be empty")
        backend = url.split('://')[0].lower().split('+')[0]
        if backend not in SUPPORTED_DATABASES:
            raise ValueError(f"Unsupported database scheme: {backend}. Supported: {', '.join(SUPPORTED_DATABASES)}")
        return url

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, level):
        return level.strip().upper() if isinstance(level, str) else level

    @field_validator('admission_policy', mode='before')
    @classmethod
    def normalize_admission_policy(cls, policy):
        return policy.strip().lower() if isinstance(policy, str) else policy

    @field_validator('cors_origins', 'cors_methods', mode='before')
    @classmethod
    def split_comma_separated(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(',') if item.strip()]
        return value

    @property
    def database_backend(self) -> str:
        """Dialect name of the engine's store, without any driver suffix."""
        return self.database_url.split('://')[0].lower().split('+')[0]

    @property
    def is_sqlite(self) -> bool:
        return self.database_backend == "sqlite"

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Keyword arguments for ``uvicorn.run``."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'AppConfig':
        """
        Build settings from ``WORKFLOW_AUTOMATION_<FIELD>`` variables.

        Unset variables leave the field at its default. Boolean fields accept
        true/1/yes/on; anything else reads as false.
        """
        environ = os.environ if environ is None else environ

        values: Dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            values[name] = raw.strip().lower() in _TRUTHY if field.annotation is bool else raw
        return cls(**values)


# Environment presets: field overrides applied on top of the defaults
PRESETS: Dict[str, Dict[str, Any]] = {
    "development": {
        "debug": True,
        "reload": True,
        "log_level": LogLevel.DEBUG,
        "database_echo": True,
    },
    "production": {
        "structured_logging": True,
        "cors_origins": [],
    },
    "testing": {
        "debug": True,
        "database_url": "sqlite:///:memory:",
        "log_level": LogLevel.WARNING,
        "max_concurrent_executions": 2,
        "execution_queue_size": 4,
        "scheduler_enabled": False,
        "http_timeout": 5.0,
    },
}


def get_preset_config(name: str) -> AppConfig:
    """
    Settings of a named environment preset. Environment variables are ignored.

    Raises:
        ValueError: If there is no such preset
    """
    if name not in PRESETS:
        raise ValueError(f"Unknown environment preset '{name}'. Available: {', '.join(PRESETS)}")
    return AppConfig(**PRESETS[name])


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Process-wide settings, read from the environment on first use."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Read a .env file (``config_file`` or ./.env) and rebuild the process-wide settings."""
    global _config

    env_file = config_file if config_file and os.path.exists(config_file) else '.env'
    if os.path.exists(env_file):
        load_dotenv(env_file)

    _config = AppConfig.from_env()
    return _config


def reset_config():
    """Forget the process-wide settings so the next ``get_config`` re-reads them."""
    global _config
    _config = None


def _ensure_directory(path: str, purpose: str, errors: List[str]) -> None:
    directory = os.path.dirname(path)
    if not directory or os.path.exists(directory):
        return
    try:
        os.makedirs(directory, exist_ok=True)
    except OSError as e:
        errors.append(f"Cannot create {purpose} directory {directory}: {e}")


def validate_config(config: AppConfig) -> None:
    """
    Check the settings that depend on the host rather than on their values.

    Missing directories for the SQLite file and the log file are created.

    Raises:
        ValueError: Listing every problem found
    """
    errors: List[str] = []

    if config.is_sqlite and ':///' in config.database_url:
        db_path = config.database_url.split(':///', 1)[1]
        if db_path and db_path != ":memory:":
            _ensure_directory(db_path, "database", errors)

    if config.log_file:
        _ensure_directory(config.log_file, "log", errors)

    if config.max_concurrent_executions > MAX_WORKERS_LIMIT:
        errors.append(f"Concurrent execution limit above {MAX_WORKERS_LIMIT} is not supported")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")
