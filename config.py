#!/usr/bin/env python3
"""
Configuration management for the feed sync engine.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    environ["PYTHONUNBUFFERED"] = "1"

    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"

    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True  # Force reconfiguration if already configured
    )

    # pytest and some process managers replace stdout with objects lacking reconfigure()
    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if callable(reconfigure):
            reconfigure(line_buffering=True)

    # Reduce Azure SDK verbosity unless explicitly overridden
    azure_level_str = environ.get("AZURE_LOG_LEVEL", "WARNING").upper()
    environ["AZURE_LOG_LEVEL"] = azure_level_str
    azure_level = level_map.get(azure_level_str, WARNING)
    for name in (
        "azure",
        "azure.core",
        "azure.monitor",
        "azure.monitor.opentelemetry.exporter",
    ):
        getLogger(name).setLevel(azure_level)

    return getLogger("FeedSync")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Loggers are named "FeedSync.{name}" and inherit the global configuration
    set by _setup_global_logger().

    Example:
        logger = get_logger("ingest")
        logger.info("This will appear as 'FeedSync.ingest - INFO - ...'")
    """
    return getLogger(f"FeedSync.{name}")

# Create single global logger instance
logger = _setup_global_logger()

class Config:
    """Configuration manager for the feed sync engine.

    Values are loaded from, in increasing order of precedence:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    An optional sync.yaml then overrides schedule and threshold defaults.

    Example sync.yaml:
    ```yaml
    schedule:
      orchestrator: "* * * * *"
      auto_archive: "0 0 * * *"
      timezone: "Europe/Lisbon"
    thresholds:
      outdated_minutes: 10
      batch_limit: 50
      broken_threshold: 3
      auto_archive_days: 30
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_sync_overrides()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Basic configuration
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedSync/1.0)")

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Scheduling and health thresholds
        self.OUTDATED_MINUTES = self._validate_positive_int("OUTDATED_MINUTES", 10, 1)
        self.SYNC_BATCH_LIMIT = self._validate_positive_int("SYNC_BATCH_LIMIT", 50, 1)
        self.BROKEN_THRESHOLD = self._validate_positive_int("BROKEN_THRESHOLD", 3, 1)
        self.SYNC_ERROR_MAX_LENGTH = self._validate_positive_int("SYNC_ERROR_MAX_LENGTH", 1000, 50)
        self.DEFAULT_AUTO_ARCHIVE_DAYS = self._validate_positive_int("DEFAULT_AUTO_ARCHIVE_DAYS", 30, 1)
        self.SYNC_LOG_RETENTION_DAYS = self._validate_positive_int("SYNC_LOG_RETENTION_DAYS", 30, 1)

        # Worker pool and job queue
        self.WORKER_CONCURRENCY = self._validate_positive_int("WORKER_CONCURRENCY", 5, 1)
        self.WORKER_POLL_INTERVAL = self._validate_positive_float("WORKER_POLL_INTERVAL", 1.0, 0.01)
        self.JOB_MAX_ATTEMPTS = self._validate_positive_int("JOB_MAX_ATTEMPTS", 3, 1)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 30.0, 0.0)
        self.RETRY_DELAY_MAX = self._validate_positive_float("RETRY_DELAY_MAX", 900.0, 1.0)
        self.JOB_LOCK_TIMEOUT = self._validate_positive_int("JOB_LOCK_TIMEOUT", 300, 10)
        self.JOB_KEEP_COMPLETED = self._validate_positive_int("JOB_KEEP_COMPLETED", 100, 0)
        self.JOB_KEEP_FAILED = self._validate_positive_int("JOB_KEEP_FAILED", 500, 0)

        # Scheduler configuration
        self.ORCHESTRATOR_CRON = environ.get("ORCHESTRATOR_CRON", "* * * * *")
        self.AUTO_ARCHIVE_CRON = environ.get("AUTO_ARCHIVE_CRON", "0 0 * * *")
        self.SCHEDULER_TIMEZONE = environ.get("SCHEDULER_TIMEZONE", "UTC")
        self.SCHEDULER_RUN_IMMEDIATELY = environ.get("SCHEDULER_RUN_IMMEDIATELY", "false").lower() == "true"

        # Items without a feed-provided guid get a derived dedup key when enabled
        self.SYNTHESIZE_GUIDS = environ.get("SYNTHESIZE_GUIDS", "false").lower() == "true"

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SYNC_CONFIG_PATH = environ.get("SYNC_CONFIG_PATH", path.join(base_dir, "sync.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Both a top-level mapping and a mapping nested under `environment`
        are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return
        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
        else:
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

        logger.info(f"Successfully loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Optional[Any]:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'sync')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.debug(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _load_sync_overrides(self) -> None:
        """Apply schedule and threshold overrides from sync.yaml, if present.

        Any invalid value is logged and the current default is kept.
        """
        data = self._safe_read_yaml(self.SYNC_CONFIG_PATH, 1024 * 1024, 'sync')
        if not isinstance(data, dict):
            return

        schedule = data.get('schedule') or {}
        if isinstance(schedule, dict):
            for key, attr in (('orchestrator', 'ORCHESTRATOR_CRON'),
                              ('auto_archive', 'AUTO_ARCHIVE_CRON'),
                              ('timezone', 'SCHEDULER_TIMEZONE')):
                value = schedule.get(key)
                if isinstance(value, str) and value.strip():
                    setattr(self, attr, value.strip())
        else:
            logger.warning(f"schedule section in {self.SYNC_CONFIG_PATH} must be a mapping; ignoring")

        thresholds = data.get('thresholds') or {}
        if not isinstance(thresholds, dict):
            logger.warning(f"thresholds section in {self.SYNC_CONFIG_PATH} must be a mapping; ignoring")
            return
        for key, attr in (('outdated_minutes', 'OUTDATED_MINUTES'),
                          ('batch_limit', 'SYNC_BATCH_LIMIT'),
                          ('broken_threshold', 'BROKEN_THRESHOLD'),
                          ('auto_archive_days', 'DEFAULT_AUTO_ARCHIVE_DAYS')):
            raw = thresholds.get(key)
            if raw is None:
                continue
            try:
                value = int(str(raw).strip())
            except ValueError:
                logger.warning(f"Invalid {key} value '{raw}' in sync.yaml; keeping {getattr(self, attr)}")
                continue
            if value < 1:
                logger.warning(f"{key} must be >=1; keeping {getattr(self, attr)} (got {raw})")
                continue
            setattr(self, attr, value)

        logger.info(
            "Loaded sync overrides: OUTDATED_MINUTES=%s SYNC_BATCH_LIMIT=%s BROKEN_THRESHOLD=%s DEFAULT_AUTO_ARCHIVE_DAYS=%s",
            self.OUTDATED_MINUTES,
            self.SYNC_BATCH_LIMIT,
            self.BROKEN_THRESHOLD,
            self.DEFAULT_AUTO_ARCHIVE_DAYS,
        )

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "outdated_minutes": self.OUTDATED_MINUTES,
            "sync_batch_limit": self.SYNC_BATCH_LIMIT,
            "broken_threshold": self.BROKEN_THRESHOLD,
            "default_auto_archive_days": self.DEFAULT_AUTO_ARCHIVE_DAYS,
            "worker_concurrency": self.WORKER_CONCURRENCY,
            "job_max_attempts": self.JOB_MAX_ATTEMPTS,
            "orchestrator_cron": self.ORCHESTRATOR_CRON,
            "auto_archive_cron": self.AUTO_ARCHIVE_CRON,
            "scheduler_timezone": self.SCHEDULER_TIMEZONE,
            "synthesize_guids": self.SYNTHESIZE_GUIDS,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
