#!/usr/bin/env python3
"""
Configuration management for the feed ingestor.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application.

It also defines the typed per-subscription fetch policy (``FetchConfig``) and
the single merge function used to layer overrides on top of it.
"""

from dataclasses import dataclass, field, fields, replace
from os import environ, path, access, R_OK
from typing import Dict, Any, Mapping, Optional, Union
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

from errors import ValidationError

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
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

    # APScheduler logs every job submission at INFO; keep it quieter unless asked
    aps_level_str = environ.get("APSCHEDULER_LOG_LEVEL", "WARNING").upper()
    getLogger("apscheduler").setLevel(level_map.get(aps_level_str, WARNING))

    return getLogger("FeedIngestor")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    This function creates a logger with a name in the format "FeedIngestor.{name}".

    Args:
        name: The logger name (e.g., "fetcher", "scheduler", "ingest")

    Returns:
        A logger instance with the unified configuration
    """
    return getLogger(f"FeedIngestor.{name}")

# Create single global logger instance
logger = _setup_global_logger()

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; RSS-Reader/1.0)"
DEDUP_FIELDS = ("guid", "link", "title")


@dataclass
class DedupPolicy:
    """Deduplication policy for a subscription.

    Attributes:
        enabled: When False every parsed item is inserted (subject only to the
            storage-level unique key).
        field: Feed item field used as the dedup key: ``guid``, ``link`` or ``title``.
    """

    enabled: bool = True
    field: str = "guid"


@dataclass
class FetchConfig:
    """Fetch policy for one subscription.

    Attributes:
        cron_schedule: Cron expression for the periodic job; None means no job.
        auto_fetch: Whether the subscription should be fetched on a schedule at all.
        max_items: Parsed items beyond this count are dropped before ingestion.
        timeout: Per-request timeout in seconds; the in-flight request is aborted on expiry.
        retry_count: Number of retries for the retrieval step (0 disables retrying).
        user_agent: Value of the User-Agent request header.
        headers: Extra request headers, applied after the User-Agent.
        deduplication: See ``DedupPolicy``.
    """

    cron_schedule: Optional[str] = None
    auto_fetch: bool = True
    max_items: int = 50
    timeout: float = 30.0
    retry_count: int = 3
    user_agent: str = DEFAULT_USER_AGENT
    headers: Dict[str, str] = field(default_factory=dict)
    deduplication: DedupPolicy = field(default_factory=DedupPolicy)


# camelCase spellings accepted from API payloads and YAML files
_FETCH_CONFIG_ALIASES = {
    "cronSchedule": "cron_schedule",
    "autoFetch": "auto_fetch",
    "maxItems": "max_items",
    "retryCount": "retry_count",
    "userAgent": "user_agent",
}


def _coerce_dedup(value: Any) -> DedupPolicy:
    if isinstance(value, DedupPolicy):
        policy = replace(value)
    elif isinstance(value, Mapping):
        unknown = set(value) - {"enabled", "field"}
        if unknown:
            raise ValidationError(f"Unknown deduplication option(s): {', '.join(sorted(unknown))}")
        policy = DedupPolicy(
            enabled=bool(value.get("enabled", True)),
            field=str(value.get("field", "guid")),
        )
    else:
        raise ValidationError(f"deduplication must be a mapping, got {type(value).__name__}")
    if policy.field not in DEDUP_FIELDS:
        raise ValidationError(f"Invalid deduplication field '{policy.field}' (expected one of {', '.join(DEDUP_FIELDS)})")
    return policy


def apply_overrides(base: FetchConfig, overrides: Union[FetchConfig, Mapping[str, Any], None]) -> FetchConfig:
    """Return a new FetchConfig with ``overrides`` layered over ``base``.

    Args:
        base: The config to start from (never mutated).
        overrides: A complete FetchConfig (replaces ``base``), a mapping of option
            names (snake_case or camelCase) to values, or None. Mapping values of
            None are ignored so partially-filled rows fall back to ``base``.

    Raises:
        ValidationError: On unknown options or out-of-range values.
    """
    if overrides is None:
        return replace(base, headers=dict(base.headers), deduplication=replace(base.deduplication))
    if isinstance(overrides, FetchConfig):
        values = {f.name: getattr(overrides, f.name) for f in fields(FetchConfig)}
    elif isinstance(overrides, Mapping):
        values = {}
        known = {f.name for f in fields(FetchConfig)}
        for key, value in overrides.items():
            name = _FETCH_CONFIG_ALIASES.get(key, key)
            if name not in known:
                raise ValidationError(f"Unknown fetch option '{key}'")
            if value is not None:
                values[name] = value
    else:
        raise ValidationError(f"Fetch overrides must be a mapping, got {type(overrides).__name__}")

    merged = {f.name: getattr(base, f.name) for f in fields(FetchConfig)}
    merged.update(values)

    try:
        merged["max_items"] = int(merged["max_items"])
        merged["timeout"] = float(merged["timeout"])
        merged["retry_count"] = int(merged["retry_count"])
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid numeric fetch option: {e}")
    if merged["max_items"] < 1:
        raise ValidationError(f"max_items must be at least 1, got {merged['max_items']}")
    if merged["timeout"] <= 0:
        raise ValidationError(f"timeout must be positive, got {merged['timeout']}")
    if merged["retry_count"] < 0:
        raise ValidationError(f"retry_count must not be negative, got {merged['retry_count']}")
    if not isinstance(merged["headers"], Mapping):
        raise ValidationError("headers must be a mapping of header name to value")
    merged["headers"] = {str(k): str(v) for k, v in merged["headers"].items()}
    merged["auto_fetch"] = bool(merged["auto_fetch"])
    merged["user_agent"] = str(merged["user_agent"] or DEFAULT_USER_AGENT)
    cron = merged["cron_schedule"]
    merged["cron_schedule"] = (cron.strip() or None) if isinstance(cron, str) else None
    merged["deduplication"] = _coerce_dedup(merged["deduplication"])
    return FetchConfig(**merged)


class Config:
    """Configuration manager for the feed ingestor.

    This class handles loading and validation of configuration from multiple sources:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    The loading order ensures that:
    - .env file variables override system environment variables
    - Secrets file variables override both system and .env variables
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()

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
        base_dir = path.dirname(path.abspath(__file__))

        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "subscriptions.db")
        self.SCHEMA_FILE_PATH = environ.get("SCHEMA_FILE_PATH", path.join(base_dir, "schema.sql"))
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # HTTP request defaults (per-subscription configs override these)
        self.USER_AGENT = environ.get("USER_AGENT", DEFAULT_USER_AGENT)
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 3, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.0)
        self.MAX_ITEMS_PER_FETCH = self._validate_positive_int("MAX_ITEMS_PER_FETCH", 50, 1)

        # Scheduler configuration
        self.SCHEDULER_TIMEZONE = environ.get("SCHEDULER_TIMEZONE", "UTC")
        self.SCHEDULER_RESYNC_MINUTES = self._validate_positive_int("SCHEDULER_RESYNC_MINUTES", 5, 0)

        # Seed file for the `seed` command
        self.SUBSCRIPTIONS_CONFIG_PATH = environ.get(
            "SUBSCRIPTIONS_CONFIG_PATH", path.join(base_dir, "subscriptions.yaml")
        )

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE environment variable is set, loads the specified YAML file
        and sets environment variables from it.

        Expected YAML formats (both supported):
        ```yaml
        # Preferred: top-level mapping
        DATABASE_PATH: "/data/subscriptions.db"

        # Backward-compatible: nested under `environment`
        # environment:
        #   DATABASE_PATH: "/data/subscriptions.db"
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return

        if isinstance(secrets_config, dict) and isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
        elif isinstance(secrets_config, dict):
            env_vars = secrets_config
        else:
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'subscriptions')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
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

    def default_fetch_config(self) -> FetchConfig:
        """Fetch policy used when a subscription has no stored config."""
        return FetchConfig(
            max_items=self.MAX_ITEMS_PER_FETCH,
            timeout=float(self.HTTP_TIMEOUT),
            retry_count=self.MAX_RETRIES,
            user_agent=self.USER_AGENT,
        )

    def load_subscription_sources(self, file_path: Optional[str] = None) -> list:
        """Read subscription definitions for the `seed` command.

        Expected format::

            subscriptions:
              elonmusk:
                url: https://nitter.net/elonmusk/rss
                type: nitter_rss
                cron_schedule: "*/15 * * * *"
                max_items: 20

        Returns:
            A list of dicts with at least ``name`` and ``url``; invalid entries are skipped.
        """
        file_path = file_path or self.SUBSCRIPTIONS_CONFIG_PATH
        data = self._safe_read_yaml(file_path, 5 * 1024 * 1024, 'subscriptions')
        section = data.get('subscriptions') if isinstance(data, dict) else None
        if not isinstance(section, dict):
            logger.warning(f"No valid subscriptions found in {file_path}")
            return []

        sources = []
        for name, entry in section.items():
            if isinstance(entry, dict) and entry.get('url'):
                sources.append({'name': str(name), **entry})
            else:
                logger.warning(f"Skipping invalid subscription definition for '{name}': {entry}")
        logger.info(f"Loaded {len(sources)} subscription definitions from {file_path}")
        return sources

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_retries": self.MAX_RETRIES,
            "max_items_per_fetch": self.MAX_ITEMS_PER_FETCH,
            "scheduler_timezone": self.SCHEDULER_TIMEZONE,
            "scheduler_resync_minutes": self.SCHEDULER_RESYNC_MINUTES,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
