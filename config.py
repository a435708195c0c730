#!/usr/bin/env python3
"""
Configuration management for the feed ingestion pipeline.

This module centralizes configuration loading and validation. A single Config
value is built once at startup (from the process environment, an optional .env
file and an optional YAML secrets file) and then handed to every component by
parameter. Components never read the environment themselves.
"""

from os import environ, path, access, R_OK
from typing import Any, Dict, List, Mapping, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
from urllib.parse import urlparse
import copy
import sys
import yaml
from dotenv import load_dotenv

LOGGER_ROOT = "SmallWeb"

DEFAULT_RELAY_URL = "https://smallweb-rss.pages.dev/api/fetch-rss"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

_LEVEL_MAP = {
    "DEBUG": DEBUG,
    "INFO": INFO,
    "WARNING": WARNING,
    "ERROR": ERROR,
}


def setup_logging(level_str: str = "INFO", show_timestamps: bool = True):
    """Setup a single global logger for the entire application.

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that
    inherit this configuration.
    """
    level = _LEVEL_MAP.get((level_str or "INFO").upper(), INFO)

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

    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)

    # aiohttp access chatter is not useful in batch runs
    getLogger("aiohttp").setLevel(max(level, WARNING))

    return getLogger(LOGGER_ROOT)


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "relay", "models")

    Returns:
        A logger named "SmallWeb.{name}"
    """
    return getLogger(f"{LOGGER_ROOT}.{name}")


logger = get_logger("config")


def safe_read_yaml(file_path: str, max_size: int, kind: str) -> Any | None:
    """Safely read a YAML (or JSON) file with consistent validation.

    Args:
        file_path: Path to the file
        max_size: Maximum allowed file size in bytes
        kind: Short label for logging context (e.g. 'secrets', 'sources')

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
        with open(file_path, 'r', encoding='utf-8') as f:
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


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None or str(value).strip() == "":
        return default
    normalized = str(value).strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    return default


class Config:
    """Configuration for one ingestion run.

    Values are read from the mapping passed in (normally a snapshot of the
    process environment taken by from_environment()). The instance is treated
    as read-only once constructed; use with_overrides() to derive a variant.

    Example secrets.yaml format:
    ```yaml
    RELAY_URL: "https://relay.example.com/api/fetch-rss"
    APPLICATIONINSIGHTS_CONNECTION_STRING: "InstrumentationKey=..."
    ```
    """

    def __init__(self, env: Optional[Mapping[str, str]] = None, base_dir: Optional[str] = None):
        self._env: Dict[str, str] = dict(env) if env is not None else {}
        self.warnings: List[str] = []
        self._base_dir = base_dir or path.dirname(path.abspath(__file__))
        self._validate_and_set_config()
        self._check_consistency()

    @classmethod
    def from_environment(cls, base_dir: Optional[str] = None) -> "Config":
        """Load .env and the optional secrets file, then snapshot the environment."""
        root = base_dir or path.dirname(path.abspath(__file__))
        dotenv_path = path.join(root, '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")
        _load_secrets_file(environ.get("SECRETS_FILE"))
        return cls(dict(environ), base_dir=root)

    def _get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = self._env.get(name)
        if value is None or str(value).strip() == "":
            return default
        return str(value).strip()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        raw = self._get(env_var)
        if raw is None:
            return default
        try:
            value = int(raw)
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        raw = self._get(env_var)
        if raw is None:
            return default
        try:
            value = float(raw)
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_relay_url(self, raw_value: Optional[str]) -> str:
        """Return a well-formed http(s) relay URL, falling back to the built-in default."""
        candidate = (raw_value or "").strip() or DEFAULT_RELAY_URL
        try:
            parsed = urlparse(candidate)
        except ValueError:
            parsed = None
        if parsed is None or not parsed.netloc:
            message = f'Invalid RELAY_URL "{candidate}". Falling back to {DEFAULT_RELAY_URL}'
            self.warnings.append(message)
            logger.warning(message)
            return DEFAULT_RELAY_URL
        if parsed.scheme not in ("http", "https"):
            message = f"RELAY_URL must be http/https. Falling back to {DEFAULT_RELAY_URL}"
            self.warnings.append(message)
            logger.warning(message)
            return DEFAULT_RELAY_URL
        return candidate

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Paths
        data_dir = self._get("DATA_PATH", path.join(self._base_dir, "data"))
        self.DATA_PATH = data_dir
        self.DATABASE_PATH = self._get("DATABASE_PATH") or self._get("DB_PATH") or path.join(data_dir, "smallweb.db")
        self.SOURCES_PATH = self._get("SOURCES_PATH", path.join(data_dir, "blogs.json"))
        self.CACHE_DIR = self._get("CACHE_DIR", path.join(data_dir, "cache"))
        self.PUBLIC_DIR = self._get("PUBLIC_DIR", path.join(self._base_dir, "public"))
        self.SCHEMA_FILE_PATH = path.join(self._base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # Logging & telemetry
        self.LOG_LEVEL = (self._get("LOG_LEVEL", "INFO") or "INFO").upper()
        self.LOG_TIMESTAMPS = _parse_bool(self._get("LOG_TIMESTAMPS"), True)
        self.TELEMETRY_ENABLED = not _parse_bool(self._get("DISABLE_TELEMETRY"), False)
        self.OTEL_SERVICE_NAME = self._get("OTEL_SERVICE_NAME", "smallweb-ingest")
        self.OTEL_ENVIRONMENT = self._get("OTEL_ENVIRONMENT")
        self.TELEMETRY_CONNECTION_STRING = (
            self._get("APPLICATIONINSIGHTS_CONNECTION_STRING")
            or self._get("AZURE_MONITOR_CONNECTION_STRING")
        )

        # HTTP request configuration
        self.USER_AGENT = self._get("USER_AGENT", DEFAULT_USER_AGENT)
        self.FEED_TIMEOUT = self._validate_positive_float("FEED_TIMEOUT", 30.0, 1.0)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 2, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.0)
        self.RETRY_MAX_DELAY = self._validate_positive_float("RETRY_MAX_DELAY", 30.0, 0.0)

        # Relay (rate-limit avoidance) configuration
        self.RELAY_URL = self._validate_relay_url(self._get("RELAY_URL") or self._get("PROXY_URL"))
        self.RELAY_MAX_ATTEMPTS = self._validate_positive_int("RELAY_MAX_ATTEMPTS", 3, 1)
        self.RELAY_BLOCKED_STATUS = self._validate_positive_int("RELAY_BLOCKED_STATUS", 429, 100)
        patterns = self._get("RELAY_HOST_PATTERNS", "substack.com") or ""
        self.RELAY_HOST_PATTERNS = [p.strip().lower() for p in patterns.split(",") if p.strip()]

        # Scheduling
        self.FEED_CONCURRENCY = self._validate_positive_int("FEED_CONCURRENCY", 8, 1)
        self.SENSITIVE_BATCH_SIZE = self._validate_positive_int("SENSITIVE_BATCH_SIZE", 3, 1)
        self.SENSITIVE_BATCH_DELAY = self._validate_positive_float("SENSITIVE_BATCH_DELAY", 10.0, 0.0)

        # Items, dates and excerpts
        self.DEFAULT_MAX_ITEMS = self._validate_positive_int("MAX_POSTS_PER_SOURCE", 25, 1)
        self.MAX_FUTURE_DAYS = self._validate_positive_int("MAX_FUTURE_DAYS", 2, 1)
        self.RECENT_PRIMARY_DAYS = self._validate_positive_int("RECENT_PRIMARY_DAYS", 7, 1)
        self.INFERRED_DATE_MAX_DIFF_DAYS = self._validate_positive_int("INFERRED_DATE_MAX_DIFF_DAYS", 30, 1)
        self.EXCERPT_MAX_LENGTH = self._validate_positive_int("EXCERPT_MAX_LENGTH", 300, 20)
        self.EXCERPT_CONCURRENCY = self._validate_positive_int("EXCERPT_CONCURRENCY", 4, 1)
        running_in_ci = _parse_bool(self._get("GITHUB_ACTIONS"), False)
        self.FETCH_PAGE_EXCERPTS = _parse_bool(self._get("FETCH_PAGE_EXCERPTS"), not running_in_ci)
        self.MAX_PAGE_EXCERPTS_PER_SOURCE = self._validate_positive_int("MAX_PAGE_EXCERPTS_PER_SOURCE", 3, 0)
        self.PAGE_EXCERPT_TIMEOUT = self._validate_positive_float("PAGE_EXCERPT_TIMEOUT", 10.0, 1.0)
        self.PAGE_EXCERPT_MIN_LENGTH = self._validate_positive_int("PAGE_EXCERPT_MIN_LENGTH", 80, 1)

        # Store
        self.SAVE_BATCH_SIZE = self._validate_positive_int("SAVE_BATCH_SIZE", 50, 1)

    def _check_consistency(self) -> None:
        """Flag combinations that are legal but likely to misbehave."""
        if self.SENSITIVE_BATCH_SIZE > self.FEED_CONCURRENCY * 4:
            self.warnings.append(
                f"SENSITIVE_BATCH_SIZE={self.SENSITIVE_BATCH_SIZE} is high relative to "
                f"FEED_CONCURRENCY={self.FEED_CONCURRENCY}; expect more rate limits"
            )
        if not self.FETCH_PAGE_EXCERPTS and self._get("MAX_PAGE_EXCERPTS_PER_SOURCE") is not None \
                and self.MAX_PAGE_EXCERPTS_PER_SOURCE > 0:
            self.warnings.append(
                "MAX_PAGE_EXCERPTS_PER_SOURCE is set but FETCH_PAGE_EXCERPTS=false, page excerpt fetching is disabled"
            )
        if self.FEED_TIMEOUT < 5:
            self.warnings.append(f"FEED_TIMEOUT={self.FEED_TIMEOUT} is low and may cause false timeouts")

    def with_overrides(self, **overrides: Any) -> "Config":
        """Return a copy with selected attributes replaced (used by backfill runs)."""
        clone = copy.copy(self)
        clone.warnings = list(self.warnings)
        clone.RELAY_HOST_PATTERNS = list(self.RELAY_HOST_PATTERNS)
        for key, value in overrides.items():
            if value is None:
                continue
            if not hasattr(clone, key):
                raise AttributeError(f"Unknown configuration key: {key}")
            setattr(clone, key, value)
        return clone

    def format_summary(self) -> str:
        """One-line summary of the knobs that shape a run."""
        return ", ".join([
            f"FEED_CONCURRENCY={self.FEED_CONCURRENCY}",
            f"EXCERPT_CONCURRENCY={self.EXCERPT_CONCURRENCY}",
            f"FETCH_PAGE_EXCERPTS={str(self.FETCH_PAGE_EXCERPTS).lower()}",
            f"MAX_PAGE_EXCERPTS_PER_SOURCE={self.MAX_PAGE_EXCERPTS_PER_SOURCE}",
            f"SENSITIVE_BATCH_SIZE={self.SENSITIVE_BATCH_SIZE}",
            f"SENSITIVE_BATCH_DELAY={self.SENSITIVE_BATCH_DELAY}",
            f"FEED_TIMEOUT={self.FEED_TIMEOUT}",
            f"MAX_POSTS_PER_SOURCE={self.DEFAULT_MAX_ITEMS}",
        ])

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "sources_path": self.SOURCES_PATH,
            "cache_dir": self.CACHE_DIR,
            "public_dir": self.PUBLIC_DIR,
            "relay_url": self.RELAY_URL,
            "relay_host_patterns": list(self.RELAY_HOST_PATTERNS),
            "feed_concurrency": self.FEED_CONCURRENCY,
            "sensitive_batch_size": self.SENSITIVE_BATCH_SIZE,
            "sensitive_batch_delay": self.SENSITIVE_BATCH_DELAY,
            "feed_timeout": self.FEED_TIMEOUT,
            "max_retries": self.MAX_RETRIES,
            "relay_max_attempts": self.RELAY_MAX_ATTEMPTS,
            "fetch_page_excerpts": self.FETCH_PAGE_EXCERPTS,
            "telemetry_enabled": self.TELEMETRY_ENABLED,
        }


def _load_secrets_file(secrets_file_path: Optional[str]) -> int:
    """Load environment variable overrides from a YAML secrets file.

    Accepts either a top-level mapping or a mapping nested under `environment`.
    Returns the number of variables applied.
    """
    if not secrets_file_path:
        logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
        return 0

    secrets_config = safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
    if not isinstance(secrets_config, dict):
        if secrets_config is not None:
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
        return 0

    env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config

    loaded = 0
    for key, value in env_vars.items():
        if isinstance(key, str) and value is not None:
            environ[key] = str(value)
            loaded += 1
        else:
            logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

    logger.info(f"Loaded {loaded} environment variables from secrets file {secrets_file_path}")
    return loaded
