#!/usr/bin/env python3
"""
Configuration management for the Feed Sync engine.

This module centralizes configuration loading, validation, and logging setup.
It handles environment variables, the optional YAML secrets file, and the
channels.yaml file that seeds channels and describes the sync schedule.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create module-specific loggers that
    inherit this configuration.
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

    # Keep client libraries quiet unless explicitly overridden
    lib_level = level_map.get(environ.get("LIB_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("redis", "aiohttp.access", "aiohttp.client", "opentelemetry"):
        getLogger(name).setLevel(lib_level)

    return getLogger("FeedSync")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "sync", "locks", "fanout")

    Returns:
        A logger named "FeedSync.{name}"
    """
    return getLogger(f"FeedSync.{name}")

# Create single global logger instance
logger = _setup_global_logger()

class Config:
    """Configuration manager for the Feed Sync engine.

    Values are loaded from, in order of precedence (last wins):
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    channels.yaml is read separately for seed channels and the schedule.
    All values are read once at process start; there is no hot reload of
    engine settings.
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_channel_sources()

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

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Stores
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "channels.db")
        self.REDIS_URL = environ.get("REDIS_URL", "redis://localhost:6379/0")

        # HTTP client
        self.USER_AGENT = environ.get("USER_AGENT", "FeedSync fetcher (+https://github.com/feed-sync/feed-sync)")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)

        # Engine tuning
        # 0 is the escape hatch that turns automatic disabling off
        self.FAILURE_THRESHOLD = self._validate_positive_int("FAILURE_THRESHOLD", 3, 0)
        self.LOCK_TTL_SECONDS = self._validate_positive_int("LOCK_TTL_SECONDS", 60, 1)
        self.FETCH_CONCURRENCY = self._validate_positive_int("FETCH_CONCURRENCY", 5, 1)

        # Scheduling
        self.FETCH_INTERVAL_MINUTES = self._validate_positive_int("FETCH_INTERVAL_MINUTES", 30, 1)
        self.SCHEDULER_TIMEZONE = environ.get("SCHEDULER_TIMEZONE", "UTC")
        self.SCHEDULER_RUN_IMMEDIATELY = environ.get("SCHEDULER_RUN_IMMEDIATELY", "false").lower() == "true"

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.CHANNELS_CONFIG_PATH = environ.get("CHANNELS_CONFIG_PATH", path.join(base_dir, "channels.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, the file is read and each top-level key (or each
        key under an ``environment`` mapping) is exported as an environment
        variable. This keeps REDIS_URL credentials out of the process listing.

        Example:
            ```yaml
            REDIS_URL: "redis://:password@cache:6379/0"
            APPLICATIONINSIGHTS_CONNECTION_STRING: "InstrumentationKey=..."
            ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.info("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return

        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
            logger.debug(f"Using 'environment' section from secrets file {secrets_file_path}")
        else:
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
                logger.debug(f"Set environment variable {key} from secrets file")
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

        logger.info(f"Successfully loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'channels')

        Returns:
            Parsed YAML or None on failure.
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

    def _load_channel_sources(self) -> None:
        """Populate self.CHANNEL_SOURCES from channels.yaml.

        The mapping is name -> url and is only used by the ``seed`` command to
        register channels; the sync cycle itself reads channels from the
        database. Any failure results in an empty mapping.
        """
        channels_path = self.CHANNELS_CONFIG_PATH
        config_data = self._safe_read_yaml(channels_path, 5 * 1024 * 1024, 'channels')
        if not config_data or not isinstance(config_data, dict):
            self.CHANNEL_SOURCES = {}
            return

        channels_section = config_data.get('channels')
        if not isinstance(channels_section, dict):
            logger.warning(f"No valid channels found in {channels_path}")
            self.CHANNEL_SOURCES = {}
            return

        new_sources: Dict[str, str] = {}
        for name, channel_cfg in channels_section.items():
            if isinstance(channel_cfg, dict) and 'url' in channel_cfg:
                new_sources[str(name)] = channel_cfg['url']
            elif isinstance(channel_cfg, str):
                new_sources[str(name)] = channel_cfg
            else:
                logger.warning(f"Skipping invalid channel configuration for '{name}': {channel_cfg}")

        self.CHANNEL_SOURCES = new_sources
        logger.info(f"Loaded {len(self.CHANNEL_SOURCES)} seed channels from {channels_path}")

# Global configuration instance
config = Config()
