#!/usr/bin/env python3
"""
Configuration management for the gator feed aggregator.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, the optional secrets file, logging setup and
the session file that remembers which user is logged in.
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

    # aiohttp access/client chatter is only useful when debugging
    getLogger("aiohttp").setLevel(max(level, WARNING))

    return getLogger("Gator")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "ingester", "scheduler")

    Returns:
        A logger instance named "Gator.{name}"
    """
    return getLogger(f"Gator.{name}")

logger = _setup_global_logger()

OVERLAP_POLICIES = ("skip", "allow")


class Session:
    """The logged-in user, persisted in SESSION_FILE.

    Loaded once per command invocation and handed to the command handlers;
    nothing else reads the session file.
    """

    def __init__(self, current_user_name: Optional[str] = None, file_path: Optional[str] = None):
        self.current_user_name = current_user_name
        self.file_path = file_path

    def __repr__(self) -> str:
        return f"Session(current_user_name={self.current_user_name!r})"


def load_session(file_path: Optional[str] = None) -> Session:
    """Read the session file; a missing or empty file means nobody is logged in."""
    file_path = file_path or config.SESSION_FILE
    if not path.isfile(file_path):
        return Session(file_path=file_path)
    try:
        with open(file_path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Could not read session file {file_path}: {e}")
        return Session(file_path=file_path)
    if not isinstance(data, dict):
        logger.warning(f"Session file {file_path} must be a YAML mapping; ignoring it")
        return Session(file_path=file_path)
    name = data.get('current_user_name')
    return Session(current_user_name=str(name) if name else None, file_path=file_path)


def save_session(session: Session) -> None:
    """Persist the session to its file."""
    file_path = session.file_path or config.SESSION_FILE
    with open(file_path, 'w') as f:
        yaml.safe_dump({'current_user_name': session.current_user_name}, f, default_flow_style=False)
    logger.debug(f"Session saved to {file_path}")


class Config:
    """Configuration manager for the aggregator.

    Values are loaded from, in increasing order of precedence:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    """

    def __init__(self):
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

    def _validate_choice(self, env_var: str, default: str, choices: tuple) -> str:
        """Validate an environment variable against a fixed set of values."""
        value = environ.get(env_var, default).strip().lower()
        if value not in choices:
            logger.warning(f"{env_var} must be one of {', '.join(choices)}, using default {default}")
            return default
        return value

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "gator.db")
        self.USER_AGENT = environ.get("USER_AGENT", "gator")

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Scheduler configuration
        self.SCHEDULER_OVERLAP_POLICY = self._validate_choice("SCHEDULER_OVERLAP_POLICY", "skip", OVERLAP_POLICIES)

        # CLI
        self.BROWSE_DEFAULT_LIMIT = self._validate_positive_int("BROWSE_DEFAULT_LIMIT", 2, 1)
        self.SESSION_FILE = path.expanduser(environ.get("SESSION_FILE", path.join("~", ".gatorconfig.yaml")))

        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 1, 1)

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the YAML mapping it points to and exports
        each key as an environment variable. Both a top-level mapping and one
        nested under `environment` are accepted:

        ```yaml
        DATABASE_PATH: "/var/lib/gator/gator.db"
        USER_AGENT: "gator"
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
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
                logger.debug(f"Set environment variable {key} from secrets file")
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}={value}")

        logger.info(f"Successfully loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets')

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

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "user_agent": self.USER_AGENT,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_redirects": self.MAX_REDIRECTS,
            "overlap_policy": self.SCHEDULER_OVERLAP_POLICY,
            "session_file": self.SESSION_FILE,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
