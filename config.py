"""
Configuration Module
====================
Environment-driven settings for the order entry core.

Everything is read once (from the process environment, plus a local .env
when present) and validated up front, so a bad value stops startup instead
of surfacing halfway through an editing session.
"""

import os
import logging
from typing import Optional, Dict, Any, List
from pathlib import Path
from dotenv import load_dotenv


logger = logging.getLogger(__name__)


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
TRUTHY = ("true", "1", "yes", "on", "enabled")


# ============================================================================
# ENVIRONMENT
# ============================================================================

def load_environment(path: str = ".env"):
    """Merge variables from a dotenv file into os.environ (idempotent)."""
    env_file = Path(path)
    if not env_file.exists():
        logger.debug(f"No {path} file, reading process environment only")
        return

    load_dotenv(env_file)
    logger.info(f"Environment loaded from {path}")


load_environment()


class ConfigurationError(Exception):
    """A setting is missing, malformed or out of range."""
    pass


# ============================================================================
# READERS
# ============================================================================

def _get_optional_env(key: str, default: str = None) -> Optional[str]:
    """Stripped value of key, or default when unset or blank."""
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _get_bool_env(key: str, default: bool = False) -> bool:
    raw = _get_optional_env(key)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def _parse_number(key: str, cast, default):
    raw = _get_optional_env(key)
    if raw is None:
        return default

    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(
            f"{key} must be a {cast.__name__}, got {raw!r}"
        ) from None


def _get_int_env(key: str, default: int = None) -> Optional[int]:
    """
    Integer setting.

    Raises:
        ConfigurationError: If the value does not parse
    """
    return _parse_number(key, int, default)


def _get_float_env(key: str, default: float = None) -> Optional[float]:
    """
    Float setting.

    Raises:
        ConfigurationError: If the value does not parse
    """
    return _parse_number(key, float, default)


def _require_positive(key: str, value: float):
    if value <= 0:
        raise ConfigurationError(f"{key} must be positive: {value}")


# ============================================================================
# SECTIONS
# ============================================================================

class SupabaseConfig:
    """
    Remote authoritative store.

    URL and key are optional: without them the app runs on the local
    cache only and cannot commit orders.
    """

    def __init__(self):
        self.url = _get_optional_env("SUPABASE_URL")
        self.key = _get_optional_env("SUPABASE_KEY")

        if bool(self.url) != bool(self.key):
            raise ConfigurationError(
                "SUPABASE_URL and SUPABASE_KEY must be set together"
            )

        if self.url and not self.url.startswith("https://"):
            raise ConfigurationError(f"SUPABASE_URL is not an https URL: {self.url}")

        self.timeout = _get_float_env("SUPABASE_TIMEOUT", 10.0)
        self.poll_interval = _get_float_env("REMOTE_POLL_INTERVAL", 5.0)

        _require_positive("SUPABASE_TIMEOUT", self.timeout)
        _require_positive("REMOTE_POLL_INTERVAL", self.poll_interval)

    @property
    def enabled(self) -> bool:
        """True when remote credentials are configured."""
        return bool(self.url and self.key)


class StorageConfig:
    """Local persistent store (drafts and catalog cache)."""

    def __init__(self):
        self.local_db_path = _get_optional_env(
            "LOCAL_DB_PATH",
            "data/order_entry.db"
        )


class DraftConfig:
    """Draft checkpointing."""

    def __init__(self):
        self.debounce_ms = _get_int_env("DRAFT_DEBOUNCE_MS", 500)

        if not 0 <= self.debounce_ms <= 60000:
            raise ConfigurationError(
                f"DRAFT_DEBOUNCE_MS must be between 0 and 60000: {self.debounce_ms}"
            )

        # One fixed draft slot for the order being created
        self.new_order_key = _get_optional_env(
            "NEW_ORDER_DRAFT_KEY",
            "new-order-draft"
        )

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000.0


class BootstrapConfig:
    """Catalog bootstrap."""

    def __init__(self):
        self.sync_timeout = _get_float_env("SYNC_TIMEOUT_SECONDS", 20.0)
        self.enable_cache_write_back = _get_bool_env("ENABLE_CACHE_WRITE_BACK", True)

        _require_positive("SYNC_TIMEOUT_SECONDS", self.sync_timeout)


class LoggingConfig:
    def __init__(self):
        self.log_level = (_get_optional_env("LOG_LEVEL") or "INFO").upper()
        self.log_json = _get_bool_env("LOG_JSON", False)

        if self.log_level not in LOG_LEVELS:
            raise ConfigurationError(
                f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}: {self.log_level}"
            )


# ============================================================================
# CONFIG
# ============================================================================

class Config:
    """
    All settings, grouped by concern.

    Raises ConfigurationError on construction if any section is invalid.
    """

    def __init__(self):
        try:
            self.supabase = SupabaseConfig()
            self.storage = StorageConfig()
            self.drafts = DraftConfig()
            self.bootstrap = BootstrapConfig()
            self.logging = LoggingConfig()
        except ConfigurationError as e:
            logger.error(f"Invalid configuration: {str(e)}")
            raise

        logger.debug("Configuration validated")

    def get_safe_summary(self) -> Dict[str, Any]:
        """Settings safe to log (the Supabase key is never included)."""
        return {
            "remote_enabled": self.supabase.enabled,
            "remote_poll_interval": self.supabase.poll_interval,
            "local_db_path": self.storage.local_db_path,
            "draft_debounce_ms": self.drafts.debounce_ms,
            "new_order_draft_key": self.drafts.new_order_key,
            "sync_timeout": self.bootstrap.sync_timeout,
            "cache_write_back": self.bootstrap.enable_cache_write_back,
            "log_level": self.logging.log_level,
        }

    def validate_runtime_dependencies(self) -> List[str]:
        """
        Non-fatal environment checks.

        Returns:
            Human-readable warnings (empty if nothing looks wrong)
        """
        warnings = []

        if not self.supabase.enabled:
            warnings.append(
                "Remote store not configured; catalogs will be served from cache only"
            )

        db_dir = Path(self.storage.local_db_path).parent
        if db_dir.exists() and not os.access(db_dir, os.W_OK):
            warnings.append(f"Local database directory not writable: {db_dir}")

        return warnings


_config: Optional[Config] = None


def get_config() -> Config:
    """Process-wide configuration, built on first use."""
    global _config

    if _config is None:
        _config = Config()

    return _config


def reload_config() -> Config:
    """Re-read .env and the environment, replacing the shared instance."""
    global _config
    load_environment()
    _config = Config()
    logger.info("Configuration reloaded")
    return _config


def validate_configuration():
    """
    Build the configuration and log a summary plus any warnings.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config = get_config()

    for key, value in config.get_safe_summary().items():
        logger.info(f"config {key}={value}")

    for warning in config.validate_runtime_dependencies():
        logger.warning(f"Configuration warning: {warning}")
