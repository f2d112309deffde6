"""
Configuration management module for the finance sync engine.

This module handles loading and saving the YAML configuration, exposes the
typed settings each service is constructed with, configures logging, and
persists the small amount of per-installation state the sync lifecycle needs
(last successful sync time and the initial-migration flag) through an
injected key/value store.
"""

import copy
import logging
import sys
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import yaml

from exceptions import ConfigError
from utils import resolve_log_path

logger = logging.getLogger(__name__)

CONFIG_FILE = 'config.yaml'

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Default configuration values
DEFAULT_CONFIG: Dict[str, Any] = {
    'logging': {
        'level': 'INFO',
        'format': DEFAULT_LOG_FORMAT,
        'file': None,
    },
    'database': {
        'connection_string': None,
        'data_dir': 'data',
        'path': 'finance_sync.db',
        'max_batch_size': 500,
    },
    'sync': {
        'min_interval_seconds': 3600,
        'batch_headroom': 50,
        'state_file': None,
    },
    'insights': {
        'top_category_limit': 5,
        'top_category_savings_rate': 0.15,
        'dining_min_count': 5,
        'dining_savings_rate': 0.20,
        'dining_keywords': ['food', 'restaurant', 'dining'],
        'subscription_min_amount': 5.0,
        'subscription_max_amount': 50.0,
        'subscription_savings_rate': 0.30,
        'subscription_keywords': ['subscription', 'streaming', 'membership'],
        'subscription_brands': ['netflix', 'spotify', 'hulu', 'disney', 'apple', 'amazon', 'prime'],
    },
    'budget': {
        'history_buffer': 1.10,
        'default_monthly_income': 4000.0,
    },
}


def _merge_defaults(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file merged over the defaults.

    Args:
        config_path: Path to the YAML file (defaults to config.yaml)

    Returns:
        Configuration dictionary with defaults for missing values

    Raises:
        ConfigError: If the file exists but is not valid YAML or not a mapping
    """
    config_path = Path(config_path or CONFIG_FILE)
    if not config_path.exists():
        logger.info(f"No configuration file at {config_path}; using defaults")
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        with open(config_path, 'r') as f:
            loaded = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(
            "Invalid YAML in configuration file",
            details={"config_path": str(config_path)},
            original_error=e
        ) from e

    if not isinstance(loaded, dict):
        raise ConfigError(
            "Configuration file must contain a mapping",
            details={"config_path": str(config_path)}
        )

    logger.info("Configuration loaded successfully")
    return _merge_defaults(DEFAULT_CONFIG, loaded)


def save_config(config: Dict[str, Any], config_path: Optional[Path] = None) -> bool:
    """
    Save configuration to a YAML file, preserving keys not in ``config``.

    Args:
        config: Configuration dictionary to save
        config_path: Destination path (defaults to config.yaml)

    Returns:
        True if successful, False otherwise
    """
    config_path = Path(config_path or CONFIG_FILE)
    try:
        existing_config = {}
        if config_path.exists():
            with open(config_path, 'r') as f:
                existing_config = yaml.safe_load(f) or {}

        existing_config.update(config)

        with open(config_path, 'w') as f:
            yaml.dump(existing_config, f, default_flow_style=False)

        logger.info("Configuration saved successfully")
        return True

    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error saving configuration: {e}", exc_info=True)
        return False


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Configure root logging based on config settings.

    Unknown level names fall back to INFO, formats without a timestamp get
    one prepended, and a log file that cannot be opened only logs a warning.

    Args:
        config: Configuration dictionary with logging settings
    """
    log_config = config.get("logging") or {}
    level_name = str(log_config.get("level") or "INFO").upper()
    log_level = getattr(logging, level_name, None)
    invalid_level = not isinstance(log_level, int)
    if invalid_level:
        log_level = logging.INFO

    log_format = log_config.get("format") or DEFAULT_LOG_FORMAT
    if "%(asctime)" not in log_format:
        log_format = f"%(asctime)s - {log_format}"

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    file_error = None
    log_file = log_config.get("file")
    if log_file:
        try:
            handlers.append(logging.FileHandler(resolve_log_path(log_file)))
        except OSError as exc:
            file_error = exc

    logging.basicConfig(level=log_level, format=log_format, handlers=handlers, force=True)

    if invalid_level:
        logger.warning(f"Unknown log level '{level_name}'; using INFO")
    if file_error is not None:
        logger.warning(f"Unable to open log file '{log_file}': {file_error}")


@dataclass
class SyncSettings:
    """
    Sync lifecycle settings.

    Attributes:
        min_interval_seconds: Minimum time between non-forced syncs, also the timer period
        batch_headroom: Operations held back from each batch below the store limit
    """
    min_interval_seconds: float = 3600
    batch_headroom: int = 50

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SyncSettings":
        section = config.get("sync") or {}
        return cls(
            min_interval_seconds=float(section.get("min_interval_seconds", cls.min_interval_seconds)),
            batch_headroom=int(section.get("batch_headroom", cls.batch_headroom)),
        )


def _default_list(key: str):
    return field(default_factory=lambda: list(DEFAULT_CONFIG['insights'][key]))


@dataclass
class InsightSettings:
    """
    Thresholds for savings-tip heuristics and summaries.

    Keyword matching is case-insensitive substring matching.
    """
    top_category_limit: int = 5
    top_category_savings_rate: float = 0.15
    dining_min_count: int = 5
    dining_savings_rate: float = 0.20
    dining_keywords: List[str] = _default_list('dining_keywords')
    subscription_min_amount: float = 5.0
    subscription_max_amount: float = 50.0
    subscription_savings_rate: float = 0.30
    subscription_keywords: List[str] = _default_list('subscription_keywords')
    subscription_brands: List[str] = _default_list('subscription_brands')

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "InsightSettings":
        section = _merge_defaults(DEFAULT_CONFIG['insights'], config.get("insights") or {})
        return cls(
            top_category_limit=int(section['top_category_limit']),
            top_category_savings_rate=float(section['top_category_savings_rate']),
            dining_min_count=int(section['dining_min_count']),
            dining_savings_rate=float(section['dining_savings_rate']),
            dining_keywords=[str(k).lower() for k in section['dining_keywords']],
            subscription_min_amount=float(section['subscription_min_amount']),
            subscription_max_amount=float(section['subscription_max_amount']),
            subscription_savings_rate=float(section['subscription_savings_rate']),
            subscription_keywords=[str(k).lower() for k in section['subscription_keywords']],
            subscription_brands=[str(k).lower() for k in section['subscription_brands']],
        )


@dataclass
class BudgetSettings:
    """
    Budget recommendation settings.

    Attributes:
        history_buffer: Multiplier applied to historical spend
        default_monthly_income: Placeholder income used when income is unknown
    """
    history_buffer: float = 1.10
    default_monthly_income: float = 4000.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "BudgetSettings":
        section = config.get("budget") or {}
        return cls(
            history_buffer=float(section.get("history_buffer", cls.history_buffer)),
            default_monthly_income=float(section.get("default_monthly_income", cls.default_monthly_income)),
        )


class KeyValueStore(Protocol):
    """Minimal persisted key/value storage for per-installation state."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """In-process key/value store."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class YamlKeyValueStore:
    """
    Key/value store persisted to a YAML file.

    Every write rereads the file and rewrites it whole.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(
                "Invalid YAML in state file",
                details={"path": str(self.path)},
                original_error=e
            ) from e
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            yaml.safe_dump(data, f, default_flow_style=False)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)


class InstallationState:
    """
    Typed access to the per-user sync state kept in a key/value store.

    Keys are namespaced by user id so several users on one installation
    never share a sync schedule or migration flag.
    """

    LAST_SYNC_KEY = "user_{user_id}_last_sync_time"
    MIGRATION_KEY = "user_{user_id}_migrated_to_store"

    def __init__(self, store: KeyValueStore):
        self.store = store

    def last_sync_time(self, user_id: str) -> Optional[datetime]:
        raw = self.store.get(self.LAST_SYNC_KEY.format(user_id=user_id))
        if not raw:
            return None
        if isinstance(raw, datetime):
            parsed = raw
        else:
            try:
                parsed = datetime.fromisoformat(raw)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring malformed last sync time for user {user_id}: {raw!r}")
                return None
        # Hand-edited state files may hold naive timestamps; they are UTC.
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed

    def set_last_sync_time(self, user_id: str, when: datetime) -> None:
        self.store.set(self.LAST_SYNC_KEY.format(user_id=user_id), when.isoformat())

    def has_completed_migration(self, user_id: str) -> bool:
        return bool(self.store.get(self.MIGRATION_KEY.format(user_id=user_id), False))

    def mark_migration_complete(self, user_id: str) -> None:
        self.store.set(self.MIGRATION_KEY.format(user_id=user_id), True)
