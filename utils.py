"""
Filesystem helpers for the engine's on-disk resources.

Every relative path in the configuration (data directory, SQLite file, log
file, installation state file) is anchored at the project root, and parent
directories are created on demand so a fresh checkout runs without setup.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

logger = logging.getLogger(__name__)

DATABASE_URL_ENV = "FINANCE_SYNC_DATABASE_URL"

_PROJECT_ROOT = Path(__file__).resolve().parent
_DEFAULT_DATA_DIR_NAME = "data"
_DEFAULT_DB_FILENAME = "finance_sync.db"
_DEFAULT_STATE_FILENAME = "state.yaml"


def get_project_root() -> Path:
    return _PROJECT_ROOT


def _anchor(path_value: str | Path) -> Path:
    """Return ``path_value`` unchanged when absolute, else under the project root."""
    path = Path(path_value)
    return path if path.is_absolute() else get_project_root() / path


def _make_parent(path: Path) -> Path:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.error("Failed to create directory '%s': %s", path.parent, exc)
        raise
    return path


def get_data_dir(config: Optional[Dict[str, Any]] = None) -> Path:
    """Resolve ``database.data_dir`` without touching the filesystem."""
    db_config = (config or {}).get("database") or {}
    return _anchor(db_config.get("data_dir") or _DEFAULT_DATA_DIR_NAME)


def ensure_data_dir(config: Optional[Dict[str, Any]] = None) -> Path:
    """
    Resolve the data directory and create it if missing.

    Args:
        config: Optional configuration dictionary.

    Returns:
        Absolute Path to the data directory.
    """
    data_dir = get_data_dir(config)
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.error("Failed to create data directory '%s': %s", data_dir, exc)
        raise
    return data_dir


def _prepare_sqlite_file(connection_string: str) -> None:
    """Create the directory holding a file-backed SQLite database."""
    try:
        url = make_url(connection_string)
    except ArgumentError as exc:
        logger.debug("Unable to parse connection string '%s': %s", connection_string, exc)
        return
    if not url.drivername.startswith("sqlite") or not url.database or url.database == ":memory:":
        return
    _make_parent(_anchor(url.database))


def resolve_connection_string(config: Optional[Dict[str, Any]] = None) -> str:
    """
    Resolve the document store's SQLAlchemy connection string.

    Order of precedence:
        1. FINANCE_SYNC_DATABASE_URL environment variable
        2. config['database']['connection_string']
        3. SQLite file ``database.path`` inside the data directory

    Args:
        config: Optional configuration dictionary.

    Returns:
        SQLAlchemy connection string.
    """
    db_config = (config or {}).get("database") or {}
    explicit = os.environ.get(DATABASE_URL_ENV) or db_config.get("connection_string")
    if explicit:
        _prepare_sqlite_file(explicit)
        return explicit

    db_path = Path(db_config.get("path") or _DEFAULT_DB_FILENAME)
    if not db_path.is_absolute():
        db_path = ensure_data_dir(config) / db_path
    _make_parent(db_path)
    return f"sqlite:///{db_path.as_posix()}"


def resolve_log_path(log_path: str) -> Path:
    """Anchor a configured log file path and create its directory."""
    return _make_parent(_anchor(log_path))


def resolve_state_path(config: Optional[Dict[str, Any]] = None) -> Path:
    """
    Resolve the YAML file holding per-installation sync state.

    Uses ``sync.state_file`` when configured, otherwise ``state.yaml`` inside
    the data directory. The parent directory is created on demand.

    Args:
        config: Optional configuration dictionary.

    Returns:
        Absolute Path of the state file.
    """
    sync_config = (config or {}).get("sync") or {}
    state_file = sync_config.get("state_file")
    if state_file:
        return _make_parent(_anchor(state_file))
    return ensure_data_dir(config) / _DEFAULT_STATE_FILENAME
