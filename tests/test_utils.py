"""
Tests for resolving the engine's on-disk resources.
"""

from pathlib import Path

import pytest
from sqlalchemy.engine import make_url

from utils import (
    DATABASE_URL_ENV,
    ensure_data_dir,
    get_project_root,
    resolve_connection_string,
    resolve_log_path,
    resolve_state_path,
)


@pytest.fixture(autouse=True)
def _no_database_env(monkeypatch):
    monkeypatch.delenv(DATABASE_URL_ENV, raising=False)


def test_ensure_data_dir_creates_directory(tmp_path):
    """Test that the data directory is created."""
    config = {"database": {"data_dir": str(tmp_path / "sync_data")}}

    data_dir = ensure_data_dir(config)

    assert data_dir == tmp_path / "sync_data"
    assert data_dir.is_dir()


def test_default_connection_string_lives_in_data_dir(tmp_path):
    """The default database is a SQLite file in the data directory."""
    data_dir = tmp_path / "engine_data"
    config = {"database": {"data_dir": str(data_dir), "path": "documents.db"}}

    url = make_url(resolve_connection_string(config))

    assert url.drivername == "sqlite"
    assert Path(url.database) == data_dir / "documents.db"
    assert data_dir.exists()


def test_configured_connection_string(tmp_path):
    """Test that a configured connection string is used."""
    db_path = tmp_path / "nested" / "store.db"
    config = {"database": {"connection_string": f"sqlite:///{db_path.as_posix()}"}}

    assert resolve_connection_string(config) == f"sqlite:///{db_path.as_posix()}"
    assert db_path.parent.exists()


def test_in_memory_connection_string_untouched():
    """In-memory SQLite URLs are returned unchanged."""
    assert resolve_connection_string({"database": {"connection_string": "sqlite://"}}) == "sqlite://"


def test_environment_overrides_config(monkeypatch, tmp_path):
    """The environment variable wins over configuration."""
    db_path = tmp_path / "from_env" / "sync.db"
    monkeypatch.setenv(DATABASE_URL_ENV, f"sqlite:///{db_path.as_posix()}")
    config = {"database": {"connection_string": "sqlite://"}}

    assert resolve_connection_string(config) == f"sqlite:///{db_path.as_posix()}"
    assert db_path.parent.exists()


def test_log_path_directory_created(tmp_path):
    """Test that the log file directory is created."""
    resolved = resolve_log_path(str(tmp_path / "logs" / "sync.log"))

    assert resolved == tmp_path / "logs" / "sync.log"
    assert resolved.parent.exists()


def test_project_root_holds_this_package():
    """Test that the project root contains the modules."""
    assert (get_project_root() / "utils.py").exists()


def test_resolve_state_path_default(tmp_path):
    """The state file defaults to the data directory."""
    config = {"database": {"data_dir": str(tmp_path / "state_data")}}

    assert resolve_state_path(config) == tmp_path / "state_data" / "state.yaml"


def test_resolve_state_path_configured(tmp_path):
    """Test a configured state file path."""
    target = tmp_path / "nested" / "sync_state.yaml"

    state_path = resolve_state_path({"sync": {"state_file": str(target)}})

    assert state_path == target
    assert target.parent.exists()
    assert not target.exists()
