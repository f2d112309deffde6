"""
Tests for wiring complete engines from configuration.
"""

import copy

import pytest

from auth_state import AuthState
from config_manager import DEFAULT_CONFIG
from data_fetch import StaticDataProvider
from database_ops import DatabaseManager
from sync_engine import build_sync_engine


def _config(tmp_path, name):
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["database"]["connection_string"] = f"sqlite:///{(tmp_path / f'{name}.db').as_posix()}"
    config["sync"]["state_file"] = str(tmp_path / f"{name}_state.yaml")
    return config


@pytest.mark.asyncio
async def test_engine_from_config_persists_state(tmp_path, monkeypatch, helpers):
    """Test building an engine from configuration with a state file."""
    monkeypatch.delenv("FINANCE_SYNC_DATABASE_URL", raising=False)
    provider = StaticDataProvider([helpers.make_account()], [helpers.make_txn("t1", 10.0)])
    engine = build_sync_engine(_config(tmp_path, "main"), provider, auth=AuthState(helpers.USER_ID), attach=False)
    try:
        assert isinstance(engine.store, DatabaseManager)
        assert engine.batch_writer.batch_size == 450

        result = await engine.orchestrator.perform_full_sync()

        assert result.succeeded
        assert (tmp_path / "main_state.yaml").exists()
        assert engine.state.last_sync_time(helpers.USER_ID) is not None
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_engines_are_isolated(tmp_path, monkeypatch, helpers):
    """Two engines in one process do not share state."""
    monkeypatch.delenv("FINANCE_SYNC_DATABASE_URL", raising=False)
    first = build_sync_engine(
        _config(tmp_path, "first"), StaticDataProvider([helpers.make_account()]),
        auth=AuthState("alice"), attach=False,
    )
    second = build_sync_engine(
        _config(tmp_path, "second"), StaticDataProvider(),
        auth=AuthState("bob"), attach=False,
    )
    try:
        await first.orchestrator.perform_full_sync()

        assert first.orchestrator.last_sync_time is not None
        assert second.orchestrator.last_sync_time is None
        assert second.state.last_sync_time("alice") is None
        assert await second.accounts.list_accounts() == []
        assert first.mapper is not second.mapper
    finally:
        await first.close()
        await second.close()
