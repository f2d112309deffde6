"""
Composition root for the finance sync engine.

``build_sync_engine`` wires one instance of every service around a store, a
provider and an authentication state, and returns them together as a
``SyncEngine``. Nothing is cached at module level, so any number of engines
can coexist in one process.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from account_management import AccountManager
from analytics import AggregationEngine
from auth_state import AuthState
from batch_writer import BatchWriter
from budgeting import AutoBudgetAllocator, BudgetManager
from categorization import CategoryMapper
from config_manager import (
    BudgetSettings,
    InsightSettings,
    InstallationState,
    KeyValueStore,
    SyncSettings,
    YamlKeyValueStore,
)
from data_fetch import DataProvider
from database_ops import DatabaseManager, DocumentStore
from models import utc_now
from sync_orchestrator import SyncOrchestrator
from utils import resolve_state_path

logger = logging.getLogger(__name__)


@dataclass
class SyncEngine:
    """All services for one installation, sharing a store and an auth state."""
    config: Dict[str, Any]
    store: DocumentStore
    auth: AuthState
    state: InstallationState
    mapper: CategoryMapper
    batch_writer: BatchWriter
    accounts: AccountManager
    aggregation: AggregationEngine
    budgets: BudgetManager
    allocator: AutoBudgetAllocator
    orchestrator: SyncOrchestrator

    async def close(self) -> None:
        await self.orchestrator.close()
        if isinstance(self.store, DatabaseManager):
            self.store.close()


def build_sync_engine(
    config: Dict[str, Any],
    provider: DataProvider,
    *,
    store: Optional[DocumentStore] = None,
    auth: Optional[AuthState] = None,
    key_value_store: Optional[KeyValueStore] = None,
    clock: Callable[[], datetime] = utc_now,
    attach: bool = True
) -> SyncEngine:
    """
    Wire every service for one installation.

    Args:
        config: Configuration dictionary (see config_manager.DEFAULT_CONFIG)
        provider: External financial-data provider
        store: Document store (defaults to a DatabaseManager built from config)
        auth: Authentication state (defaults to a signed-out one)
        key_value_store: Persisted state storage (defaults to the YAML state file)
        clock: Returns the current time
        attach: Subscribe the orchestrator to the authentication signal

    Returns:
        SyncEngine holding the wired services
    """
    sync_settings = SyncSettings.from_config(config)
    store = store if store is not None else DatabaseManager.from_config(config)
    auth = auth if auth is not None else AuthState()
    if key_value_store is None:
        key_value_store = YamlKeyValueStore(resolve_state_path(config))
    state = InstallationState(key_value_store)

    mapper = CategoryMapper(store=store, auth=auth)
    batch_writer = BatchWriter(store, headroom=sync_settings.batch_headroom)
    accounts = AccountManager(store, auth, batch_writer)
    aggregation = AggregationEngine(
        store, mapper, auth, batch_writer,
        settings=InsightSettings.from_config(config),
        clock=clock,
    )
    budgets = BudgetManager(store, auth, aggregation=aggregation)
    allocator = AutoBudgetAllocator(
        store, auth, aggregation, batch_writer, budgets,
        settings=BudgetSettings.from_config(config),
        clock=clock,
    )
    orchestrator = SyncOrchestrator(
        auth, provider, accounts, aggregation, allocator, mapper, state,
        settings=sync_settings,
        clock=clock,
    )
    if attach:
        orchestrator.attach()

    logger.info("Sync engine assembled")
    return SyncEngine(
        config=config,
        store=store,
        auth=auth,
        state=state,
        mapper=mapper,
        batch_writer=batch_writer,
        accounts=accounts,
        aggregation=aggregation,
        budgets=budgets,
        allocator=allocator,
        orchestrator=orchestrator,
    )
