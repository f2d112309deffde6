"""
Sync orchestration for the finance sync engine.

SyncOrchestrator owns the sync lifecycle for the signed-in user: it pulls
account and transaction snapshots from the provider, writes them through the
batch writer, refreshes monthly summaries and budget usage, and publishes
observable status (``is_syncing``, ``sync_progress``, ``last_sync_error``,
``last_sync_time``) to subscribed listeners.

Phases run in a fixed order, each awaited before the next:

    accounts [0, 0.3) -> transactions [0.3, 0.7) -> summaries -> budget usage [0.7, 1.0]

A failed phase aborts the rest of the run; writes already committed stay
committed. Only one run can be in flight at a time. ``force_sync_now`` asks
the in-flight run to stop at its next batch or phase boundary and waits for
it to finish before starting, so two runs never write concurrently.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from account_management import AccountManager
from analytics import AggregationEngine
from auth_state import AuthState
from budgeting import AutoBudgetAllocator, BudgetRecommendation
from categorization import CategoryMapper
from config_manager import InstallationState, SyncSettings
from data_fetch import DataProvider, fetch_accounts, fetch_transactions
from exceptions import FinanceSyncError, NotAuthenticatedError, StoreError, SyncCancelledError
from models import utc_now

logger = logging.getLogger(__name__)

# (base, span) of each phase within the overall 0 -> 1 progress value
ACCOUNTS_PROGRESS = (0.0, 0.3)
TRANSACTIONS_PROGRESS = (0.3, 0.4)
SUMMARIES_PROGRESS = (0.7, 0.15)
BUDGET_PROGRESS = (0.85, 0.15)

Completion = Callable[[bool], None]


class SyncPhase(enum.Enum):
    IDLE = "idle"
    ACCOUNTS = "accounts"
    TRANSACTIONS = "transactions"
    SUMMARIES = "summaries"
    BUDGET = "budget"


class SyncOutcome(enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED_IN_FLIGHT = "skipped_in_flight"
    SKIPPED_RECENT = "skipped_recent"
    CANCELLED = "cancelled"


@dataclass
class SyncResult:
    """
    Outcome of one sync request.

    Attributes:
        outcome: What happened
        error: The error that failed the run, if any
        phase: Phase that was running when the run failed or was cancelled
        accounts_synced: Number of accounts written
        transactions_synced: Number of transactions written
    """
    outcome: SyncOutcome
    error: Optional[Exception] = None
    phase: Optional[SyncPhase] = None
    accounts_synced: int = 0
    transactions_synced: int = 0

    @property
    def succeeded(self) -> bool:
        return self.outcome is SyncOutcome.SUCCESS

    @property
    def skipped(self) -> bool:
        return self.outcome in (SyncOutcome.SKIPPED_IN_FLIGHT, SyncOutcome.SKIPPED_RECENT)


@dataclass(frozen=True)
class SyncStatus:
    """Snapshot of the orchestrator's observable state."""
    is_syncing: bool
    phase: SyncPhase
    sync_progress: float
    last_sync_error: Optional[Exception]
    last_sync_time: Optional[datetime]


StatusListener = Callable[[SyncStatus], None]


class SyncOrchestrator:
    """
    Drives full syncs for the signed-in user.

    Construct one per session context; nothing here is process-global, so
    several orchestrators can run side by side (e.g. in tests).
    """

    def __init__(
        self,
        auth: AuthState,
        provider: DataProvider,
        accounts: AccountManager,
        aggregation: AggregationEngine,
        allocator: AutoBudgetAllocator,
        mapper: CategoryMapper,
        state: InstallationState,
        settings: Optional[SyncSettings] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize the orchestrator.

        Args:
            auth: Authentication state; its signal starts and stops the timer
            provider: External data provider
            accounts: Account/transaction persistence
            aggregation: Summary and budget-usage refresh
            allocator: Budget recommendation
            mapper: Category mapper whose overrides follow the signed-in user
            state: Persisted last-sync time and migration flag
            settings: Interval and batching settings
            clock: Returns the current time
        """
        self.auth = auth
        self.provider = provider
        self.accounts = accounts
        self.aggregation = aggregation
        self.allocator = allocator
        self.mapper = mapper
        self.state = state
        self.settings = settings or SyncSettings()
        self.clock = clock

        self._is_syncing = False
        self._phase = SyncPhase.IDLE
        self._progress = 0.0
        self._last_sync_error: Optional[Exception] = None
        self._last_sync_time: Optional[datetime] = None
        self._cancel_requested = False
        self._run_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._force_lock = asyncio.Lock()
        self._listeners: List[StatusListener] = []
        self._unsubscribe_auth: Optional[Callable[[], None]] = None

    # Observable state

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def sync_progress(self) -> float:
        return self._progress

    @property
    def last_sync_error(self) -> Optional[Exception]:
        return self._last_sync_error

    @property
    def last_sync_time(self) -> Optional[datetime]:
        return self._last_sync_time

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def timer_running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    @property
    def status(self) -> SyncStatus:
        return SyncStatus(
            is_syncing=self._is_syncing,
            phase=self._phase,
            sync_progress=self._progress,
            last_sync_error=self._last_sync_error,
            last_sync_time=self._last_sync_time,
        )

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """
        Register a listener called with a SyncStatus on every change.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        status = self.status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Sync status listener failed")

    def _report_progress(self, value: float) -> None:
        self._progress = min(max(self._progress, value), 1.0)
        self._notify()

    def _enter_phase(self, phase: SyncPhase) -> None:
        self._check_cancel()
        self._phase = phase
        logger.debug(f"Sync phase: {phase.value}")
        self._notify()

    def _should_cancel(self) -> bool:
        return self._cancel_requested

    def _check_cancel(self) -> None:
        if self._cancel_requested:
            raise SyncCancelledError("Sync cancelled", details={"phase": self._phase.value})

    # Sync lifecycle

    def _gate_closed(self, user_id: str) -> bool:
        last = self.state.last_sync_time(user_id)
        if last is None:
            return False
        elapsed = (self.clock() - last).total_seconds()
        return elapsed < self.settings.min_interval_seconds

    async def perform_full_sync(
        self,
        force: bool = False,
        completion: Optional[Completion] = None
    ) -> SyncResult:
        """
        Run a full sync unless one is in flight or the last one is too recent.

        Args:
            force: Bypass the minimum-interval gate (never the single-flight guard)
            completion: Called with True when the sync ran and succeeded

        Returns:
            SyncResult describing the outcome
        """
        result = await self._start_sync(force)
        if completion is not None:
            completion(result.succeeded)
        return result

    async def _start_sync(self, force: bool) -> SyncResult:
        if self._is_syncing:
            logger.info("Sync already in progress; request skipped")
            return SyncResult(SyncOutcome.SKIPPED_IN_FLIGHT)

        try:
            user_id = self.auth.require_user_id()
        except NotAuthenticatedError as e:
            logger.warning("Sync requested without an authenticated user")
            self._last_sync_error = e
            self._notify()
            return SyncResult(SyncOutcome.FAILED, error=e)

        if not force and self._gate_closed(user_id):
            logger.info("Last sync is more recent than the minimum interval; request skipped")
            return SyncResult(SyncOutcome.SKIPPED_RECENT)

        # Flag is set before the first await so a concurrent request sees it.
        self._is_syncing = True
        self._cancel_requested = False
        self._progress = 0.0
        self._last_sync_error = None
        self._phase = SyncPhase.ACCOUNTS
        self._notify()

        task = asyncio.create_task(self._run_phases(user_id))
        self._run_task = task
        return await asyncio.shield(task)

    async def _run_phases(self, user_id: str) -> SyncResult:
        logger.info(f"Starting full sync for user {user_id}")
        accounts_synced = 0
        transactions_synced = 0
        try:
            self._enter_phase(SyncPhase.ACCOUNTS)
            accounts = await fetch_accounts(self.provider)
            self._check_cancel()
            base, span = ACCOUNTS_PROGRESS
            await self.accounts.sync_accounts(
                accounts, progress=self._report_progress, base=base, span=span,
                should_cancel=self._should_cancel,
            )
            accounts_synced = len(accounts)

            self._enter_phase(SyncPhase.TRANSACTIONS)
            transactions = await fetch_transactions(self.provider)
            self._check_cancel()
            base, span = TRANSACTIONS_PROGRESS
            await self.accounts.sync_transactions(
                transactions, progress=self._report_progress, base=base, span=span,
                should_cancel=self._should_cancel,
            )
            transactions_synced = len(transactions)

            self._enter_phase(SyncPhase.SUMMARIES)
            base, span = SUMMARIES_PROGRESS
            # Stored copies carry user category overrides and cash entries.
            stored = await self.accounts.list_transactions()
            self._check_cancel()
            await self.aggregation.refresh_monthly_summaries(
                stored, progress=self._report_progress, base=base, span=span,
                should_cancel=self._should_cancel,
            )

            self._enter_phase(SyncPhase.BUDGET)
            await self.aggregation.refresh_budget_usage()
            base, span = BUDGET_PROGRESS
            self._report_progress(base + span)

            completed_at = self.clock()
            self.state.set_last_sync_time(user_id, completed_at)
            self._last_sync_time = completed_at
            logger.info(
                f"Sync completed: {accounts_synced} accounts, {transactions_synced} transactions"
            )
            return SyncResult(
                SyncOutcome.SUCCESS,
                accounts_synced=accounts_synced,
                transactions_synced=transactions_synced,
            )
        except SyncCancelledError:
            logger.info(f"Sync cancelled during {self._phase.value} phase")
            self._progress = 0.0
            return SyncResult(
                SyncOutcome.CANCELLED,
                phase=self._phase,
                accounts_synced=accounts_synced,
                transactions_synced=transactions_synced,
            )
        except Exception as e:
            logger.error(f"Sync failed during {self._phase.value} phase: {e}", exc_info=not isinstance(e, FinanceSyncError))
            self._last_sync_error = e
            self._progress = 0.0
            return SyncResult(
                SyncOutcome.FAILED,
                error=e,
                phase=self._phase,
                accounts_synced=accounts_synced,
                transactions_synced=transactions_synced,
            )
        finally:
            self._is_syncing = False
            self._phase = SyncPhase.IDLE
            self._cancel_requested = False
            self._notify()

    async def force_sync_now(self, completion: Optional[Completion] = None) -> SyncResult:
        """
        Start a forced sync, stopping any in-flight run first.

        The in-flight run is asked to stop at its next batch or phase
        boundary and is awaited to completion, so its writes never overlap
        with the new run's. Concurrent force requests queue behind each other.
        """
        async with self._force_lock:
            task = self._run_task
            if task is not None and not task.done():
                logger.info("Force sync requested; stopping in-flight sync")
                self._cancel_requested = True
                await asyncio.wait([task])
            return await self.perform_full_sync(force=True, completion=completion)

    def request_cancel(self) -> None:
        """Ask the in-flight run, if any, to stop at its next boundary."""
        if self._is_syncing:
            self._cancel_requested = True

    async def wait_until_idle(self) -> None:
        """Wait for the in-flight run, if any, to finish."""
        task = self._run_task
        if task is not None and not task.done():
            await asyncio.wait([task])

    # User-initiated operations with completion callbacks

    async def update_transaction_details(
        self,
        transaction_id: str,
        notes: Optional[str] = None,
        tags: Optional[List[str]] = None,
        is_hidden: Optional[bool] = None,
        completion: Optional[Completion] = None
    ) -> bool:
        """Merge notes/tags/hidden flag into a transaction; reports success."""
        try:
            await self.accounts.update_transaction_details(
                transaction_id, notes=notes, tags=tags, is_hidden=is_hidden
            )
            succeeded = True
        except FinanceSyncError as e:
            logger.error(f"Failed to update transaction {transaction_id}: {e}")
            succeeded = False
        if completion is not None:
            completion(succeeded)
        return succeeded

    async def update_transaction_category(
        self,
        transaction_id: str,
        category: str,
        completion: Optional[Completion] = None
    ) -> bool:
        """Override a transaction's category, then refresh this month's budget usage."""
        try:
            await self.accounts.update_transaction_category(transaction_id, category)
            await self.aggregation.refresh_budget_usage()
            succeeded = True
        except FinanceSyncError as e:
            logger.error(f"Failed to update category of transaction {transaction_id}: {e}")
            succeeded = False
        if completion is not None:
            completion(succeeded)
        return succeeded

    async def generate_recommended_budget(
        self,
        monthly_income: Optional[float],
        completion: Optional[Completion] = None
    ) -> Optional[BudgetRecommendation]:
        """
        Recommend and apply a budget from stored transaction history.

        Returns:
            The applied recommendation, or None on failure
        """
        try:
            transactions = await self.accounts.list_transactions()
            recommendation = await self.allocator.generate_recommended_budget(
                monthly_income, transactions
            )
        except FinanceSyncError as e:
            logger.error(f"Failed to generate recommended budget: {e}")
            recommendation = None
        if completion is not None:
            completion(recommendation is not None)
        return recommendation

    # Authentication signal and periodic timer

    def attach(self) -> None:
        """Follow the authentication signal: sign-in starts the timer, sign-out stops it."""
        if self._unsubscribe_auth is None:
            self._unsubscribe_auth = self.auth.subscribe(self._on_auth_changed)

    def detach(self) -> None:
        if self._unsubscribe_auth is not None:
            self._unsubscribe_auth()
            self._unsubscribe_auth = None

    async def _on_auth_changed(self, user_id: Optional[str]) -> None:
        if user_id is None:
            self._handle_sign_out()
        else:
            await self._handle_sign_in(user_id)

    async def _handle_sign_in(self, user_id: str) -> None:
        self._last_sync_time = self.state.last_sync_time(user_id)
        self._last_sync_error = None
        try:
            await self.mapper.load_overrides()
        except StoreError as e:
            logger.warning(f"Could not load category mapping overrides: {e}")
        self._notify()
        self.start_sync_timer()

    def _handle_sign_out(self) -> None:
        self.stop_sync_timer()
        self.request_cancel()
        self.mapper.clear_overrides()
        self._last_sync_time = None
        self._last_sync_error = None
        self._notify()

    async def run_scheduled_sync(self) -> SyncResult:
        """
        One timer tick.

        A user who has not completed the initial migration gets a forced
        sync; the flag is set only when that sync succeeds.
        """
        user_id = self.auth.current_user_id
        if user_id is not None and not self.state.has_completed_migration(user_id):
            logger.info(f"Running initial migration sync for user {user_id}")
            result = await self.perform_full_sync(force=True)
            if result.succeeded:
                self.state.mark_migration_complete(user_id)
            return result
        return await self.perform_full_sync()

    async def _timer_loop(self) -> None:
        while self.auth.is_authenticated:
            try:
                await self.run_scheduled_sync()
            except FinanceSyncError as e:
                logger.error(f"Scheduled sync could not start: {e}")
            await asyncio.sleep(self.settings.min_interval_seconds)

    def start_sync_timer(self) -> None:
        """Start the periodic sync timer; a running timer is left as is."""
        if self.timer_running:
            return
        self._timer_task = asyncio.create_task(self._timer_loop())
        logger.info(f"Sync timer started (every {self.settings.min_interval_seconds:.0f}s)")

    def stop_sync_timer(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
            logger.info("Sync timer stopped")

    async def close(self) -> None:
        """Stop the timer, stop any in-flight run, and detach from the auth signal."""
        timer = self._timer_task
        self.stop_sync_timer()
        if timer is not None:
            await asyncio.wait([timer])
        self.request_cancel()
        await self.wait_until_idle()
        await self.mapper.flush()
        self.detach()
