import asyncio
import os
from datetime import UTC, date, datetime, timedelta
from typing import List, Optional

import pytest
from cryptography.fernet import Fernet

# Ensure the encryption layer has a deterministic key in test environments so
# config.yaml is not mutated during test runs.
os.environ.setdefault("FINANCE_SYNC_ENCRYPTION_KEY", Fernet.generate_key().decode("utf-8"))

from auth_state import AuthState  # noqa: E402
from database_ops import DatabaseManager  # noqa: E402
from exceptions import StoreWriteError  # noqa: E402
from models import Account, Transaction  # noqa: E402

USER_ID = "user-1"


class FailingStore:
    """
    Wraps a real store, records every batch size, and fails chosen batch commits.

    ``fail_on`` holds zero-based indexes of batch_commit calls that raise.
    """

    def __init__(self, inner: DatabaseManager, fail_on: Optional[set] = None, max_batch_size: Optional[int] = None):
        self.inner = inner
        self.fail_on = set(fail_on or ())
        self.max_batch_size = max_batch_size or inner.max_batch_size
        self.batch_sizes: List[int] = []
        self.calls = 0

    async def batch_commit(self, ops):
        index = self.calls
        self.calls += 1
        if index in self.fail_on:
            raise StoreWriteError("Injected failure", details={"call": index})
        self.batch_sizes.append(len(ops))
        await self.inner.batch_commit(ops)

    async def get(self, path):
        return await self.inner.get(path)

    async def set_merge(self, path, fields):
        await self.inner.set_merge(path, fields)

    async def delete(self, path):
        await self.inner.delete(path)

    async def query(self, collection, filters=None):
        return await self.inner.query(collection, filters)


class FakeProvider:
    """Provider returning fixed snapshots; can block or fail on demand."""

    def __init__(self, accounts=None, transactions=None):
        self.accounts = list(accounts or [])
        self.transactions = list(transactions or [])
        self.account_calls = 0
        self.transaction_calls = 0
        self.block: Optional[asyncio.Event] = None
        self.entered: Optional[asyncio.Event] = None
        self.accounts_error: Optional[Exception] = None
        self.transactions_error: Optional[Exception] = None

    async def fetch_accounts(self):
        self.account_calls += 1
        if self.entered is not None:
            self.entered.set()
        if self.block is not None:
            await self.block.wait()
        if self.accounts_error is not None:
            raise self.accounts_error
        return list(self.accounts)

    async def fetch_transactions(self):
        self.transaction_calls += 1
        if self.transactions_error is not None:
            raise self.transactions_error
        return list(self.transactions)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_txn(
    txn_id: str,
    amount: float,
    on: date = date(2024, 6, 10),
    category: str = "Shopping",
    merchant: str = "",
    account_id: str = "acc-1",
) -> Transaction:
    return Transaction(
        id=txn_id,
        name=merchant or category,
        amount=amount,
        date=on,
        category=category,
        merchant_name=merchant,
        account_id=account_id,
    )


def make_account(account_id: str = "acc-1", balance: float = 1000.0) -> Account:
    return Account(
        id=account_id,
        name=f"Checking {account_id}",
        type="depository",
        balance=balance,
        institution_name="First Bank",
    )


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def db_manager():
    """Provide an in-memory document store with tables created."""
    manager = DatabaseManager("sqlite://")
    manager.create_tables()
    yield manager
    manager.close()


@pytest.fixture
def auth():
    """Authentication state with a signed-in user."""
    return AuthState(USER_ID)


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 6, 15, 12, 0, tzinfo=UTC))


@pytest.fixture
def helpers():
    """Expose factory helpers to test modules."""

    class Helpers:
        USER_ID = USER_ID
        FailingStore = FailingStore
        FakeProvider = FakeProvider
        FixedClock = FixedClock
        make_txn = staticmethod(make_txn)
        make_account = staticmethod(make_account)
        wait_for = staticmethod(wait_for)

    return Helpers
