"""
Data fetching module for the external financial-data provider.

The provider client itself lives outside this package; anything with
``fetch_accounts`` and ``fetch_transactions`` coroutines can be plugged in.
The helpers here are the only place provider calls are made, so every
provider failure reaches the engine as a ProviderError.
"""

import logging
from typing import List, Optional, Protocol

from exceptions import ProviderError
from models import Account, Transaction

logger = logging.getLogger(__name__)


class DataProvider(Protocol):
    """Source of account and transaction snapshots."""

    async def fetch_accounts(self) -> List[Account]: ...

    async def fetch_transactions(self) -> List[Transaction]: ...


class StaticDataProvider:
    """
    Provider serving fixed snapshots.

    Useful for manual entry flows and for replaying exported data.
    """

    def __init__(
        self,
        accounts: Optional[List[Account]] = None,
        transactions: Optional[List[Transaction]] = None
    ):
        self.accounts = list(accounts or [])
        self.transactions = list(transactions or [])

    async def fetch_accounts(self) -> List[Account]:
        return list(self.accounts)

    async def fetch_transactions(self) -> List[Transaction]:
        return list(self.transactions)


async def fetch_accounts(provider: DataProvider) -> List[Account]:
    """
    Fetch the account snapshot from the provider.

    An empty list is a valid result.

    Raises:
        ProviderError: If the provider call fails for any reason
    """
    try:
        accounts = await provider.fetch_accounts()
    except ProviderError:
        raise
    except Exception as e:
        logger.error(f"Provider failed to deliver accounts: {e}")
        raise ProviderError("Failed to fetch accounts", original_error=e) from e
    logger.info(f"Fetched {len(accounts)} accounts from provider")
    return list(accounts or [])


async def fetch_transactions(provider: DataProvider) -> List[Transaction]:
    """
    Fetch the transaction snapshot from the provider.

    Raises:
        ProviderError: If the provider call fails for any reason
    """
    try:
        transactions = await provider.fetch_transactions()
    except ProviderError:
        raise
    except Exception as e:
        logger.error(f"Provider failed to deliver transactions: {e}")
        raise ProviderError("Failed to fetch transactions", original_error=e) from e
    logger.info(f"Fetched {len(transactions)} transactions from provider")
    return list(transactions or [])
