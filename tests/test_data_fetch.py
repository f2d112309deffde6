import pytest

from data_fetch import StaticDataProvider, fetch_accounts, fetch_transactions
from exceptions import ProviderError


class BrokenProvider:
    async def fetch_accounts(self):
        raise ConnectionError("network down")

    async def fetch_transactions(self):
        raise ProviderError("token expired")


class TestDataFetch:
    """Test provider calls."""

    @pytest.mark.asyncio
    async def test_empty_snapshots_are_valid(self):
        """Test that a provider returning nothing is not an error."""
        provider = StaticDataProvider()

        assert await fetch_accounts(provider) == []
        assert await fetch_transactions(provider) == []

    @pytest.mark.asyncio
    async def test_unexpected_errors_become_provider_errors(self):
        """Unexpected provider exceptions are wrapped in ProviderError."""
        with pytest.raises(ProviderError) as excinfo:
            await fetch_accounts(BrokenProvider())
        assert isinstance(excinfo.value.original_error, ConnectionError)

    @pytest.mark.asyncio
    async def test_provider_errors_pass_through(self):
        """Test that a ProviderError is re-raised unchanged."""
        with pytest.raises(ProviderError, match="token expired"):
            await fetch_transactions(BrokenProvider())
