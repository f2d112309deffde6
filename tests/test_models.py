"""
Tests for typed entities and their store payloads.
"""

from datetime import UTC, date, datetime

import pytest

from exceptions import AnalyticsError
from models import (
    Account,
    BudgetCategory,
    MonthlySummary,
    CategorySpending,
    SavingsTip,
    Transaction,
    month_key,
    next_month_start,
    normalize_category_name,
    parse_month_key,
    previous_month_key,
)


class TestPeriodHelpers:
    """Test month key helpers."""

    def test_month_key(self):
        """Test formatting dates as month keys."""
        assert month_key(date(2024, 6, 30)) == "2024-06"
        assert month_key(datetime(2024, 1, 1, 23, 59, tzinfo=UTC)) == "2024-01"

    @pytest.mark.parametrize("key", ["2024-6", "June", "", "2024-13", None])
    def test_invalid_month_key(self, key):
        """Malformed month keys raise AnalyticsError."""
        with pytest.raises(AnalyticsError):
            parse_month_key(key)

    def test_month_boundaries(self):
        """Test month arithmetic across year boundaries."""
        assert previous_month_key("2024-01") == "2023-12"
        assert previous_month_key("2024-06") == "2024-05"
        assert next_month_start(date(2024, 12, 1)) == date(2025, 1, 1)

    def test_normalize_category_name(self):
        """Test the category comparison key."""
        assert normalize_category_name("  Dining Out ") == "dining out"
        assert normalize_category_name(None) == ""


class TestTransaction:
    """Test transaction payloads."""

    def test_sync_payload_omits_user_metadata(self):
        """Sync payloads leave user metadata out."""
        txn = Transaction(
            "t1", "Coffee", 4.5, date(2024, 6, 1),
            notes="x", tags=["a"], is_hidden=True, category_override="Dining Out"
        )

        doc = txn.to_document()

        assert doc["date"] == "2024-06-01"
        assert "notes" not in doc
        assert "isHidden" not in doc
        assert "categoryOverride" not in doc
        assert txn.to_document(include_metadata=True)["tags"] == ["a"]

    def test_from_document(self):
        """Test reading a transaction from a stored document."""
        txn = Transaction.from_document("t1", {
            "name": "Salary", "amount": -2500, "date": "2024-06-01T00:00:00",
            "category": "Payroll", "accountId": "acc-1", "isHidden": True,
            "categoryOverride": "Salary",
        })

        assert txn.is_income
        assert not txn.is_expense
        assert txn.date == date(2024, 6, 1)
        assert txn.month == "2024-06"
        assert txn.is_hidden is True
        assert txn.tags is None
        assert txn.category == "Payroll"
        assert txn.effective_category == "Salary"

    def test_cash_transaction_ids_are_unique(self):
        """Each cash transaction gets its own id."""
        first = Transaction.cash("Market", 10, date(2024, 6, 1), "Groceries")
        second = Transaction.cash("Market", 10, date(2024, 6, 1), "Groceries")

        assert first.id != second.id
        assert first.account_id == "cash"


class TestOtherEntities:
    """Test the remaining entity payloads."""

    def test_account_payload_masks_id(self):
        """Test the account mask and institution fields."""
        doc = Account("acc-123456", "Checking", "depository", 10.0, "Bank").to_document()

        assert doc["mask"] == "3456"
        assert doc["institutionName"] == "Bank"

    def test_budget_category_round_trip(self):
        """Budget categories round the amount to cents."""
        category = BudgetCategory(name="Housing", amount=1250.004, icon="house.fill", is_essential=True)

        restored = BudgetCategory.from_document("c1", category.to_document())

        assert restored.id == "c1"
        assert restored.amount == 1250.0
        assert restored.is_essential is True

    def test_monthly_summary_payload(self):
        """Test the monthly summary document layout."""
        summary = MonthlySummary(
            "2024-06", 4000.0, 1200.0, 70.0,
            top_categories=[CategorySpending("Housing", 1000.0)],
        )

        doc = summary.to_document()
        restored = MonthlySummary.from_document("2024-06", doc)

        assert doc["savingsRate"] == 70.0
        assert doc["topCategories"] == [{"category": "Housing", "amount": 1000.0}]
        assert restored.top_categories[0].category == "Housing"

    def test_savings_tip_timestamp(self):
        """Tips keep their creation time through a round trip."""
        created = datetime(2024, 6, 15, 12, 0, tzinfo=UTC)
        tip = SavingsTip("Title", "Body", "Dining Out", 12.5, created_at=created)

        restored = SavingsTip.from_document("tip-1", tip.to_document())

        assert restored.created_at == created
        assert restored.potential_savings == 12.5
