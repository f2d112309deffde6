"""
Typed entities for the finance sync engine.

Every entity is a plain dataclass. Conversion to and from the loosely typed
document payloads kept by the store happens only here, through
``to_document()`` / ``from_document()``, so the rest of the engine works on
typed records.

Sign convention for transaction amounts: positive = expense, negative = income.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any, Dict, List, Optional

from exceptions import AnalyticsError

CASH_ACCOUNT_ID = "cash"
CASH_ID_PREFIX = "cash-"


def utc_now() -> datetime:
    """Return the current timezone-aware UTC timestamp."""
    return datetime.now(UTC)


def normalize_category_name(name: Optional[str]) -> str:
    """
    Generate the case-insensitive comparison key for a category name.

    Args:
        name: Category name as entered or stored.

    Returns:
        Trimmed, lowercased name (empty string if None).
    """
    if name is None:
        return ""
    return name.strip().lower()


def month_key(value: date) -> str:
    """Return the "YYYY-MM" period key for a date or datetime."""
    return f"{value.year:04d}-{value.month:02d}"


def parse_month_key(key: str) -> date:
    """
    Parse a "YYYY-MM" period key into the first day of that month.

    Raises:
        AnalyticsError: If the key is not a valid month key.
    """
    try:
        year_str, month_str = key.split("-")
        if len(year_str) != 4 or len(month_str) != 2:
            raise ValueError(key)
        return date(int(year_str), int(month_str), 1)
    except (AttributeError, ValueError) as e:
        raise AnalyticsError(
            "Invalid month key",
            details={"month": key},
            original_error=e
        ) from e


def next_month_start(first: date) -> date:
    """Return the first day of the month after ``first``."""
    if first.month == 12:
        return date(first.year + 1, 1, 1)
    return date(first.year, first.month + 1, 1)


def previous_month_key(key: str) -> str:
    """Return the period key of the calendar month before ``key``."""
    first = parse_month_key(key)
    if first.month == 1:
        return f"{first.year - 1:04d}-12"
    return f"{first.year:04d}-{first.month - 1:02d}"


def _parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class Account:
    """
    A financial account delivered by the data provider.

    Attributes:
        id: Stable provider-issued identifier
        name: Display name
        type: Account type (depository, credit, loan, investment, ...)
        balance: Signed current balance
        institution_name: Name of the holding institution
        logo: Optional institution logo token
    """
    id: str
    name: str
    type: str
    balance: float
    institution_name: str
    logo: Optional[str] = None

    @property
    def mask(self) -> str:
        """Last four characters of the identifier, shown in place of the number."""
        return self.id[-4:]

    def to_document(self) -> Dict[str, Any]:
        doc = {
            "name": self.name,
            "type": self.type,
            "balance": float(self.balance),
            "institutionName": self.institution_name,
            "mask": self.mask,
        }
        if self.logo is not None:
            doc["logo"] = self.logo
        return doc

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Account":
        return cls(
            id=doc_id,
            name=data.get("name", ""),
            type=data.get("type", ""),
            balance=float(data.get("balance", 0.0)),
            institution_name=data.get("institutionName", ""),
            logo=data.get("logo"),
        )


@dataclass
class Transaction:
    """
    A single account transaction.

    Provider fields are restated on every sync. The user metadata fields
    (notes, tags, is_hidden, category_override) are only written by explicit
    metadata updates and manual entry, so a re-sync never clears them.

    Attributes:
        id: Provider-issued identifier, or ``cash-<hex>`` for manual entries
        name: Transaction description
        amount: Signed amount (positive = expense, negative = income)
        date: Posting date
        category: Raw category label from the provider
        merchant_name: Merchant name, empty when unknown
        account_id: Owning account identifier
        pending: Whether the transaction is still pending
        notes: Optional free-text notes
        tags: Optional list of user tags
        is_hidden: Whether the user hid the transaction
        category_override: Category chosen by the user, preferred over ``category``
    """
    id: str
    name: str
    amount: float
    date: date
    category: str = ""
    merchant_name: str = ""
    account_id: str = ""
    pending: bool = False
    notes: Optional[str] = None
    tags: Optional[List[str]] = None
    is_hidden: bool = False
    category_override: Optional[str] = None

    @property
    def is_expense(self) -> bool:
        return self.amount > 0

    @property
    def is_income(self) -> bool:
        return self.amount < 0

    @property
    def month(self) -> str:
        return month_key(self.date)

    @property
    def effective_category(self) -> str:
        return self.category_override or self.category

    @classmethod
    def cash(
        cls,
        name: str,
        amount: float,
        on: date,
        category: str,
        notes: Optional[str] = None
    ) -> "Transaction":
        """Create a manually-entered cash transaction with a locally generated id."""
        return cls(
            id=f"{CASH_ID_PREFIX}{uuid.uuid4().hex}",
            name=name,
            amount=float(amount),
            date=on,
            category=category,
            merchant_name=name,
            account_id=CASH_ACCOUNT_ID,
            notes=notes,
        )

    def to_document(self, include_metadata: bool = False) -> Dict[str, Any]:
        """
        Serialize to a store payload.

        Args:
            include_metadata: Also emit notes/tags/isHidden/categoryOverride.
                Sync writes leave this off so user edits survive the merge.
        """
        doc: Dict[str, Any] = {
            "name": self.name,
            "amount": float(self.amount),
            "date": self.date.isoformat(),
            "category": self.category,
            "merchantName": self.merchant_name,
            "accountId": self.account_id,
            "pending": self.pending,
        }
        if include_metadata:
            doc["notes"] = self.notes
            doc["tags"] = list(self.tags) if self.tags is not None else None
            doc["isHidden"] = self.is_hidden
            doc["categoryOverride"] = self.category_override
        return doc

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Transaction":
        tags = data.get("tags")
        return cls(
            id=doc_id,
            name=data.get("name", ""),
            amount=float(data.get("amount", 0.0)),
            date=_parse_date(data["date"]),
            category=data.get("category") or "",
            merchant_name=data.get("merchantName") or "",
            account_id=data.get("accountId") or "",
            pending=bool(data.get("pending", False)),
            notes=data.get("notes"),
            tags=list(tags) if tags is not None else None,
            is_hidden=bool(data.get("isHidden", False)),
            category_override=data.get("categoryOverride") or None,
        )


@dataclass
class BudgetCategory:
    """
    A user-facing budget category.

    Attributes:
        name: Display name, unique per user after normalization
        amount: Budgeted monthly amount (>= 0)
        icon: Icon token
        color: Colour token
        is_essential: Whether the category is a need rather than a want
        id: Store-assigned identifier, None until persisted
    """
    name: str
    amount: float
    icon: str = "circle"
    color: str = "gray"
    is_essential: bool = False
    id: Optional[str] = None

    @property
    def normalized_name(self) -> str:
        return normalize_category_name(self.name)

    def to_document(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "amount": round(float(self.amount), 2),
            "icon": self.icon,
            "color": self.color,
            "isEssential": self.is_essential,
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "BudgetCategory":
        return cls(
            id=doc_id,
            name=data.get("name", ""),
            amount=float(data.get("amount", 0.0)),
            icon=data.get("icon", "circle"),
            color=data.get("color", "gray"),
            is_essential=bool(data.get("isEssential", False)),
        )


@dataclass
class CategoryBudget:
    """Budgeted and spent amounts for one category within a month."""
    budget: float
    spent: float

    def to_document(self) -> Dict[str, float]:
        return {"budget": round(self.budget, 2), "spent": round(self.spent, 2)}


@dataclass
class MonthlyBudget:
    """
    Budget usage for one calendar month, always written as a single document.

    Attributes:
        month: "YYYY-MM" key
        total_budget: Sum of all category budgets
        total_spent: Sum of expenses for the month
        categories: Category id -> budget/spent pair
    """
    month: str
    total_budget: float
    total_spent: float
    categories: Dict[str, CategoryBudget] = field(default_factory=dict)

    def to_document(self) -> Dict[str, Any]:
        return {
            "totalBudget": round(self.total_budget, 2),
            "totalSpent": round(self.total_spent, 2),
            "categories": {
                category_id: usage.to_document()
                for category_id, usage in self.categories.items()
            },
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "MonthlyBudget":
        return cls(
            month=doc_id,
            total_budget=float(data.get("totalBudget", 0.0)),
            total_spent=float(data.get("totalSpent", 0.0)),
            categories={
                category_id: CategoryBudget(
                    budget=float(usage.get("budget", 0.0)),
                    spent=float(usage.get("spent", 0.0)),
                )
                for category_id, usage in (data.get("categories") or {}).items()
            },
        )


@dataclass
class CategorySpending:
    """Total spend for one canonical category."""
    category: str
    amount: float


@dataclass
class MonthlySummary:
    """
    Snapshot of one month's cash flow.

    Attributes:
        month: "YYYY-MM" key
        income: Sign-flipped sum of negative amounts
        expenses: Sum of positive amounts
        savings_rate: (income - expenses) / income * 100, or 0 when income is 0
        top_categories: Highest-spend categories, descending
        monthly_change: Percentage change in expenses vs. the previous month
    """
    month: str
    income: float
    expenses: float
    savings_rate: float
    top_categories: List[CategorySpending] = field(default_factory=list)
    monthly_change: float = 0.0

    def to_document(self) -> Dict[str, Any]:
        return {
            "income": round(self.income, 2),
            "expenses": round(self.expenses, 2),
            "savingsRate": round(self.savings_rate, 4),
            "topCategories": [
                {"category": item.category, "amount": round(item.amount, 2)}
                for item in self.top_categories
            ],
            "monthlyChange": round(self.monthly_change, 4),
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "MonthlySummary":
        return cls(
            month=doc_id,
            income=float(data.get("income", 0.0)),
            expenses=float(data.get("expenses", 0.0)),
            savings_rate=float(data.get("savingsRate", 0.0)),
            top_categories=[
                CategorySpending(category=item["category"], amount=float(item["amount"]))
                for item in data.get("topCategories", [])
            ],
            monthly_change=float(data.get("monthlyChange", 0.0)),
        )


@dataclass
class SavingsTip:
    """A heuristic savings recommendation."""
    title: str
    description: str
    category: str
    potential_savings: float
    created_at: datetime = field(default_factory=utc_now)

    def to_document(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "potentialSavings": round(self.potential_savings, 2),
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "SavingsTip":
        return cls(
            title=data.get("title", ""),
            description=data.get("description", ""),
            category=data.get("category", ""),
            potential_savings=float(data.get("potentialSavings", 0.0)),
            created_at=_parse_timestamp(data["createdAt"]) if data.get("createdAt") else utc_now(),
        )


@dataclass
class CategoryMapping:
    """A user override mapping a raw provider label to a canonical category."""
    raw_category: str
    canonical_category: str

    def to_document(self) -> Dict[str, Any]:
        return {
            "rawCategory": self.raw_category,
            "canonicalCategory": self.canonical_category,
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "CategoryMapping":
        return cls(
            raw_category=data.get("rawCategory", doc_id),
            canonical_category=data.get("canonicalCategory", ""),
        )


@dataclass
class BudgetSettingsRecord:
    """
    Per-user budget preferences stored at ``budget/settings``.

    Attributes:
        start_day: Day of month the budget period starts (1-28)
        savings_goal_percentage: Target share of income to save (0-100)
        notifications_enabled: Whether overspend notifications are on
    """
    start_day: int = 1
    savings_goal_percentage: float = 20.0
    notifications_enabled: bool = True

    def to_document(self) -> Dict[str, Any]:
        return {
            "startDay": self.start_day,
            "savingsGoalPercentage": self.savings_goal_percentage,
            "notificationsEnabled": self.notifications_enabled,
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "BudgetSettingsRecord":
        return cls(
            start_day=int(data.get("startDay", 1)),
            savings_goal_percentage=float(data.get("savingsGoalPercentage", 20.0)),
            notifications_enabled=bool(data.get("notificationsEnabled", True)),
        )
