"""
Budgeting module for budget categories and recommended budget allocation.

BudgetManager owns per-user budget category CRUD and budget preferences.
AutoBudgetAllocator derives recommended category amounts from spending
history and income, merges them against the user's existing categories, and
writes the whole merge in a single batch.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, List, Optional, Sequence, Tuple, Union

from analytics import AggregationEngine
from auth_state import AuthState
from batch_writer import BatchResult, BatchWriter
from categorization import (
    INCOME_CATEGORY,
    budgetable_categories,
    category_color,
    category_icon,
    get_predefined_category,
    is_essential_category,
)
from config_manager import BudgetSettings
from database_ops import (
    BUDGET,
    BUDGET_CATEGORIES,
    BUDGET_SETTINGS_ID,
    DocumentStore,
    WriteOp,
    collection_path,
    document_path,
    new_document_id,
)
from exceptions import NotFoundError, ValidationError
from models import (
    BudgetCategory,
    BudgetSettingsRecord,
    MonthlyBudget,
    Transaction,
    month_key,
    normalize_category_name,
    utc_now,
)

# Configure logging
logger = logging.getLogger(__name__)


class BudgetManager:
    """
    Manages budget categories and budget preferences for the signed-in user.

    Category names are unique per user after trimming and lowercasing.
    When an aggregation engine is supplied, the current month's budget usage
    is recomputed after every category change.
    """

    def __init__(
        self,
        store: DocumentStore,
        auth: AuthState,
        aggregation: Optional[AggregationEngine] = None
    ):
        """
        Initialize the budget manager.

        Args:
            store: Document store
            auth: Authentication state
            aggregation: Optional engine used to refresh budget usage after changes
        """
        self.store = store
        self.auth = auth
        self.aggregation = aggregation
        logger.info("Budget manager initialized")

    @staticmethod
    def _normalize_category(category: Optional[str]) -> str:
        """
        Normalize category names by stripping whitespace.

        Args:
            category: Raw category name.

        Returns:
            Normalized category string (empty string if None).
        """
        if category is None:
            return ""
        return category.strip()

    async def _refresh_usage(self) -> None:
        if self.aggregation is not None:
            await self.aggregation.refresh_budget_usage()

    async def list_categories(self) -> List[BudgetCategory]:
        user_id = self.auth.require_user_id()
        documents = await self.store.query(collection_path(user_id, BUDGET_CATEGORIES))
        categories = [BudgetCategory.from_document(doc.id, doc.data) for doc in documents]
        return sorted(categories, key=lambda category: category.normalized_name)

    async def get_category(self, category_id: str) -> BudgetCategory:
        """
        Fetch one category.

        Raises:
            NotFoundError: If the category does not exist
        """
        user_id = self.auth.require_user_id()
        data = await self.store.get(document_path(user_id, BUDGET_CATEGORIES, category_id))
        if data is None:
            raise NotFoundError("Budget category not found", details={"category_id": category_id})
        return BudgetCategory.from_document(category_id, data)

    async def create_category(
        self,
        name: str,
        amount: float,
        icon: Optional[str] = None,
        color: Optional[str] = None,
        is_essential: Optional[bool] = None
    ) -> BudgetCategory:
        """
        Create a budget category.

        Icon, colour and essential flag default to the catalog values for
        known names and to the custom-category defaults otherwise.

        Args:
            name: Category name
            amount: Budgeted monthly amount
            icon: Optional icon token
            color: Optional colour token
            is_essential: Optional essential flag

        Returns:
            The created category with its store-assigned id

        Raises:
            ValidationError: If the name is empty or already used, or the amount is negative
        """
        user_id = self.auth.require_user_id()
        normalized = self._normalize_category(name)
        if not normalized:
            raise ValidationError("Category name is required")
        if amount < 0:
            raise ValidationError("Budget amount cannot be negative", details={"amount": amount})

        existing = await self.list_categories()
        key = normalize_category_name(normalized)
        if any(category.normalized_name == key for category in existing):
            raise ValidationError("A category with this name already exists", details={"name": normalized})

        category = BudgetCategory(
            name=normalized,
            amount=round(float(amount), 2),
            icon=icon or category_icon(normalized),
            color=color or category_color(normalized),
            is_essential=is_essential_category(normalized) if is_essential is None else is_essential,
            id=new_document_id(),
        )
        await self.store.batch_commit([
            WriteOp.replace(document_path(user_id, BUDGET_CATEGORIES, category.id), category.to_document())
        ])
        logger.info(f"Created budget category '{category.name}': ${category.amount:.2f}")
        await self._refresh_usage()
        return category

    async def update_category_amount(self, category_id: str, amount: float) -> BudgetCategory:
        """
        Change only the budgeted amount of a category.

        Raises:
            ValidationError: If the amount is negative
            NotFoundError: If the category does not exist
        """
        if amount < 0:
            raise ValidationError("Budget amount cannot be negative", details={"amount": amount})
        category = await self.get_category(category_id)
        category.amount = round(float(amount), 2)
        user_id = self.auth.require_user_id()
        await self.store.set_merge(
            document_path(user_id, BUDGET_CATEGORIES, category_id),
            {"amount": category.amount}
        )
        logger.info(f"Updated budget category '{category.name}' to ${category.amount:.2f}")
        await self._refresh_usage()
        return category

    async def delete_category(self, category_id: str) -> None:
        """
        Delete a category.

        Raises:
            NotFoundError: If the category does not exist
        """
        category = await self.get_category(category_id)
        user_id = self.auth.require_user_id()
        await self.store.delete(document_path(user_id, BUDGET_CATEGORIES, category_id))
        logger.info(f"Deleted budget category '{category.name}'")
        await self._refresh_usage()

    async def get_budget_settings(self) -> BudgetSettingsRecord:
        user_id = self.auth.require_user_id()
        data = await self.store.get(document_path(user_id, BUDGET, BUDGET_SETTINGS_ID))
        return BudgetSettingsRecord.from_document(BUDGET_SETTINGS_ID, data or {})

    async def save_budget_settings(self, settings: BudgetSettingsRecord) -> None:
        """
        Persist budget preferences.

        Raises:
            ValidationError: If the start day is outside 1-28 or the savings goal outside 0-100
        """
        if not 1 <= settings.start_day <= 28:
            raise ValidationError("Budget start day must be between 1 and 28",
                                  details={"start_day": settings.start_day})
        if not 0 <= settings.savings_goal_percentage <= 100:
            raise ValidationError("Savings goal must be between 0 and 100 percent",
                                  details={"savings_goal_percentage": settings.savings_goal_percentage})
        user_id = self.auth.require_user_id()
        await self.store.set_merge(document_path(user_id, BUDGET, BUDGET_SETTINGS_ID), settings.to_document())

    async def get_monthly_budget(self, month: str) -> Optional[MonthlyBudget]:
        user_id = self.auth.require_user_id()
        data = await self.store.get(document_path(user_id, BUDGET, month))
        return MonthlyBudget.from_document(month, data) if data else None


@dataclass
class BudgetRecommendation:
    """
    Recommended category amounts.

    Attributes:
        categories: Recommended categories (no ids)
        monthly_income: Income the percentage table was applied to
        used_default_income: True when income was unknown and the placeholder was used
        warnings: Human-readable notes the caller should surface
    """
    categories: List[BudgetCategory]
    monthly_income: float
    used_default_income: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def total(self) -> float:
        return round(sum(category.amount for category in self.categories), 2)


@dataclass
class BudgetPlan:
    """
    Full merge of recommendations against existing categories, computed before any write.

    Attributes:
        to_update: Existing categories carrying their new amount
        to_create: New categories with catalog presentation defaults
    """
    to_update: List[BudgetCategory] = field(default_factory=list)
    to_create: List[BudgetCategory] = field(default_factory=list)

    def operations(self, user_id: str) -> List[WriteOp]:
        """Write operations for the plan; assigns ids to categories being created."""
        ops = [
            WriteOp.merge(document_path(user_id, BUDGET_CATEGORIES, category.id), {"amount": category.amount})
            for category in self.to_update
        ]
        for category in self.to_create:
            if category.id is None:
                category.id = new_document_id()
            ops.append(WriteOp.replace(
                document_path(user_id, BUDGET_CATEGORIES, category.id),
                category.to_document()
            ))
        return ops


class AutoBudgetAllocator:
    """
    Derives recommended budget amounts and applies them.

    Categories with spending history get ``spend * history_buffer``; every
    other catalog category gets its fixed share of monthly income. Income is
    never budgeted.
    """

    def __init__(
        self,
        store: DocumentStore,
        auth: AuthState,
        aggregation: AggregationEngine,
        batch_writer: BatchWriter,
        budget_manager: BudgetManager,
        settings: Optional[BudgetSettings] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.auth = auth
        self.aggregation = aggregation
        self.batch_writer = batch_writer
        self.budget_manager = budget_manager
        self.settings = settings or BudgetSettings()
        self.clock = clock

    def _history_month(self, transactions: Sequence[Transaction]) -> str:
        if transactions:
            return max(txn.month for txn in transactions)
        return month_key(self.clock())

    def recommend(
        self,
        monthly_income: Optional[float],
        transactions: Sequence[Transaction],
        as_of: Optional[Union[date, str]] = None
    ) -> BudgetRecommendation:
        """
        Recommend an amount for every budgetable category.

        Args:
            monthly_income: Monthly income; None or <= 0 means unknown
            transactions: Spending history
            as_of: Month whose spend drives history amounts (defaults to the
                most recent month in the history)

        Returns:
            BudgetRecommendation with amounts rounded to cents
        """
        warnings: List[str] = []
        used_default = monthly_income is None or monthly_income <= 0
        if used_default:
            income = self.settings.default_monthly_income
            warnings.append(
                f"Monthly income unknown; percentage allocations assume ${income:,.2f} per month."
            )
            logger.warning(f"Recommending budget with default income placeholder {income:.2f}")
        else:
            income = float(monthly_income)

        spend = self.aggregation.spend_by_category(
            transactions, as_of if as_of is not None else self._history_month(transactions)
        )
        buffer = self.settings.history_buffer

        categories: List[BudgetCategory] = []
        for predefined in budgetable_categories():
            spent = spend.get(predefined.name, 0.0)
            amount = spent * buffer if spent > 0 else income * predefined.income_share
            categories.append(BudgetCategory(
                name=predefined.name,
                amount=round(amount, 2),
                icon=predefined.icon,
                color=predefined.color,
                is_essential=predefined.is_essential,
            ))

        # Spend on custom (non-catalog) categories, e.g. from user mapping overrides
        for name, spent in spend.items():
            if spent <= 0 or name == INCOME_CATEGORY or get_predefined_category(name) is not None:
                continue
            categories.append(BudgetCategory(
                name=name,
                amount=round(spent * buffer, 2),
                icon=category_icon(name),
                color=category_color(name),
                is_essential=is_essential_category(name),
            ))

        return BudgetRecommendation(
            categories=categories,
            monthly_income=income,
            used_default_income=used_default,
            warnings=warnings,
        )

    @staticmethod
    def plan_merge(
        existing: Sequence[BudgetCategory],
        recommended: Sequence[BudgetCategory]
    ) -> BudgetPlan:
        """
        Match recommendations to existing categories by normalized name.

        A match keeps its id, icon, colour and essential flag and takes only
        the new amount; an unmatched recommendation becomes a new category.
        """
        by_name = {}
        for category in existing:
            by_name.setdefault(category.normalized_name, category)

        plan = BudgetPlan()
        for recommendation in recommended:
            match = by_name.get(recommendation.normalized_name)
            if match is not None:
                plan.to_update.append(BudgetCategory(
                    name=match.name,
                    amount=recommendation.amount,
                    icon=match.icon,
                    color=match.color,
                    is_essential=match.is_essential,
                    id=match.id,
                ))
            else:
                plan.to_create.append(BudgetCategory(
                    name=recommendation.name,
                    amount=recommendation.amount,
                    icon=recommendation.icon,
                    color=recommendation.color,
                    is_essential=recommendation.is_essential,
                ))
        return plan

    async def apply(self, recommended: Sequence[BudgetCategory]) -> Tuple[BudgetPlan, BatchResult]:
        """
        Merge recommendations into the user's categories with one read and one batch.

        Returns:
            The computed plan and the batch result
        """
        user_id = self.auth.require_user_id()
        existing = await self.budget_manager.list_categories()
        plan = self.plan_merge(existing, recommended)
        ops = plan.operations(user_id)
        if len(ops) > self.batch_writer.batch_size:
            raise ValidationError(
                "Too many budget categories for a single batch",
                details={"operations": len(ops), "batch_size": self.batch_writer.batch_size}
            )
        result = await self.batch_writer.commit_ops(ops)
        logger.info(f"Applied budget: {len(plan.to_update)} updated, {len(plan.to_create)} created")
        return plan, result

    async def generate_recommended_budget(
        self,
        monthly_income: Optional[float],
        transactions: Sequence[Transaction],
        as_of: Optional[Union[date, str]] = None
    ) -> BudgetRecommendation:
        """Recommend, apply, and refresh the current month's budget usage."""
        recommendation = self.recommend(monthly_income, transactions, as_of)
        await self.apply(recommendation.categories)
        await self.aggregation.refresh_budget_usage()
        return recommendation
