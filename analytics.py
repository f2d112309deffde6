"""
Analytics module for spend aggregation, monthly summaries, and savings tips.

This module turns transaction snapshots into per-category spend, persisted
monthly summaries, monthly budget usage, and heuristic savings tips. All
aggregation runs on pandas DataFrames built from typed transactions; only the
persist/read helpers touch the document store.

Amounts follow the engine's sign convention: positive = expense,
negative = income.
"""

import logging
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

import pandas as pd

from auth_state import AuthState
from batch_writer import BatchResult, BatchWriter, CancelCheck, ProgressCallback
from categorization import CategoryMapper
from config_manager import InsightSettings
from database_ops import (
    BUDGET,
    BUDGET_CATEGORIES,
    MONTHLY_SUMMARIES,
    SAVINGS_TIPS,
    TRANSACTIONS,
    DocumentStore,
    FieldFilter,
    WriteOp,
    collection_path,
    document_path,
    new_document_id,
)
from exceptions import SyncCancelledError
from models import (
    BudgetCategory,
    CategoryBudget,
    CategorySpending,
    MonthlyBudget,
    MonthlySummary,
    SavingsTip,
    Transaction,
    month_key,
    next_month_start,
    normalize_category_name,
    parse_month_key,
    previous_month_key,
    utc_now,
)

logger = logging.getLogger(__name__)

FRAME_COLUMNS = ['id', 'month', 'amount', 'raw_category', 'merchant', 'category']

DINING_TIP_CATEGORY = "Dining Out"
SUBSCRIPTION_TIP_CATEGORY = "Subscriptions"

Period = Union[date, datetime, str]


def _period_key(period: Period) -> str:
    if isinstance(period, str):
        parse_month_key(period)
        return period
    return month_key(period)


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    lowered = (text or "").lower()
    return any(keyword and keyword in lowered for keyword in keywords)


def _match_rows(frame: pd.DataFrame, keywords: Iterable[str]) -> pd.Series:
    """Rows whose raw category or merchant contains any keyword."""
    keywords = list(keywords)
    if frame.empty:
        return pd.Series(False, index=frame.index, dtype=bool)
    return (
        frame['raw_category'].map(lambda text: _contains_any(text, keywords))
        | frame['merchant'].map(lambda text: _contains_any(text, keywords))
    )


class AggregationEngine:
    """
    Computes spend, summaries, budget usage, and savings tips.

    The pure operations (``spend_by_category``, ``build_monthly_summary``,
    ``generate_savings_tips``, ``monthly_cash_flow``) need no store or user;
    the async operations resolve the signed-in user before any I/O.
    """

    def __init__(
        self,
        store: DocumentStore,
        mapper: CategoryMapper,
        auth: AuthState,
        batch_writer: BatchWriter,
        settings: Optional[InsightSettings] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize the aggregation engine.

        Args:
            store: Document store for summaries, budgets, and tips
            mapper: Category mapper used to canonicalize raw labels
            auth: Authentication state scoping every read and write
            batch_writer: Writer used for the tip replace-all batch
            settings: Heuristic thresholds (defaults when omitted)
            clock: Returns the current time; defines the "current month"
        """
        self.store = store
        self.mapper = mapper
        self.auth = auth
        self.batch_writer = batch_writer
        self.settings = settings or InsightSettings()
        self.clock = clock
        logger.info("Aggregation engine initialized")

    def transactions_frame(self, transactions: Iterable[Transaction]) -> pd.DataFrame:
        """
        Build a DataFrame with one row per transaction.

        Returns:
            DataFrame with columns: id, month, amount, raw_category, merchant, category
        """
        rows = [
            {
                'id': txn.id,
                'month': txn.month,
                'amount': float(txn.amount),
                'raw_category': txn.effective_category or "",
                'merchant': txn.merchant_name or "",
                'category': self.mapper.map(txn.effective_category),
            }
            for txn in transactions
        ]
        return pd.DataFrame(rows, columns=FRAME_COLUMNS)

    def _category_totals(self, df: pd.DataFrame) -> pd.Series:
        expenses = df[df['amount'] > 0]
        if expenses.empty:
            return pd.Series(dtype=float)
        return expenses.groupby('category')['amount'].sum().sort_values(ascending=False, kind='stable')

    def spend_by_category(
        self,
        transactions: Iterable[Transaction],
        as_of: Period
    ) -> Dict[str, float]:
        """
        Sum expense spend per canonical category for the month of ``as_of``.

        Args:
            transactions: Transactions to aggregate
            as_of: Date in the month, or a "YYYY-MM" key

        Returns:
            Mapping of canonical category name to total spend, highest first
        """
        key = _period_key(as_of)
        df = self.transactions_frame(transactions)
        totals = self._category_totals(df[df['month'] == key])
        return {str(category): round(float(amount), 2) for category, amount in totals.items()}

    def build_monthly_summary(
        self,
        transactions: Iterable[Transaction],
        month: str,
        previous_expenses: Optional[float] = None
    ) -> MonthlySummary:
        """
        Summarize one month without touching the store.

        Args:
            transactions: Transactions (other months are ignored)
            month: "YYYY-MM" key
            previous_expenses: Expense total of the prior month, if known

        Returns:
            MonthlySummary for ``month``
        """
        key = _period_key(month)
        df = self.transactions_frame(transactions)
        df = df[df['month'] == key]

        income = abs(float(df.loc[df['amount'] < 0, 'amount'].sum()))
        expenses = float(df.loc[df['amount'] > 0, 'amount'].sum())
        savings_rate = (income - expenses) / income * 100 if income > 0 else 0.0

        totals = self._category_totals(df).head(self.settings.top_category_limit)
        top_categories = [
            CategorySpending(category=str(category), amount=round(float(amount), 2))
            for category, amount in totals.items()
        ]

        if previous_expenses and previous_expenses > 0:
            monthly_change = (expenses - previous_expenses) / previous_expenses * 100
        else:
            monthly_change = 0.0

        return MonthlySummary(
            month=key,
            income=round(income, 2),
            expenses=round(expenses, 2),
            savings_rate=savings_rate,
            top_categories=top_categories,
            monthly_change=monthly_change,
        )

    async def compute_monthly_summary(
        self,
        transactions: Iterable[Transaction],
        month: str
    ) -> MonthlySummary:
        """
        Summarize one month, reading the prior month's persisted expenses.

        A missing or zero prior summary yields a month-over-month change of 0.
        """
        user_id = self.auth.require_user_id()
        previous = await self.store.get(
            document_path(user_id, MONTHLY_SUMMARIES, previous_month_key(month))
        )
        previous_expenses = float(previous.get("expenses", 0.0)) if previous else 0.0
        return self.build_monthly_summary(transactions, month, previous_expenses)

    async def save_monthly_summary(self, summary: MonthlySummary) -> None:
        user_id = self.auth.require_user_id()
        await self.store.set_merge(
            document_path(user_id, MONTHLY_SUMMARIES, summary.month),
            summary.to_document()
        )

    async def get_monthly_summary(self, month: str) -> Optional[MonthlySummary]:
        user_id = self.auth.require_user_id()
        data = await self.store.get(document_path(user_id, MONTHLY_SUMMARIES, month))
        return MonthlySummary.from_document(month, data) if data else None

    async def refresh_monthly_summaries(
        self,
        transactions: Sequence[Transaction],
        *,
        progress: Optional[ProgressCallback] = None,
        base: float = 0.0,
        span: float = 1.0,
        should_cancel: Optional[CancelCheck] = None
    ) -> List[MonthlySummary]:
        """
        Recompute and persist the summary of every month present, then tips.

        Months are written oldest first so each month's change figure reads
        the freshly written summary of its predecessor. Savings tips are
        regenerated from the current month's transactions; when that month is
        absent the stored tips are left as they are.

        Raises:
            SyncCancelledError: When cancellation is requested between months
        """
        user_id = self.auth.require_user_id()
        months = sorted({txn.month for txn in transactions})
        steps = len(months) + 1
        summaries: List[MonthlySummary] = []

        for index, month in enumerate(months):
            if should_cancel and should_cancel():
                raise SyncCancelledError(
                    "Summary refresh cancelled",
                    details={"completed_months": index, "total_months": len(months)}
                )
            summary = await self.compute_monthly_summary(transactions, month)
            await self.save_monthly_summary(summary)
            summaries.append(summary)
            if progress:
                progress(base + ((index + 1) / steps) * span)

        if should_cancel and should_cancel():
            raise SyncCancelledError("Summary refresh cancelled before tip regeneration")
        current = month_key(self.clock())
        current_transactions = [txn for txn in transactions if txn.month == current]
        if current_transactions:
            await self.regenerate_savings_tips(current_transactions)
        else:
            logger.info(f"No transactions for {current}; keeping existing savings tips")
        if progress:
            progress(base + span)

        logger.info(f"Refreshed {len(summaries)} monthly summaries for user {user_id}")
        return summaries

    def generate_savings_tips(self, transactions: Iterable[Transaction]) -> List[SavingsTip]:
        """
        Produce heuristic savings tips for one period's transactions.

        Each heuristic contributes at most one tip:
            - top spend category: a share of its spend
            - dining frequency: more than ``dining_min_count`` dining expenses
            - subscriptions: small recurring charges matched by keyword or brand

        Args:
            transactions: Transactions of the period

        Returns:
            Zero or more SavingsTip objects
        """
        s = self.settings
        now = self.clock()
        df = self.transactions_frame(transactions)
        expenses = df[df['amount'] > 0]
        tips: List[SavingsTip] = []

        totals = self._category_totals(df)
        if not totals.empty:
            top_category = str(totals.index[0])
            top_amount = float(totals.iloc[0])
            savings = top_amount * s.top_category_savings_rate
            tips.append(SavingsTip(
                title=f"Reduce {top_category} Spending",
                description=(
                    f"{top_category} is your highest spending category at ${top_amount:.2f}. "
                    f"Cutting it by {s.top_category_savings_rate:.0%} would save ${savings:.2f}."
                ),
                category=top_category,
                potential_savings=round(savings, 2),
                created_at=now,
            ))

        dining = expenses[_match_rows(expenses, s.dining_keywords)]
        if len(dining) > s.dining_min_count:
            dining_total = float(dining['amount'].sum())
            savings = dining_total * s.dining_savings_rate
            tips.append(SavingsTip(
                title="Cook More Meals at Home",
                description=(
                    f"You ate out {len(dining)} times this period, spending ${dining_total:.2f}. "
                    f"Cooking at home more often could save about ${savings:.2f}."
                ),
                category=DINING_TIP_CATEGORY,
                potential_savings=round(savings, 2),
                created_at=now,
            ))

        subscription_terms = list(s.subscription_keywords) + list(s.subscription_brands)
        in_range = expenses[
            (expenses['amount'] >= s.subscription_min_amount)
            & (expenses['amount'] <= s.subscription_max_amount)
        ]
        subscriptions = in_range[_match_rows(in_range, subscription_terms)]
        if not subscriptions.empty:
            subscription_total = float(subscriptions['amount'].sum())
            savings = subscription_total * s.subscription_savings_rate
            tips.append(SavingsTip(
                title="Review Your Subscriptions",
                description=(
                    f"You have {len(subscriptions)} recurring charges totalling "
                    f"${subscription_total:.2f}. Cancelling unused ones could save "
                    f"about ${savings:.2f}."
                ),
                category=SUBSCRIPTION_TIP_CATEGORY,
                potential_savings=round(savings, 2),
                created_at=now,
            ))

        logger.debug(f"Generated {len(tips)} savings tips")
        return tips

    async def replace_savings_tips(self, tips: Sequence[SavingsTip]) -> BatchResult:
        """
        Replace the user's whole tip set: delete every stored tip, insert the new ones.

        Returns:
            BatchResult of the replace write
        """
        user_id = self.auth.require_user_id()
        existing = await self.store.query(collection_path(user_id, SAVINGS_TIPS))
        ops = [WriteOp.delete(doc.path) for doc in existing]
        ops.extend(
            WriteOp.replace(document_path(user_id, SAVINGS_TIPS, new_document_id()), tip.to_document())
            for tip in tips
        )
        result = await self.batch_writer.commit_ops(ops)
        logger.info(f"Replaced {len(existing)} savings tips with {len(tips)} new tips")
        return result

    async def regenerate_savings_tips(self, transactions: Iterable[Transaction]) -> List[SavingsTip]:
        tips = self.generate_savings_tips(transactions)
        await self.replace_savings_tips(tips)
        return tips

    async def list_savings_tips(self) -> List[SavingsTip]:
        user_id = self.auth.require_user_id()
        documents = await self.store.query(collection_path(user_id, SAVINGS_TIPS))
        tips = [SavingsTip.from_document(doc.id, doc.data) for doc in documents]
        return sorted(tips, key=lambda tip: tip.potential_savings, reverse=True)

    async def refresh_budget_usage(
        self,
        transactions: Optional[Sequence[Transaction]] = None,
        as_of: Optional[Period] = None
    ) -> MonthlyBudget:
        """
        Recompute the monthly budget document for one month in a single write.

        Args:
            transactions: Transactions to use; the month's stored transactions when None
            as_of: Month to refresh (defaults to the current month)

        Returns:
            The MonthlyBudget that was written
        """
        user_id = self.auth.require_user_id()
        key = _period_key(as_of) if as_of is not None else month_key(self.clock())

        if transactions is None:
            first = parse_month_key(key)
            documents = await self.store.query(
                collection_path(user_id, TRANSACTIONS),
                [
                    FieldFilter("date", ">=", first.isoformat()),
                    FieldFilter("date", "<", next_month_start(first).isoformat()),
                ]
            )
            transactions = [Transaction.from_document(doc.id, doc.data) for doc in documents]

        category_docs = await self.store.query(collection_path(user_id, BUDGET_CATEGORIES))
        categories = [BudgetCategory.from_document(doc.id, doc.data) for doc in category_docs]

        spend = self.spend_by_category(transactions, key)
        spend_by_name: Dict[str, float] = {}
        for name, amount in spend.items():
            normalized = normalize_category_name(name)
            spend_by_name[normalized] = spend_by_name.get(normalized, 0.0) + amount

        budget = MonthlyBudget(
            month=key,
            total_budget=sum(category.amount for category in categories),
            total_spent=sum(spend.values()),
            categories={
                category.id: CategoryBudget(
                    budget=category.amount,
                    spent=spend_by_name.get(category.normalized_name, 0.0),
                )
                for category in categories
            },
        )
        await self.store.set_merge(document_path(user_id, BUDGET, key), budget.to_document())
        logger.info(f"Refreshed budget usage for {key}: spent {budget.total_spent:.2f} of {budget.total_budget:.2f}")
        return budget

    def monthly_cash_flow(
        self,
        transactions: Iterable[Transaction],
        months: int = 6,
        as_of: Optional[Period] = None
    ) -> pd.DataFrame:
        """
        Get income and expenses for the trailing ``months`` months.

        Months without transactions appear with zero totals.

        Returns:
            DataFrame with columns: month, income, expenses, net (oldest first)
        """
        end_key = _period_key(as_of) if as_of is not None else month_key(self.clock())
        keys = [end_key]
        for _ in range(months - 1):
            keys.append(previous_month_key(keys[-1]))
        keys.reverse()

        df = self.transactions_frame(transactions)
        df = df[df['month'].isin(keys)]

        monthly_data = []
        for key in keys:
            group = df[df['month'] == key]
            income = abs(float(group.loc[group['amount'] < 0, 'amount'].sum()))
            expenses = float(group.loc[group['amount'] > 0, 'amount'].sum())
            monthly_data.append({
                'month': key,
                'income': round(income, 2),
                'expenses': round(expenses, 2),
                'net': round(income - expenses, 2),
            })
        return pd.DataFrame(monthly_data, columns=['month', 'income', 'expenses', 'net'])
