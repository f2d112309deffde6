"""
Categorization module mapping raw provider category labels to budget categories.

The predefined category catalog is the single source of truth: the default
forward mapping table (raw label -> canonical category) is derived from each
category's raw label set, so the forward mapping and its inverse
(canonical category -> raw labels) can never drift apart.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple
from urllib.parse import quote

from auth_state import AuthState
from database_ops import CATEGORY_MAPPINGS, DocumentStore, collection_path, document_path
from exceptions import StoreError, ValidationError
from models import CategoryMapping

# Configure logging
logger = logging.getLogger(__name__)

OTHER_CATEGORY = "Other"
INCOME_CATEGORY = "Income"

NEEDS = "needs"
WANTS = "wants"
SAVINGS = "savings"


@dataclass(frozen=True)
class PredefinedCategory:
    """
    A canonical budget category with its presentation defaults.

    Attributes:
        name: Canonical category name
        icon: Icon token
        color: Colour token (hex)
        is_essential: Whether the category is a need
        bucket: Budget bucket (needs, wants, savings) or None when never budgeted
        income_share: Fraction of monthly income recommended when there is no history
        raw_labels: Raw provider labels that map to this category
    """
    name: str
    icon: str
    color: str
    is_essential: bool
    bucket: Optional[str]
    income_share: float
    raw_labels: Tuple[str, ...] = ()


# Raw labels are unique across the catalog.
PREDEFINED_CATEGORIES: Tuple[PredefinedCategory, ...] = (
    # Needs (50%)
    PredefinedCategory(
        "Housing", "house.fill", "#4CAF50", True, NEEDS, 0.25,
        ("Rent", "Mortgage", "Real Estate", "Home Insurance", "Property Tax", "Housing"),
    ),
    PredefinedCategory(
        "Groceries", "cart.fill", "#2196F3", True, NEEDS, 0.10,
        ("Groceries", "Supermarkets"),
    ),
    PredefinedCategory(
        "Utilities", "bolt.fill", "#9C27B0", True, NEEDS, 0.05,
        ("Utilities", "Electric", "Water", "Internet", "Cable"),
    ),
    PredefinedCategory(
        "Transportation", "car.fill", "#03A9F4", True, NEEDS, 0.05,
        ("Transportation", "Travel", "Taxi", "Uber", "Lyft", "Gas", "Parking",
         "Car Service", "Automotive", "Public Transportation"),
    ),
    PredefinedCategory(
        "Healthcare", "heart.fill", "#E91E63", True, NEEDS, 0.05,
        ("Healthcare", "Health", "Medical", "Pharmacy", "Doctor", "Hospital"),
    ),
    # Wants (30%)
    PredefinedCategory(
        "Dining Out", "fork.knife", "#FF9800", False, WANTS, 0.08,
        ("Food and Drink", "Restaurants", "Dining", "Fast Food", "Coffee Shop",
         "Bar", "Food Delivery"),
    ),
    PredefinedCategory(
        "Entertainment", "play.tv.fill", "#FFC107", False, WANTS, 0.06,
        ("Entertainment", "Movies", "Music", "Games", "Concerts", "Sports"),
    ),
    PredefinedCategory(
        "Shopping", "bag.fill", "#F44336", False, WANTS, 0.07,
        ("Shopping", "Clothing", "Electronics", "Retail", "Department Stores",
         "Home Improvement"),
    ),
    PredefinedCategory(
        "Personal Care", "person.fill", "#FF5722", False, WANTS, 0.04,
        ("Personal Care", "Beauty", "Hair", "Spa", "Gym", "Fitness"),
    ),
    PredefinedCategory(
        "Subscriptions", "repeat", "#673AB7", False, WANTS, 0.03,
        ("Subscription", "Streaming", "Software", "Netflix", "Spotify", "Amazon Prime"),
    ),
    PredefinedCategory(
        OTHER_CATEGORY, "ellipsis.circle.fill", "#9E9E9E", False, WANTS, 0.02,
        (),
    ),
    # Savings and debt (20%)
    PredefinedCategory(
        "Savings", "banknote.fill", "#4CAF50", True, SAVINGS, 0.15,
        ("Savings", "Transfer", "Investment"),
    ),
    PredefinedCategory(
        "Debt Payment", "creditcard.fill", "#00BCD4", True, SAVINGS, 0.05,
        ("Credit Card", "Loan", "Student Loan", "Loan Payment", "Credit Card Payment"),
    ),
    # Never budgeted
    PredefinedCategory(
        INCOME_CATEGORY, "arrow.down.circle.fill", "#4CAF50", False, None, 0.0,
        ("Income", "Payroll", "Deposit", "Interest Income"),
    ),
)

CUSTOM_CATEGORY_ICON = "tag.fill"
CUSTOM_CATEGORY_COLOR = "#607D8B"

ESSENTIAL_KEYWORDS = (
    "groceries", "rent", "utilities", "transportation", "healthcare",
    "insurance", "housing", "bills", "medical",
)


def _build_default_mappings() -> Dict[str, str]:
    mappings: Dict[str, str] = {}
    for category in PREDEFINED_CATEGORIES:
        for label in category.raw_labels:
            if label in mappings:
                raise ValueError(f"Raw label '{label}' assigned to more than one category")
            mappings[label] = category.name
    return mappings


DEFAULT_CATEGORY_MAPPINGS: Dict[str, str] = _build_default_mappings()

_CATALOG_BY_NAME: Dict[str, PredefinedCategory] = {
    category.name.lower(): category for category in PREDEFINED_CATEGORIES
}


def get_predefined_category(name: Optional[str]) -> Optional[PredefinedCategory]:
    """Look up a catalog entry by case-insensitive, trimmed name."""
    if not name:
        return None
    return _CATALOG_BY_NAME.get(name.strip().lower())


def budgetable_categories() -> List[PredefinedCategory]:
    """Catalog entries that receive a budget (everything except Income)."""
    return [category for category in PREDEFINED_CATEGORIES if category.bucket is not None]


def category_icon(name: str) -> str:
    predefined = get_predefined_category(name)
    return predefined.icon if predefined else CUSTOM_CATEGORY_ICON


def category_color(name: str) -> str:
    predefined = get_predefined_category(name)
    return predefined.color if predefined else CUSTOM_CATEGORY_COLOR


def is_essential_category(name: str) -> bool:
    """
    Decide whether a category is essential.

    Catalog categories use their own flag; custom names are essential when
    they contain one of the essential keywords.
    """
    predefined = get_predefined_category(name)
    if predefined is not None:
        return predefined.is_essential
    lowered = (name or "").lower()
    return any(keyword in lowered for keyword in ESSENTIAL_KEYWORDS)


def _mapping_doc_id(raw_category: str) -> str:
    return quote(raw_category, safe="")


class CategoryMapper:
    """
    Maps raw provider category labels to canonical budget category names.

    ``map`` is a total function: it never raises and always returns a
    non-empty name, falling back to ``"Other"``. User overrides take
    precedence over the default table and are persisted per user under
    ``categoryMappings``.
    """

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        auth: Optional[AuthState] = None,
        defaults: Optional[Dict[str, str]] = None
    ):
        """
        Initialize the mapper.

        Args:
            store: Document store used to persist overrides
            auth: Authentication state used to scope overrides to a user
            defaults: Default table (defaults to the catalog-derived table)
        """
        self.store = store
        self.auth = auth
        self.defaults: Dict[str, str] = dict(DEFAULT_CATEGORY_MAPPINGS if defaults is None else defaults)
        self.overrides: Dict[str, str] = {}
        self._pending: Set[asyncio.Task] = set()

    def _combined_items(self) -> List[Tuple[str, str]]:
        items = list(self.overrides.items())
        items.extend((raw, canonical) for raw, canonical in self.defaults.items() if raw not in self.overrides)
        return items

    def map(self, raw_category: Optional[str]) -> str:
        """
        Map a raw category label to a canonical category name.

        First match wins: exact override, exact default, raw label containing
        a mapping key, raw label containing a canonical name, then "Other".

        Args:
            raw_category: Raw label from the provider (may be empty or None)

        Returns:
            Canonical category name
        """
        if not raw_category:
            return OTHER_CATEGORY

        if raw_category in self.overrides:
            return self.overrides[raw_category]
        if raw_category in self.defaults:
            return self.defaults[raw_category]

        lowered = raw_category.lower()
        items = self._combined_items()
        for raw, canonical in items:
            if raw and raw.lower() in lowered:
                return canonical
        for _, canonical in items:
            if canonical and canonical.lower() in lowered:
                return canonical

        return OTHER_CATEGORY

    def labels_for(self, canonical: str) -> List[str]:
        """
        Return every raw label that maps exactly to ``canonical``.

        This is the inverse of the exact-match step of ``map``, so each
        returned label maps forward to ``canonical``.
        """
        return [raw for raw, target in self._combined_items() if target == canonical]

    def available_categories(self) -> List[str]:
        """Sorted canonical category names reachable from the current table."""
        names = {canonical for _, canonical in self._combined_items()}
        names.add(OTHER_CATEGORY)
        return sorted(names)

    def create_mapping(self, raw_category: str, canonical_category: str) -> "asyncio.Task[bool]":
        """
        Add a user override.

        The in-memory table changes immediately; persistence runs in a
        background task. A failed write is logged and not rolled back.

        Args:
            raw_category: Raw provider label
            canonical_category: Canonical category name it should map to

        Returns:
            Task resolving to True when the override was persisted

        Raises:
            ValidationError: If either name is empty
            NotAuthenticatedError: If no user is signed in
        """
        raw = (raw_category or "").strip()
        canonical = (canonical_category or "").strip()
        if not raw or not canonical:
            raise ValidationError(
                "Category mapping requires a raw label and a category name",
                details={"raw_category": raw_category, "canonical_category": canonical_category}
            )
        user_id = self.auth.require_user_id() if self.auth else None

        self.overrides[raw] = canonical
        logger.info(f"Mapped category '{raw}' -> '{canonical}'")

        task = asyncio.create_task(self._persist(user_id, CategoryMapping(raw, canonical)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _persist(self, user_id: Optional[str], mapping: CategoryMapping) -> bool:
        if self.store is None or user_id is None:
            return False
        path = document_path(user_id, CATEGORY_MAPPINGS, _mapping_doc_id(mapping.raw_category))
        try:
            await self.store.set_merge(path, mapping.to_document())
            return True
        except StoreError as e:
            logger.warning(f"Failed to persist category mapping '{mapping.raw_category}': {e}")
            return False

    async def flush(self) -> None:
        """Wait for every pending override write to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    async def load_overrides(self) -> int:
        """
        Replace the in-memory overrides with the signed-in user's stored ones.

        Returns:
            Number of overrides loaded
        """
        if self.store is None or self.auth is None:
            return 0
        user_id = self.auth.require_user_id()
        documents = await self.store.query(collection_path(user_id, CATEGORY_MAPPINGS))
        loaded: Dict[str, str] = {}
        for doc in documents:
            mapping = CategoryMapping.from_document(doc.id, doc.data)
            if mapping.raw_category and mapping.canonical_category:
                loaded[mapping.raw_category] = mapping.canonical_category
        self.overrides = loaded
        logger.info(f"Loaded {len(loaded)} category mapping overrides")
        return len(loaded)

    def clear_overrides(self) -> None:
        self.overrides = {}
