"""
Tests for the category catalog and the raw-label category mapper.
"""

import pytest

from auth_state import AuthState
from categorization import (
    DEFAULT_CATEGORY_MAPPINGS,
    OTHER_CATEGORY,
    PREDEFINED_CATEGORIES,
    CategoryMapper,
    budgetable_categories,
    category_color,
    category_icon,
    get_predefined_category,
    is_essential_category,
)
from database_ops import CATEGORY_MAPPINGS, collection_path
from exceptions import NotAuthenticatedError, StoreWriteError, ValidationError


class RejectingStore:
    """Store whose writes always fail."""

    max_batch_size = 500

    async def set_merge(self, path, fields):
        raise StoreWriteError("store offline")


class TestCatalog:
    """Test the predefined category catalog."""

    def test_income_shares_sum_to_one(self):
        """Test that the income shares add up to 100%."""
        total = sum(category.income_share for category in budgetable_categories())
        assert total == pytest.approx(1.0)

    def test_income_is_never_budgeted(self):
        """Income is not a budgetable category."""
        assert "Income" not in [category.name for category in budgetable_categories()]
        assert len(budgetable_categories()) == len(PREDEFINED_CATEGORIES) - 1

    def test_default_table_is_derived_from_catalog(self):
        """Every catalog label maps to its own category."""
        for category in PREDEFINED_CATEGORIES:
            for label in category.raw_labels:
                assert DEFAULT_CATEGORY_MAPPINGS[label] == category.name

    def test_lookup_is_case_insensitive(self):
        """Test case-insensitive catalog lookup."""
        assert get_predefined_category("  housing ").name == "Housing"
        assert get_predefined_category("Pets") is None
        assert get_predefined_category(None) is None

    def test_presentation_defaults_for_custom_names(self):
        """Unknown names get the default icon and color."""
        assert category_icon("Housing") == "house.fill"
        assert category_icon("Pets") == "tag.fill"
        assert category_color("Pets") == "#607D8B"

    def test_essential_detection(self):
        """Test the essential-category keyword heuristic."""
        assert is_essential_category("Groceries") is True
        assert is_essential_category("Dining Out") is False
        assert is_essential_category("Car Insurance") is True
        assert is_essential_category("Hobbies") is False


class TestCategoryMapper:
    """Test forward and inverse mapping."""

    @pytest.mark.parametrize("raw, expected", [
        ("Restaurants", "Dining Out"),
        ("Rent", "Housing"),
        ("Coffee Shop & Cafes", "Dining Out"),
        ("Zzz unknown", OTHER_CATEGORY),
        ("", OTHER_CATEGORY),
        (None, OTHER_CATEGORY),
    ])
    def test_map_is_total(self, raw, expected):
        """Mapping always returns a category, even for empty input."""
        assert CategoryMapper().map(raw) == expected

    def test_canonical_name_substring_fallback(self):
        """Labels containing a canonical name map to it."""
        mapper = CategoryMapper(defaults={"Foo": "Dining Out"})

        assert mapper.map("Late night dining out") == "Dining Out"
        assert mapper.map("xfoox") == "Dining Out"
        assert mapper.map("bar") == OTHER_CATEGORY

    def test_labels_for_round_trip(self):
        """Every label of a category maps back to that category."""
        mapper = CategoryMapper()

        for canonical in mapper.available_categories():
            for label in mapper.labels_for(canonical):
                assert mapper.map(label) == canonical
        assert "Restaurants" in mapper.labels_for("Dining Out")
        assert mapper.labels_for("Nonexistent") == []

    @pytest.mark.asyncio
    async def test_override_takes_precedence(self, db_manager, auth):
        """Test that user overrides win over the defaults."""
        mapper = CategoryMapper(store=db_manager, auth=auth)

        task = mapper.create_mapping("Restaurants", "Entertainment")

        # Visible before the write completes.
        assert mapper.map("Restaurants") == "Entertainment"
        assert await task is True
        assert "Restaurants" in mapper.labels_for("Entertainment")
        assert "Restaurants" not in mapper.labels_for("Dining Out")

    @pytest.mark.asyncio
    async def test_overrides_persist_and_reload(self, db_manager, auth):
        """Overrides are stored and loaded again for the user."""
        mapper = CategoryMapper(store=db_manager, auth=auth)
        mapper.create_mapping("Pet Supplies / Food", "Pets")
        await mapper.flush()

        stored = await db_manager.query(collection_path(auth.current_user_id, CATEGORY_MAPPINGS))
        fresh = CategoryMapper(store=db_manager, auth=auth)
        loaded = await fresh.load_overrides()

        assert len(stored) == 1
        assert "/" not in stored[0].id
        assert loaded == 1
        assert fresh.map("Pet Supplies / Food") == "Pets"
        assert "Pets" in fresh.available_categories()

    @pytest.mark.asyncio
    async def test_persistence_failure_keeps_memory(self, auth):
        """A failed write keeps the override in memory."""
        mapper = CategoryMapper(store=RejectingStore(), auth=auth)

        task = mapper.create_mapping("Vet", "Pets")

        assert await task is False
        assert mapper.map("Vet") == "Pets"

    @pytest.mark.asyncio
    async def test_create_mapping_validation(self, auth):
        """Test that blank labels are rejected."""
        mapper = CategoryMapper(auth=auth)

        with pytest.raises(ValidationError):
            mapper.create_mapping("  ", "Pets")
        with pytest.raises(ValidationError):
            mapper.create_mapping("Vet", "")

    @pytest.mark.asyncio
    async def test_create_mapping_requires_user(self, db_manager):
        """Creating a mapping needs a signed-in user."""
        mapper = CategoryMapper(store=db_manager, auth=AuthState())

        with pytest.raises(NotAuthenticatedError):
            mapper.create_mapping("Vet", "Pets")
        assert mapper.map("Vet") == OTHER_CATEGORY

    def test_clear_overrides(self):
        """Test that clearing removes every override."""
        mapper = CategoryMapper()
        mapper.overrides["Vet"] = "Pets"

        mapper.clear_overrides()

        assert mapper.map("Vet") == OTHER_CATEGORY
