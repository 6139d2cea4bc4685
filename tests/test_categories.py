from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from models import Allocation, Category, CurrencyCode
from schemas import CategoryIn, CategoryReorderIn, CategoryUpdateIn, OnboardingIn
from services import (
    AllocationService,
    BudgetMonthService,
    CategoryService,
    ConflictError,
    NotFoundError,
    UserService,
)


def make_engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def category_count(session, user_id: str) -> int:
    return session.scalar(
        select(func.count(Category.id)).where(Category.user_id == user_id)
    )


def test_create_assigns_next_sort_order() -> None:
    with Session(make_engine()) as session:
        service = CategoryService(session, "alice")

        first = service.create(CategoryIn(name="  Groceries  ", color="#22c55e"))
        second = service.create(CategoryIn(name="Rent"))

        assert first.name == "Groceries"
        assert first.sort_order == 0
        assert second.sort_order == 1
        assert second.color == "#6366f1"


def test_create_after_onboarding_goes_last() -> None:
    with Session(make_engine()) as session:
        UserService(session, "alice").complete_onboarding(
            OnboardingIn(income=Decimal("1000"), currency=CurrencyCode.gbp),
            "alice@example.com",
        )

        created = CategoryService(session, "alice").create(CategoryIn(name="Gym"))

        assert created.sort_order == 7


def test_duplicate_name_is_a_conflict() -> None:
    with Session(make_engine()) as session:
        service = CategoryService(session, "alice")
        service.create(CategoryIn(name="Fun"))

        with pytest.raises(ConflictError, match="already exists"):
            service.create(CategoryIn(name="Fun"))
        assert category_count(session, "alice") == 1

        # Matching is exact, the same as the unique constraint.
        service.create(CategoryIn(name="FUN"))
        assert category_count(session, "alice") == 2

        # Names are only unique per user.
        CategoryService(session, "bob").create(CategoryIn(name="Fun"))
        assert category_count(session, "bob") == 1


def test_invalid_names_and_colors_are_rejected() -> None:
    with pytest.raises(ValidationError, match="Category name is required"):
        CategoryIn(name="   ")
    with pytest.raises(ValidationError, match="50 characters or less"):
        CategoryIn(name="x" * 51)
    with pytest.raises(ValidationError, match="valid hex color"):
        CategoryIn(name="Food", color="red")
    with pytest.raises(ValidationError, match="valid hex color"):
        CategoryUpdateIn(color="#12345")


def test_partial_update_changes_only_given_fields() -> None:
    with Session(make_engine()) as session:
        service = CategoryService(session, "alice")
        created = service.create(CategoryIn(name="Food", color="#111111"))

        service.update(created.id, CategoryUpdateIn(color="#222222"))
        assert (created.name, created.color) == ("Food", "#222222")

        service.update(created.id, CategoryUpdateIn(name="Groceries"))
        assert (created.name, created.color) == ("Groceries", "#222222")


def test_rename_to_existing_name_is_a_conflict() -> None:
    with Session(make_engine()) as session:
        service = CategoryService(session, "alice")
        service.create(CategoryIn(name="Food"))
        rent = service.create(CategoryIn(name="Rent"))

        with pytest.raises(ConflictError):
            service.update(rent.id, CategoryUpdateIn(name="Food"))


def test_savings_category_cannot_be_renamed_or_deleted() -> None:
    with Session(make_engine()) as session:
        UserService(session, "alice").complete_onboarding(
            OnboardingIn(income=Decimal("1000"), currency=CurrencyCode.usd),
            "alice@example.com",
        )
        service = CategoryService(session, "alice")
        savings = service.savings_category()

        with pytest.raises(ValueError, match="Cannot rename"):
            service.update(savings.id, CategoryUpdateIn(name="Rainy day"))
        with pytest.raises(ValueError, match="Cannot delete"):
            service.delete(savings.id)

        # Recoloring is allowed.
        service.update(savings.id, CategoryUpdateIn(name="Savings", color="#000000"))
        assert savings.name == "Savings"
        assert savings.color == "#000000"


def test_delete_removes_allocations_and_checks_owner() -> None:
    with Session(make_engine()) as session:
        month = UserService(session, "alice").complete_onboarding(
            OnboardingIn(income=Decimal("1000"), currency=CurrencyCode.usd),
            "alice@example.com",
        )
        service = CategoryService(session, "alice")
        fun = next(c for c in service.list_all() if c.name == "Fun")
        AllocationService(session, "alice").set_amount(month.id, fun.id, Decimal("40"))

        with pytest.raises(NotFoundError):
            CategoryService(session, "bob").delete(fun.id)

        service.delete(fun.id)

        assert session.scalar(select(func.count(Allocation.id))) == 0
        summary = BudgetMonthService(session, "alice").summary(month)
        assert summary.allocated == Decimal("0")


def test_reorder_assigns_positions() -> None:
    with Session(make_engine()) as session:
        service = CategoryService(session, "alice")
        a = service.create(CategoryIn(name="A"))
        b = service.create(CategoryIn(name="B"))
        c = service.create(CategoryIn(name="C"))

        ordered = service.reorder(CategoryReorderIn(category_ids=[c.id, a.id, b.id]))

        assert [x.name for x in ordered] == ["C", "A", "B"]
        assert (c.sort_order, a.sort_order, b.sort_order) == (0, 1, 2)


def test_reorder_is_all_or_nothing() -> None:
    with Session(make_engine()) as session:
        service = CategoryService(session, "alice")
        a = service.create(CategoryIn(name="A"))
        b = service.create(CategoryIn(name="B"))
        foreign = CategoryService(session, "bob").create(CategoryIn(name="Z"))

        with pytest.raises(NotFoundError):
            service.reorder(CategoryReorderIn(category_ids=[b.id, 9999]))
        with pytest.raises(NotFoundError):
            service.reorder(CategoryReorderIn(category_ids=[b.id, a.id, foreign.id]))

        assert [x.name for x in service.list_all()] == ["A", "B"]
        assert foreign.sort_order == 0


def test_reorder_input_bounds() -> None:
    with pytest.raises(ValidationError):
        CategoryReorderIn(category_ids=[])
    with pytest.raises(ValidationError):
        CategoryReorderIn(category_ids=list(range(1, 102)))
    with pytest.raises(ValidationError):
        CategoryReorderIn(category_ids=[0])
    with pytest.raises(ValidationError, match="duplicates"):
        CategoryReorderIn(category_ids=[3, 3])
    assert len(CategoryReorderIn(category_ids=list(range(1, 101))).category_ids) == 100
