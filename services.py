from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload

from budget_math import (
    MIN_SAVINGS_RATE,
    ZERO,
    AllocationLine,
    MonthSummary,
    allocation_breakdown,
    summarize_month,
    to_money,
)
from config import get_settings
from models import Allocation, BudgetMonth, Category, CurrencyCode, User
from periods import MonthRef, current_month
from schemas import (
    CategoryIn,
    CategoryReorderIn,
    CategoryUpdateIn,
    IncomeIn,
    OnboardingIn,
    SavingsRateIn,
)

logger = logging.getLogger(__name__)

DEFAULT_SAVINGS_RATE = Decimal("0.20")
TOP_CATEGORY_LIMIT = 5

DEFAULT_CATEGORIES = [
    {"name": "Savings", "color": "#6366f1", "is_savings": True, "sort_order": 0},
    {"name": "Transport & Food", "color": "#f59e0b", "is_savings": False, "sort_order": 1},
    {"name": "Utilities", "color": "#10b981", "is_savings": False, "sort_order": 2},
    {
        "name": "Partner & Child Support",
        "color": "#ec4899",
        "is_savings": False,
        "sort_order": 3,
    },
    {"name": "Subscriptions", "color": "#8b5cf6", "is_savings": False, "sort_order": 4},
    {"name": "Fun", "color": "#06b6d4", "is_savings": False, "sort_order": 5},
    {"name": "Remittance", "color": "#f97316", "is_savings": False, "sort_order": 6},
]

CATEGORY_EXISTS = "A category with this name already exists"
ACCOUNT_EMAIL_TAKEN = "This email is already linked to another account"


class NotFoundError(ValueError):
    """Record is missing or owned by another user."""


class ConflictError(ValueError):
    """A uniqueness constraint would be violated."""


class StorageError(RuntimeError):
    """The database failed in a way the caller cannot fix."""


def _commit(
    session: Session, action: str, *, conflict_message: Optional[str] = None
) -> None:
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        if conflict_message:
            raise ConflictError(conflict_message) from exc
        logger.exception("Integrity error while trying to %s", action)
        raise StorageError(f"Failed to {action}") from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Database error while trying to %s", action)
        raise StorageError(f"Failed to {action}") from exc


class UserService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def get(self) -> Optional[User]:
        return self.session.get(User, self.user_id)

    def ensure_user(self, email: str) -> User:
        user = self.get()
        if user:
            return user
        user = User(
            id=self.user_id,
            email=email,
            currency=CurrencyCode(get_settings().default_currency),
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            # Created concurrently by another request.
            existing = self.get()
            if existing is not None:
                return existing
            logger.warning("ensure_user_email_taken: user_id=%s", self.user_id)
            raise ConflictError(ACCOUNT_EMAIL_TAKEN) from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("Database error while trying to create user")
            raise StorageError("Failed to create user") from exc
        self.session.refresh(user)
        return user

    def needs_onboarding(self) -> bool:
        user = self.get()
        if user is None:
            return True
        has_categories = self.session.scalar(
            select(func.count(Category.id)).where(Category.user_id == self.user_id)
        )
        has_months = self.session.scalar(
            select(func.count(BudgetMonth.id)).where(
                BudgetMonth.user_id == self.user_id
            )
        )
        return not has_categories or not has_months

    def complete_onboarding(
        self, data: OnboardingIn, email: str, *, today: Optional[date] = None
    ) -> BudgetMonth:
        user = self.get()
        if user is None:
            user = User(id=self.user_id, email=email, currency=data.currency)
            self.session.add(user)
        else:
            user.currency = data.currency

        existing_names = set(
            self.session.scalars(
                select(Category.name).where(Category.user_id == self.user_id)
            )
        )
        for default in DEFAULT_CATEGORIES:
            if default["name"] in existing_names:
                continue
            self.session.add(
                Category(
                    user_id=self.user_id,
                    name=default["name"],
                    color=default["color"],
                    is_savings=default["is_savings"],
                    is_default=True,
                    sort_order=default["sort_order"],
                )
            )

        ref = current_month(today)
        month = self.session.scalar(
            select(BudgetMonth).where(
                BudgetMonth.user_id == self.user_id,
                BudgetMonth.year == ref.year,
                BudgetMonth.month == ref.month,
            )
        )
        if month:
            month.income = data.income
        else:
            month = BudgetMonth(
                user_id=self.user_id,
                year=ref.year,
                month=ref.month,
                income=data.income,
                savings_rate=DEFAULT_SAVINGS_RATE,
            )
            self.session.add(month)

        _commit(
            self.session, "complete onboarding", conflict_message=ACCOUNT_EMAIL_TAKEN
        )
        self.session.refresh(month)
        logger.info(
            "onboarding_completed: user_id=%s month=%s", self.user_id, month.label
        )
        return month

    def update_currency(self, currency: CurrencyCode) -> User:
        user = self.get()
        if user is None:
            raise NotFoundError("User not found")
        user.currency = currency
        _commit(self.session, "update settings")
        return user


class CategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.sort_order, Category.id)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def savings_category(self) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id, Category.is_savings.is_(True)
            )
        )

    def _name_taken(self, name: str, *, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.name == name,
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: CategoryIn) -> Category:
        if self._name_taken(data.name):
            raise ConflictError(CATEGORY_EXISTS)
        last_order = self.session.scalar(
            select(func.max(Category.sort_order)).where(
                Category.user_id == self.user_id
            )
        )
        category = Category(
            user_id=self.user_id,
            name=data.name,
            color=data.color,
            sort_order=0 if last_order is None else last_order + 1,
        )
        self.session.add(category)
        _commit(self.session, "create category", conflict_message=CATEGORY_EXISTS)
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdateIn) -> Category:
        category = self.get(category_id)
        if data.name is not None and data.name != category.name:
            if category.is_savings:
                raise ValueError("Cannot rename the Savings category")
            if self._name_taken(data.name, exclude_id=category.id):
                raise ConflictError(CATEGORY_EXISTS)
            category.name = data.name
        if data.color is not None:
            category.color = data.color
        _commit(self.session, "update category", conflict_message=CATEGORY_EXISTS)
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        if category.is_savings:
            raise ValueError("Cannot delete the Savings category")
        self.session.delete(category)
        _commit(self.session, "delete category")

    def reorder(self, data: CategoryReorderIn) -> list[Category]:
        ids = data.category_ids
        owned = {
            c.id: c
            for c in self.session.scalars(
                select(Category).where(
                    Category.user_id == self.user_id, Category.id.in_(ids)
                )
            )
        }
        if len(owned) != len(ids):
            raise NotFoundError("Category not found")
        for position, category_id in enumerate(ids):
            owned[category_id].sort_order = position
        _commit(self.session, "reorder categories")
        logger.info(
            "categories_reordered: user_id=%s count=%d", self.user_id, len(ids)
        )
        return self.list_all()


class BudgetMonthService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, year: int, month: int) -> Optional[BudgetMonth]:
        return self.session.scalar(
            select(BudgetMonth).where(
                BudgetMonth.user_id == self.user_id,
                BudgetMonth.year == year,
                BudgetMonth.month == month,
            )
        )

    def get_by_id(self, month_id: int) -> BudgetMonth:
        budget_month = self.session.get(BudgetMonth, month_id)
        if not budget_month or budget_month.user_id != self.user_id:
            raise NotFoundError("Budget month not found")
        return budget_month

    def list_all(self) -> list[BudgetMonth]:
        stmt = (
            select(BudgetMonth)
            .where(BudgetMonth.user_id == self.user_id)
            .order_by(BudgetMonth.year.asc(), BudgetMonth.month.asc())
        )
        return list(self.session.scalars(stmt).all())

    def _latest_before(self, ref: MonthRef) -> Optional[BudgetMonth]:
        return self.session.scalar(
            select(BudgetMonth)
            .where(
                BudgetMonth.user_id == self.user_id,
                (BudgetMonth.year * 12 + BudgetMonth.month)
                < (ref.year * 12 + ref.month),
            )
            .order_by(BudgetMonth.year.desc(), BudgetMonth.month.desc())
            .limit(1)
        )

    def get_or_create_current(self, *, today: Optional[date] = None) -> BudgetMonth:
        ref = current_month(today)
        existing = self.get(ref.year, ref.month)
        if existing:
            return existing

        previous = self._latest_before(ref)
        budget_month = BudgetMonth(
            user_id=self.user_id,
            year=ref.year,
            month=ref.month,
            income=previous.income if previous else ZERO,
            savings_rate=previous.savings_rate if previous else DEFAULT_SAVINGS_RATE,
            adjustment_reason=previous.adjustment_reason if previous else None,
        )
        self.session.add(budget_month)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = self.get(ref.year, ref.month)
            if existing is None:
                raise
            return existing
        self.session.refresh(budget_month)
        logger.info(
            "budget_month_created: user_id=%s month=%s rolled_over=%s",
            self.user_id,
            budget_month.label,
            previous is not None,
        )
        return budget_month

    def update_income(self, month_id: int, data: IncomeIn) -> BudgetMonth:
        budget_month = self.get_by_id(month_id)
        budget_month.income = data.amount
        _commit(self.session, "update income")
        return budget_month

    def update_savings_rate(self, month_id: int, data: SavingsRateIn) -> BudgetMonth:
        budget_month = self.get_by_id(month_id)
        rate = data.fraction
        budget_month.savings_rate = rate
        budget_month.adjustment_reason = data.reason if rate < MIN_SAVINGS_RATE else None
        _commit(self.session, "update savings rate")
        return budget_month

    def allocation_lines(self, budget_month: BudgetMonth) -> list[AllocationLine]:
        allocations = AllocationService(self.session, self.user_id).list_for_month(
            budget_month.id
        )
        return [
            AllocationLine(
                category_id=a.category_id,
                name=a.category.name,
                color=a.category.color,
                amount=a.amount,
                is_savings=a.category.is_savings,
            )
            for a in allocations
        ]

    def summary(self, budget_month: BudgetMonth) -> MonthSummary:
        return summarize_month(
            budget_month.income,
            budget_month.savings_rate,
            self.allocation_lines(budget_month),
        )

    def overview(self, budget_month: BudgetMonth) -> dict[str, object]:
        """Everything a month page needs, as plain data."""
        lines = self.allocation_lines(budget_month)
        summary = summarize_month(budget_month.income, budget_month.savings_rate, lines)
        category_service = CategoryService(self.session, self.user_id)
        categories = category_service.list_all()
        savings = category_service.savings_category()
        amounts = {line.category_id: line.amount for line in lines}
        rows = []
        for category in categories:
            if category.is_savings:
                amount = summary.savings_amount
            else:
                amount = amounts.get(category.id, ZERO)
            rows.append({"category": category, "amount": amount})
        breakdown = allocation_breakdown(
            summary,
            lines,
            savings_name=savings.name if savings else "Savings",
            savings_color=savings.color if savings else "#6366f1",
        )
        return {
            "budget_month": budget_month,
            "summary": summary,
            "rows": rows,
            "breakdown": breakdown,
        }


class AllocationService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _owned_month(self, month_id: int) -> BudgetMonth:
        budget_month = self.session.get(BudgetMonth, month_id)
        if not budget_month or budget_month.user_id != self.user_id:
            raise NotFoundError("Budget month not found")
        return budget_month

    def list_for_month(self, month_id: int) -> list[Allocation]:
        stmt = (
            select(Allocation)
            .join(BudgetMonth, Allocation.budget_month_id == BudgetMonth.id)
            .join(Category, Allocation.category_id == Category.id)
            .options(joinedload(Allocation.category))
            .where(
                Allocation.budget_month_id == month_id,
                BudgetMonth.user_id == self.user_id,
            )
            .order_by(Category.sort_order.asc(), Category.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def set_amount(
        self, month_id: int, category_id: int, amount: Decimal
    ) -> Optional[Allocation]:
        amount = Decimal(amount)
        if amount < 0:
            raise ValueError("Amount cannot be negative")
        budget_month = self._owned_month(month_id)
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        if category.is_savings:
            raise ValueError("Savings allocation is calculated automatically")

        existing = self.session.scalar(
            select(Allocation).where(
                Allocation.budget_month_id == budget_month.id,
                Allocation.category_id == category.id,
            )
        )
        amount = to_money(amount)
        if amount == 0:
            if existing:
                self.session.delete(existing)
                _commit(self.session, "update allocation")
            return None

        if existing:
            existing.amount = amount
            allocation = existing
        else:
            allocation = Allocation(
                budget_month_id=budget_month.id,
                category_id=category.id,
                amount=amount,
            )
            self.session.add(allocation)
        _commit(self.session, "update allocation")
        self.session.refresh(allocation)
        return allocation

    def delete(self, allocation_id: int) -> None:
        allocation = self.session.scalar(
            select(Allocation)
            .join(BudgetMonth, Allocation.budget_month_id == BudgetMonth.id)
            .where(Allocation.id == allocation_id, BudgetMonth.user_id == self.user_id)
        )
        if not allocation:
            raise NotFoundError("Allocation not found")
        self.session.delete(allocation)
        _commit(self.session, "delete allocation")

    def copy_between(self, target_month_id: int, source_month_id: int) -> int:
        target = self._owned_month(target_month_id)
        source = self._owned_month(source_month_id)
        if target.id == source.id:
            raise ValueError("Cannot copy a month onto itself")

        source_rows = self.session.scalars(
            select(Allocation)
            .join(Category, Allocation.category_id == Category.id)
            .where(
                Allocation.budget_month_id == source.id,
                Category.is_savings.is_(False),
            )
        ).all()
        existing = {
            a.category_id: a
            for a in self.session.scalars(
                select(Allocation).where(Allocation.budget_month_id == target.id)
            )
        }

        for row in source_rows:
            current = existing.get(row.category_id)
            if current:
                current.amount = row.amount
            else:
                self.session.add(
                    Allocation(
                        budget_month_id=target.id,
                        category_id=row.category_id,
                        amount=row.amount,
                    )
                )
        _commit(self.session, "copy allocations")
        logger.info(
            "allocations_copied: user_id=%s from=%s to=%s count=%d",
            self.user_id,
            source.label,
            target.label,
            len(source_rows),
        )
        return len(source_rows)

    def copy_from_previous_month(
        self, target_month_id: int, *, today: Optional[date] = None
    ) -> int:
        target = self._owned_month(target_month_id)
        target_ref = MonthRef(target.year, target.month)
        if target_ref != current_month(today):
            raise ValueError("Cannot copy into a historical month")

        previous_ref = target_ref.previous()
        previous = BudgetMonthService(self.session, self.user_id).get(
            previous_ref.year, previous_ref.month
        )
        if previous is None:
            raise NotFoundError("No budget found for the previous month")
        return self.copy_between(target.id, previous.id)


@dataclass(frozen=True)
class MonthlyTrend:
    year: int
    month: int
    income: Decimal
    savings_rate: Decimal
    savings_amount: Decimal
    total_allocated: Decimal
    adjustment_reason: Optional[str]

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def as_dict(self) -> dict[str, object]:
        return {
            "year": self.year,
            "month": self.month,
            "label": self.label,
            "income": str(self.income),
            "savings_rate": str(self.savings_rate),
            "savings_amount": str(self.savings_amount),
            "total_allocated": str(self.total_allocated),
            "adjustment_reason": self.adjustment_reason,
        }


@dataclass
class CategoryTotal:
    name: str
    color: str
    total: Decimal

    def as_dict(self) -> dict[str, object]:
        return {"name": self.name, "color": self.color, "total": str(self.total)}


@dataclass(frozen=True)
class InsightsSummary:
    average_income: Decimal = ZERO
    average_savings_rate: Decimal = ZERO
    average_savings_amount: Decimal = ZERO
    total_saved: Decimal = ZERO
    total_months: int = 0
    months_with_low_savings: list[MonthlyTrend] = field(default_factory=list)
    top_categories: list[CategoryTotal] = field(default_factory=list)
    monthly_trends: list[MonthlyTrend] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "average_income": str(self.average_income),
            "average_savings_rate": str(self.average_savings_rate),
            "average_savings_amount": str(self.average_savings_amount),
            "total_saved": str(self.total_saved),
            "total_months": self.total_months,
            "months_with_low_savings": [
                m.as_dict() for m in self.months_with_low_savings
            ],
            "top_categories": [c.as_dict() for c in self.top_categories],
            "monthly_trends": [m.as_dict() for m in self.monthly_trends],
        }


class InsightsService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def summary(self) -> InsightsSummary:
        stmt = (
            select(BudgetMonth)
            .options(
                selectinload(BudgetMonth.allocations).joinedload(Allocation.category)
            )
            .where(BudgetMonth.user_id == self.user_id)
            .order_by(BudgetMonth.year.asc(), BudgetMonth.month.asc())
        )
        budget_months = self.session.scalars(stmt).all()
        if not budget_months:
            return InsightsSummary()

        trends: list[MonthlyTrend] = []
        category_totals: dict[int, CategoryTotal] = {}
        for bm in budget_months:
            allocations = sorted(
                bm.allocations, key=lambda a: (a.category.sort_order, a.category_id)
            )
            lines = [
                AllocationLine(
                    category_id=a.category_id,
                    name=a.category.name,
                    color=a.category.color,
                    amount=a.amount,
                    is_savings=a.category.is_savings,
                )
                for a in allocations
            ]
            month_summary = summarize_month(bm.income, bm.savings_rate, lines)
            trends.append(
                MonthlyTrend(
                    year=bm.year,
                    month=bm.month,
                    income=month_summary.income,
                    savings_rate=month_summary.savings_rate,
                    savings_amount=month_summary.savings_amount,
                    total_allocated=month_summary.total_allocated,
                    adjustment_reason=bm.adjustment_reason,
                )
            )
            for line in lines:
                if line.is_savings:
                    continue
                total = category_totals.get(line.category_id)
                if total:
                    total.total += to_money(line.amount)
                else:
                    category_totals[line.category_id] = CategoryTotal(
                        name=line.name, color=line.color, total=to_money(line.amount)
                    )

        count = len(trends)
        total_income = sum((t.income for t in trends), ZERO)
        total_rate = sum((t.savings_rate for t in trends), ZERO)
        total_saved = sum((t.savings_amount for t in trends), ZERO)
        # sorted() is stable, so equal totals keep first-seen order.
        top = sorted(category_totals.values(), key=lambda c: c.total, reverse=True)
        return InsightsSummary(
            average_income=to_money(total_income / count),
            average_savings_rate=(total_rate / count).quantize(Decimal("0.0001")),
            average_savings_amount=to_money(total_saved / count),
            total_saved=to_money(total_saved),
            total_months=count,
            months_with_low_savings=[
                t for t in trends if t.savings_rate < MIN_SAVINGS_RATE
            ],
            top_categories=top[:TOP_CATEGORY_LIMIT],
            monthly_trends=trends,
        )
