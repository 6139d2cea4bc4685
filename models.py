from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CurrencyCode(str, Enum):
    sle = "SLE"
    usd = "USD"
    gbp = "GBP"
    eur = "EUR"
    ngn = "NGN"


CURRENCY_SYMBOLS = {
    CurrencyCode.sle: "Le",
    CurrencyCode.usd: "$",
    CurrencyCode.gbp: "£",
    CurrencyCode.eur: "€",
    CurrencyCode.ngn: "₦",
}

CURRENCY_NAMES = {
    CurrencyCode.sle: "Sierra Leone Leone",
    CurrencyCode.usd: "US Dollar",
    CurrencyCode.gbp: "British Pound",
    CurrencyCode.eur: "Euro",
    CurrencyCode.ngn: "Nigerian Naira",
}

CURRENCY_CODE_ENUM = SAEnum(
    CurrencyCode,
    name="currencycode",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)

MONEY = Numeric(14, 2)
RATE = Numeric(5, 4)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    # Subject id issued by the identity provider.
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.sle
    )

    categories: Mapped[list["Category"]] = relationship(
        "Category",
        back_populates="user",
        cascade="all, delete-orphan",
        order_by="Category.sort_order",
    )
    budget_months: Mapped[list["BudgetMonth"]] = relationship(
        "BudgetMonth",
        back_populates="user",
        cascade="all, delete-orphan",
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#6366f1")
    is_savings: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="categories")
    allocations: Mapped[list["Allocation"]] = relationship(
        "Allocation", back_populates="category", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
        Index("ix_categories_user_sort", "user_id", "sort_order"),
    )


class BudgetMonth(Base, TimestampMixin):
    __tablename__ = "budget_months"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    income: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    savings_rate: Mapped[Decimal] = mapped_column(
        RATE, nullable=False, default=Decimal("0.20")
    )
    adjustment_reason: Mapped[Optional[str]] = mapped_column(Text)

    user: Mapped["User"] = relationship("User", back_populates="budget_months")
    allocations: Mapped[list["Allocation"]] = relationship(
        "Allocation", back_populates="budget_month", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "year", "month", name="uq_budget_month_user_month"),
        CheckConstraint("income >= 0", name="ck_budget_month_income_positive"),
        CheckConstraint(
            "savings_rate >= 0 AND savings_rate <= 1",
            name="ck_budget_month_savings_rate_range",
        ),
        CheckConstraint("month >= 1 AND month <= 12", name="ck_budget_month_month"),
    )

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


class Allocation(Base, TimestampMixin):
    __tablename__ = "allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_month_id: Mapped[int] = mapped_column(
        ForeignKey("budget_months.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    budget_month: Mapped["BudgetMonth"] = relationship(
        "BudgetMonth", back_populates="allocations"
    )
    category: Mapped["Category"] = relationship(
        "Category", back_populates="allocations"
    )

    __table_args__ = (
        UniqueConstraint(
            "budget_month_id", "category_id", name="uq_allocation_month_category"
        ),
        CheckConstraint("amount > 0", name="ck_allocation_amount_positive"),
    )
