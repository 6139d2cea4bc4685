"""
Month arithmetic for a budget: savings, totals and what is left over.

Every amount is a ``Decimal``; savings amounts are quantized to cents.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Optional

MIN_SAVINGS_RATE = Decimal("0.20")
CENT = Decimal("0.01")
ZERO = Decimal("0")


@dataclass(frozen=True)
class AllocationLine:
    category_id: int
    name: str
    color: str
    amount: Decimal
    is_savings: bool = False


@dataclass(frozen=True)
class MonthSummary:
    income: Decimal
    savings_rate: Decimal
    savings_amount: Decimal
    allocated: Decimal  # non-savings allocations only
    total_allocated: Decimal
    remaining: Decimal

    @property
    def is_over_budget(self) -> bool:
        return self.remaining < 0

    @property
    def is_low_savings(self) -> bool:
        return self.savings_rate < MIN_SAVINGS_RATE

    def as_dict(self) -> dict[str, object]:
        return {
            "income": str(self.income),
            "savings_rate": str(self.savings_rate),
            "savings_amount": str(self.savings_amount),
            "allocated": str(self.allocated),
            "total_allocated": str(self.total_allocated),
            "remaining": str(self.remaining),
            "is_over_budget": self.is_over_budget,
        }


def to_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def savings_amount(income: Decimal, savings_rate: Decimal) -> Decimal:
    return to_money(Decimal(income) * Decimal(savings_rate))


def summarize_month(
    income: Decimal,
    savings_rate: Decimal,
    lines: Iterable[AllocationLine],
) -> MonthSummary:
    income = to_money(income)
    savings = savings_amount(income, savings_rate)
    allocated = sum(
        (to_money(line.amount) for line in lines if not line.is_savings), ZERO
    )
    total = savings + allocated
    return MonthSummary(
        income=income,
        savings_rate=Decimal(savings_rate),
        savings_amount=savings,
        allocated=to_money(allocated),
        total_allocated=to_money(total),
        remaining=to_money(income - total),
    )


def allocation_breakdown(
    summary: MonthSummary,
    lines: Iterable[AllocationLine],
    *,
    savings_name: str = "Savings",
    savings_color: str = "#6366f1",
) -> list[dict[str, object]]:
    """Chart slices for a month: savings first, empty slices dropped."""
    slices: list[dict[str, object]] = [
        {"name": savings_name, "color": savings_color, "value": summary.savings_amount}
    ]
    for line in lines:
        if line.is_savings:
            continue
        slices.append({"name": line.name, "color": line.color, "value": line.amount})
    return [s for s in slices if s["value"] > 0]


INVALID_AMOUNT = "Please enter a valid number"


def _drop_grouping(number: str, separator: str) -> str:
    head, *groups = number.split(separator)
    if not head or any(len(group) != 3 or not group.isdigit() for group in groups):
        raise ValueError(INVALID_AMOUNT)
    return head + "".join(groups)


def parse_amount(value: Optional[str]) -> Decimal:
    """Parse a user-entered amount such as ``"1 250,50"`` or ``"$1,250.50"``.

    The right-most of ``,``/``.`` is the decimal point when both appear. A lone
    comma followed by one or two digits is a decimal comma; any other commas
    (and repeated dots) must be thousands groups of three digits.
    """
    clean = (value or "").strip()
    for token in ("Le", "$", "£", "€", "₦", " "):
        clean = clean.replace(token, "")
    if not clean:
        return ZERO
    if "," in clean and "." in clean:
        point = "," if clean.rfind(",") > clean.rfind(".") else "."
        whole, _, fraction = clean.rpartition(point)
        clean = _drop_grouping(whole, "." if point == "," else ",") + "." + fraction
    elif "," in clean:
        whole, _, fraction = clean.rpartition(",")
        if clean.count(",") == 1 and 1 <= len(fraction) <= 2:
            clean = f"{whole}.{fraction}"
        else:
            clean = _drop_grouping(clean, ",")
    elif clean.count(".") > 1:
        clean = _drop_grouping(clean, ".")
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError(INVALID_AMOUNT) from exc
    if not amount.is_finite():
        raise ValueError(INVALID_AMOUNT)
    return amount
