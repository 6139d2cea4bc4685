import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    field_validator,
    model_validator,
)

from models import CurrencyCode

MIN_SAVINGS_PERCENT = Decimal("20")
MAX_INCOME = Decimal("999999999999")
DEFAULT_CATEGORY_COLOR = "#6366f1"

_HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")


def _check_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters")
    if not re.search(r"[A-Z]", value):
        raise ValueError("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", value):
        raise ValueError("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", value):
        raise ValueError("Password must contain at least one number")
    return value


def _clean_category_name(value: str) -> str:
    clean = value.strip()
    if not clean:
        raise ValueError("Category name is required")
    if len(clean) > 50:
        raise ValueError("Category name must be 50 characters or less")
    return clean


def _check_color(value: str) -> str:
    if not _HEX_COLOR.match(value):
        raise ValueError("Please enter a valid hex color")
    return value


class SignUpIn(BaseModel):
    email: EmailStr
    password: str
    confirm_password: str

    @field_validator("password")
    @classmethod
    def _strong_password(cls, value: str) -> str:
        return _check_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self) -> "SignUpIn":
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class SignInIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class PasswordResetIn(BaseModel):
    email: EmailStr


class PasswordUpdateIn(BaseModel):
    password: str
    confirm_password: str

    @field_validator("password")
    @classmethod
    def _strong_password(cls, value: str) -> str:
        return _check_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self) -> "PasswordUpdateIn":
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class OnboardingIn(BaseModel):
    income: Decimal = Field(..., gt=0, le=MAX_INCOME)
    currency: CurrencyCode


class CurrencyIn(BaseModel):
    currency: CurrencyCode


class IncomeIn(BaseModel):
    amount: Decimal = Field(..., gt=0, le=MAX_INCOME)


class SavingsRateIn(BaseModel):
    """Savings rate as entered by the user, in percent (0-100)."""

    rate: Decimal = Field(..., ge=0, le=100)
    reason: Optional[str] = None

    @field_validator("rate")
    @classmethod
    def _stored_precision(cls, value: Decimal) -> Decimal:
        # Stored as a fraction with 4 places, so 2 places of percent.
        return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    @model_validator(mode="after")
    def _reason_required_below_policy(self) -> "SavingsRateIn":
        reason = (self.reason or "").strip()
        if self.rate < MIN_SAVINGS_PERCENT and len(reason) < 10:
            raise ValueError(
                "Please provide a reason (at least 10 characters) "
                "for saving less than 20%"
            )
        self.reason = reason or None
        return self

    @property
    def fraction(self) -> Decimal:
        return (self.rate / Decimal("100")).quantize(Decimal("0.0001"))


class CategoryIn(BaseModel):
    name: str
    color: str = DEFAULT_CATEGORY_COLOR

    @field_validator("name")
    @classmethod
    def _name(cls, value: str) -> str:
        return _clean_category_name(value)

    @field_validator("color")
    @classmethod
    def _color(cls, value: str) -> str:
        return _check_color(value)


class CategoryUpdateIn(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _clean_category_name(value)

    @field_validator("color")
    @classmethod
    def _color(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _check_color(value)


class CategoryReorderIn(BaseModel):
    category_ids: list[Annotated[int, Field(gt=0)]] = Field(
        ..., min_length=1, max_length=100
    )

    @field_validator("category_ids")
    @classmethod
    def _unique(cls, value: list[int]) -> list[int]:
        if len(set(value)) != len(value):
            raise ValueError("Category list contains duplicates")
        return value


class AllocationIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category_id: int = Field(..., gt=0)
    amount: Decimal = Field(..., ge=0, le=MAX_INCOME)
