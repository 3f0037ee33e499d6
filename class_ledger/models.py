from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, computed_field, field_validator, model_validator

from .exceptions import InvalidCategoryError


# classes_included value used by the studio for "unlimited" packages
UNLIMITED_CLASSES = 999
RENEWAL_PERIOD_DAYS = 30
MAX_RENEWAL_MONTHS = 999


class Category(str, Enum):
    GROUP = "group"
    PRIVATE = "private"

    @classmethod
    def parse(cls, value: Any) -> "Category":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            category = _CATEGORY_ALIASES.get(value.strip().lower())
            if category is not None:
                return category
        raise InvalidCategoryError(value)


_CATEGORY_ALIASES = {
    "group": Category.GROUP,
    "grupal": Category.GROUP,
    "private": Category.PRIVATE,
    "privada": Category.PRIVATE,
}


class PackageStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class AdminPolicy(str, Enum):
    """How a negative balance is treated when a package renews."""

    OVERRIDE = "override"
    DEDUCT = "deduct"

    def renewed_balance(self, classes_included: int, previous: int) -> int:
        if self == AdminPolicy.DEDUCT:
            return classes_included + min(previous, 0)
        return classes_included


class AccountState(str, Enum):
    NO_ACTIVE_PACKAGE = "no_active_package"
    VALID_ACTIVE = "valid_active"
    LAPSED_ACTIVE = "lapsed_active"
    RENEWED_ACTIVE = "renewed_active"
    EXHAUSTED_EXPIRED = "exhausted_expired"


class PackageRecord(BaseModel):
    id: UUID
    user_id: str
    category: Category
    package_name: Optional[str] = None
    classes_included: int = Field(..., ge=0)
    start_date: date
    end_date: date
    status: PackageStatus = PackageStatus.ACTIVE
    auto_renew: bool = False
    renewal_months_remaining: int = Field(default=0, ge=0)
    renewals_applied: int = Field(default=0, ge=0)
    last_renewal_date: Optional[date] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("category", mode="before")
    @classmethod
    def _parse_category(cls, value: Any) -> Category:
        return Category.parse(value)

    @property
    def is_unlimited(self) -> bool:
        return self.classes_included >= UNLIMITED_CLASSES

    @property
    def is_active(self) -> bool:
        return self.status == PackageStatus.ACTIVE

    def is_lapsed(self, today: date) -> bool:
        return self.end_date < today

    def can_renew(self) -> bool:
        return self.auto_renew and self.renewal_months_remaining > 0

    def renewal_end_date(self, renewals: int, period_days: int = RENEWAL_PERIOD_DAYS) -> date:
        # Measured from start_date, never compounded from end_date.
        return self.start_date + timedelta(days=period_days * renewals)


class CreatePackageRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    category: Category
    classes_included: int = Field(..., ge=0)
    start_date: date
    end_date: date
    auto_renew: bool = False
    renewal_months: int = Field(default=0, ge=0, le=MAX_RENEWAL_MONTHS)
    package_name: Optional[str] = None
    override_negative_balance: Optional[bool] = Field(
        default=None,
        description=(
            "True ignores carried debt, False deducts it; "
            "None follows the admin policy"
        ),
    )

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "client-42",
            "category": "group",
            "classes_included": 8,
            "start_date": "2025-01-01",
            "end_date": "2025-01-31",
            "auto_renew": True,
            "renewal_months": 3,
            "package_name": "8 Group Classes",
        }
    })

    @field_validator("category", mode="before")
    @classmethod
    def _parse_category(cls, value: Any) -> Category:
        return Category.parse(value)

    @model_validator(mode="after")
    def _check_dates(self) -> "CreatePackageRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class UpdateRenewalRequest(BaseModel):
    months: int = Field(..., ge=1, le=MAX_RENEWAL_MONTHS)


class ReactivatePackageRequest(BaseModel):
    months: int = Field(default=1, ge=1, le=MAX_RENEWAL_MONTHS)
    validity_days: int = Field(default=RENEWAL_PERIOD_DAYS, ge=1)


class CreditBalance(BaseModel):
    user_id: str
    category: Category
    balance: int

    @computed_field
    @property
    def available(self) -> int:
        return max(self.balance, 0)


class ReconcileResult(BaseModel):
    user_id: str
    category: Category
    state: AccountState
    counter: int
    record: Optional[PackageRecord] = None
    changed: bool = False


class PackageHistoryResponse(BaseModel):
    user_id: str
    records: list[PackageRecord]
    total_count: int
    active: dict[Category, Optional[PackageRecord]]


class SweepReport(BaseModel):
    reconciled: int = 0
    changed: int = 0
    failed: int = 0
    states: dict[AccountState, int] = Field(default_factory=dict)
