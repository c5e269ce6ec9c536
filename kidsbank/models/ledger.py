"""
Core Data Models for KidsBank

These models define the strict schemas for all data flowing through the system.
They are designed to:
1. Enforce type safety at runtime
2. Keep money exact (Decimal, two places, half-up rounding)
3. Be serializable for storage and logging

DESIGN DECISION: Money is never a float. Every amount is quantized to
cents when a model is built, so repeated weekly additions cannot drift.
"""

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Any, Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    model_validator,
)


CENT = Decimal("0.01")

# Index 0 is Sunday, matching the allowance weekday configuration.
DAYS_OF_WEEK = (
    "sunday",
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
)


def to_money(value: Any) -> Decimal:
    """
    Convert a number to a two-place Decimal (half-up).

    Floats go through their shortest repr so 10.10 becomes 10.10,
    not 10.0999999999999996447286321199499070644378662109375.
    """
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"Not a valid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Not a valid amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


Money = Annotated[Decimal, BeforeValidator(to_money)]


def weekday_index(day: Any) -> Optional[int]:
    """
    Resolve an allowance weekday setting to 0 (Sunday) .. 6 (Saturday).

    Accepts a day name in any case or a digit 0-6. Returns None when the
    value is not recognised.
    """
    if isinstance(day, bool):
        return None
    if isinstance(day, int):
        return day if 0 <= day <= 6 else None
    if not isinstance(day, str):
        return None
    text = day.strip().lower()
    if text.isdigit():
        index = int(text)
        return index if 0 <= index <= 6 else None
    try:
        return DAYS_OF_WEEK.index(text)
    except ValueError:
        return None


def sunday_based_weekday(day: date) -> int:
    """Weekday of a date with Sunday as 0 (date.weekday() uses Monday as 0)."""
    return (day.weekday() + 1) % 7


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class Role(str, Enum):
    """Family member role."""
    PARENT = "parent"
    CHILD = "child"


class TransactionType(str, Enum):
    """
    Kinds of ledger entries.

    Allowances are only ever created by the allowance scheduler.
    """
    ALLOWANCE = "allowance"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


# =============================================================================
# FAMILY
# =============================================================================

class FamilyMember(BaseModel):
    """
    A configured family member.

    This is configuration data (see FamilySettings), used once by the
    setup flow to create users and accounts.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(
        ...,
        min_length=1,
        max_length=50,
        description="Display name, also used to log in"
    )
    role: Role
    allowance: Money = Field(
        default=Decimal("0.00"),
        ge=0,
        description="Initial weekly allowance (children only)"
    )

    @property
    def user_id(self) -> str:
        return self.name.lower()


class User(BaseModel):
    """A person who can log in."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(
        ...,
        min_length=1,
        description="Lower-cased name"
    )
    name: str = Field(..., min_length=1, max_length=50)
    role: Role
    pin_hash: str = Field(
        ...,
        min_length=1,
        description="Hashed login PIN"
    )
    avatar_url: Optional[str] = None

    @property
    def is_parent(self) -> bool:
        return self.role == Role.PARENT


# =============================================================================
# LEDGER
# =============================================================================

class Account(BaseModel):
    """
    A child's virtual bank account.

    CRITICAL: The balance can never go below zero.
    """

    id: str = Field(
        ...,
        min_length=1,
        description="Account ID (same as the owner's user ID)"
    )
    user_id: str
    user_name: str
    balance: Money = Field(
        default=Decimal("0.00"),
        ge=0,
        description="Current balance"
    )
    allowance: Money = Field(
        default=Decimal("0.00"),
        description="Weekly allowance; zero or less means no allowance"
    )
    updated_at: Optional[datetime] = None


class Transaction(BaseModel):
    """
    A single ledger entry.

    Transactions are append-only: frozen once created.
    """
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique transaction ID"
    )
    account_id: str
    type: TransactionType
    amount: Money = Field(
        ...,
        description="Signed amount (withdrawals are negative)"
    )
    balance_after: Money = Field(
        ...,
        ge=0,
        description="Account balance right after this entry"
    )
    comment: str = Field(default="", max_length=200)
    performed_by: str = Field(
        ...,
        min_length=1,
        description="Who made the entry ('System' for allowances)"
    )
    created_at: datetime = Field(default_factory=datetime.now)


class AllowancePayout(BaseModel):
    """One child's allowance for one allowance date."""

    account_id: str
    amount: Money = Field(..., gt=0)


class TransactionFilter(BaseModel):
    """
    Filters for transaction history.

    Date bounds are inclusive and cover whole days.
    """

    account_id: Optional[str] = None
    type: Optional[TransactionType] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    limit: int = Field(default=50, ge=1, le=500)

    @model_validator(mode='after')
    def validate_dates(self) -> 'TransactionFilter':
        if self.date_from and self.date_to and self.date_to < self.date_from:
            raise ValueError("date_to cannot be before date_from")
        return self

    def matches(self, txn: Transaction) -> bool:
        if self.account_id and txn.account_id != self.account_id:
            return False
        if self.type and txn.type != self.type:
            return False
        day = txn.created_at.date()
        if self.date_from and day < self.date_from:
            return False
        if self.date_to and day > self.date_to:
            return False
        return True


# =============================================================================
# SAVINGS GOALS
# =============================================================================

class SavingsGoal(BaseModel):
    """
    Something a child is saving for.

    Lower sort_order means higher priority. Goals without a sort_order
    (created before ordering existed) come after all ordered goals.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    account_id: str
    name: str = Field(..., min_length=1, max_length=100)
    target_amount: Money = Field(
        ...,
        gt=0,
        description="Amount needed to reach the goal"
    )
    target_date: Optional[date] = None
    emoji: Optional[str] = Field(default=None, max_length=16)
    is_completed: bool = False
    sort_order: Optional[int] = Field(default=None, ge=0)
    created_at: datetime = Field(default_factory=datetime.now)

    def priority_key(self) -> tuple:
        """Sort key: ordered goals first, then by creation time."""
        if self.sort_order is None:
            return (1, 0, self.created_at)
        return (0, self.sort_order, self.created_at)


# =============================================================================
# SETTINGS
# =============================================================================

class BankSettings(BaseModel):
    """
    The singleton settings record.

    allowance_day is stored as written; an unrecognised value simply
    disables allowance payments until it is fixed.
    """

    setup_complete: bool = False
    allowance_day: str = Field(default="sunday")
    last_allowance_date: Optional[date] = Field(
        default=None,
        description="Last allowance date fully posted; None if never run"
    )

    @property
    def allowance_weekday(self) -> Optional[int]:
        return weekday_index(self.allowance_day)
