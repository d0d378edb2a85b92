"""Pydantic models for the shared-expense ledger.

Records are plain data. Behavior lives in the service modules
(splits, ledger, balances, reminders, groups, expenses).
"""

from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    Field,
    computed_field,
    field_serializer,
    field_validator,
    model_validator,
)

from .errors import InvalidSplit

ZERO = Decimal("0")
CENT = Decimal("0.01")


def to_decimal(v: Any) -> Decimal:
    """Coerce a number to Decimal, going through str for floats."""
    if isinstance(v, Decimal):
        return v
    if isinstance(v, float):
        return Decimal(str(v))
    return Decimal(v)


class Lifecycle(str, Enum):
    """Soft-delete state shared by every long-lived record."""

    ACTIVE = "active"
    DEACTIVATED = "deactivated"


class Role(str, Enum):
    """Role of a member inside a group."""

    ADMIN = "admin"
    MEMBER = "member"


class SplitMethod(str, Enum):
    """How an expense is split."""

    EQUAL = "equal"
    CUSTOM = "custom"  # Specific amounts per person
    PERCENTAGE = "percentage"  # Percentage-based split


class Category(str, Enum):
    """Expense categories."""

    FOOD = "food"
    TRANSPORT = "transport"
    ACCOMMODATION = "accommodation"
    ENTERTAINMENT = "entertainment"
    SHOPPING = "shopping"
    UTILITIES = "utilities"
    GROCERIES = "groceries"
    HEALTHCARE = "healthcare"
    EDUCATION = "education"
    OTHER = "other"


class SettlementMethod(str, Enum):
    """How a debt was closed."""

    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    PROMPTPAY = "promptpay"
    OTHER = "other"
    NETTED = "netted"  # Cancelled against a mutual debt


class DebtStatus(str, Enum):
    """Derived state of a debt."""

    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    NETTED = "netted"


# === Users ===


class PromptPay(BaseModel):
    """PromptPay proxy id (phone number or national id)."""

    kind: Literal["promptpay"] = "promptpay"
    id: str


class BankAccount(BaseModel):
    """Plain bank account details."""

    kind: Literal["bank"] = "bank"
    bank_name: str
    account_number: str
    account_name: str


PaymentInfo = Annotated[PromptPay | BankAccount, Field(discriminator="kind")]


class User(BaseModel):
    """A person known to the ledger, keyed by the identity provider's stable id."""

    id: str
    display_name: str
    avatar_url: str = ""
    payment_info: PaymentInfo | None = None
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    created_at: datetime = Field(default_factory=datetime.now)
    last_login_at: datetime = Field(default_factory=datetime.now)


class IdentityProfile(BaseModel):
    """What the identity provider tells us about a bearer credential."""

    user_id: str
    display_name: str
    avatar_url: str = ""


# === Groups ===


class Member(BaseModel):
    """A user's membership in a group."""

    user_id: str
    role: Role = Role.MEMBER
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    joined_at: datetime = Field(default_factory=datetime.now)


class Group(BaseModel):
    """A bounded set of users who share expenses."""

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(min_length=1, max_length=50)
    description: str = ""
    currency: str = "THB"
    members: list[Member] = Field(default_factory=list)
    created_by: str
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    reminder_interval_hours: int = Field(default=24, gt=0)
    created_at: datetime = Field(default_factory=datetime.now)


# === Expenses ===


class Split(BaseModel):
    """A single participant's share of an expense."""

    user_id: str
    amount: Decimal
    percentage: Decimal = ZERO
    is_paid: bool = False
    paid_at: datetime | None = None

    @field_validator("amount", "percentage", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> Decimal:
        return to_decimal(v)

    @field_serializer("amount", "percentage")
    def serialize_amount(self, v: Decimal) -> str:
        return str(v)


def validate_splits(splits: Sequence[Split], total: Decimal, tolerance: Decimal = CENT) -> None:
    """
    Validate that splits sum to the total expense amount.

    Args:
        splits: List of splits to validate
        total: Expected total amount
        tolerance: Acceptable difference (default 0.01 for rounding)

    Raises:
        InvalidSplit: If splits don't sum to total within tolerance
    """
    splits_sum = sum((s.amount for s in splits), ZERO)
    diff = abs(splits_sum - total)
    if diff > tolerance:
        raise InvalidSplit(
            f"Splits sum to {splits_sum} but expense total is {total} "
            f"(difference: {diff}, tolerance: {tolerance})"
        )


class Expense(BaseModel):
    """A purchase paid by one member and shared by several."""

    id: UUID = Field(default_factory=uuid4)
    title: str = Field(min_length=1, max_length=100)
    description: str = ""
    amount: Decimal
    currency: str = "THB"
    category: Category = Category.OTHER
    paid_by: str
    group_id: UUID
    split_method: SplitMethod = SplitMethod.EQUAL
    splits: list[Split]
    expense_date: datetime = Field(default_factory=datetime.now)
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> Decimal:
        return to_decimal(v)

    @field_serializer("amount")
    def serialize_amount(self, v: Decimal) -> str:
        return str(v)

    @model_validator(mode="after")
    def check_total(self) -> "Expense":
        if self.amount <= ZERO:
            raise ValueError("Expense amount must be greater than 0")
        try:
            validate_splits(self.splits, self.amount)
        except InvalidSplit as e:
            raise ValueError(e.message) from e
        return self

    @property
    def is_settled(self) -> bool:
        """Every split other than the payer's has been paid."""
        return all(s.is_paid or s.user_id == self.paid_by for s in self.splits)

    @property
    def total_owed(self) -> Decimal:
        return sum((s.amount for s in self.splits if s.user_id != self.paid_by), ZERO)

    @property
    def remaining_debt(self) -> Decimal:
        return sum(
            (s.amount for s in self.splits if s.user_id != self.paid_by and not s.is_paid),
            ZERO,
        )


# === Debts ===


class PartialPayment(BaseModel):
    """One payment (or netting adjustment) against a debt."""

    amount: Decimal
    paid_at: datetime = Field(default_factory=datetime.now)
    note: str = Field(default="", max_length=200)
    confirmed_by: str | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> Decimal:
        return to_decimal(v)

    @field_serializer("amount")
    def serialize_amount(self, v: Decimal) -> str:
        return str(v)


DebtKey = tuple[str, str, UUID]


class Debt(BaseModel):
    """
    A standing obligation of one user to another, originating from one split.

    `amount` is the outstanding balance; `original_amount` minus the sum of
    `payments` always equals it.
    """

    id: UUID = Field(default_factory=uuid4)
    debtor: str
    creditor: str
    expense_id: UUID
    group_id: UUID
    amount: Decimal
    original_amount: Decimal
    currency: str = "THB"
    payments: list[PartialPayment] = Field(default_factory=list)
    is_paid: bool = False
    paid_at: datetime | None = None
    settlement_method: SettlementMethod | None = None
    settlement_proof_url: str = ""
    due_date: datetime | None = None
    reminder_count: int = 0
    last_reminder_sent: datetime | None = None
    next_reminder_date: datetime | None = None
    notes: str = Field(default="", max_length=500)
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    created_at: datetime = Field(default_factory=datetime.now)

    @field_validator("amount", "original_amount", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> Decimal:
        return to_decimal(v)

    @field_serializer("amount", "original_amount")
    def serialize_amount(self, v: Decimal) -> str:
        return str(v)

    @model_validator(mode="after")
    def check_amounts(self) -> "Debt":
        if self.debtor == self.creditor:
            raise ValueError("A user cannot owe themselves")
        if self.amount < ZERO or self.amount > self.original_amount:
            raise ValueError(
                f"Outstanding amount {self.amount} must be within 0..{self.original_amount}"
            )
        if not self.is_paid and self.amount <= ZERO:
            raise ValueError("An unpaid debt must have a positive outstanding amount")
        return self

    @property
    def key(self) -> DebtKey:
        """Uniqueness key among open (active, unpaid) debts."""
        return (self.debtor, self.creditor, self.expense_id)

    @property
    def total_paid(self) -> Decimal:
        return sum((p.amount for p in self.payments), ZERO)

    @property
    def payment_progress(self) -> int:
        """Percentage of the original amount paid so far."""
        if self.original_amount == ZERO:
            return 100
        return int((self.total_paid / self.original_amount * 100).to_integral_value())

    @property
    def status(self) -> DebtStatus:
        if self.is_paid:
            if self.settlement_method == SettlementMethod.NETTED:
                return DebtStatus.NETTED
            return DebtStatus.PAID
        if self.amount < self.original_amount:
            return DebtStatus.PARTIALLY_PAID
        return DebtStatus.PENDING


class Transfer(BaseModel):
    """A suggested payment produced by balance-sheet settlement."""

    debtor: str
    creditor: str
    amount: Decimal

    @field_serializer("amount")
    def serialize_amount(self, v: Decimal) -> str:
        return str(v)


# === Read-side summaries ===


class AmountCount(BaseModel):
    """Total amount and number of debts in a bucket."""

    amount: Decimal = ZERO
    count: int = 0

    @field_serializer("amount")
    def serialize_amount(self, v: Decimal) -> str:
        return str(v)


class MemberPosition(BaseModel):
    """What is owed to a member (`owed`) and what they owe (`owing`)."""

    owed: Decimal = ZERO
    owing: Decimal = ZERO

    @field_serializer("owed", "owing")
    def serialize_amount(self, v: Decimal) -> str:
        return str(v)

    @property
    def net(self) -> Decimal:
        return self.owed - self.owing


class GroupSummary(BaseModel):
    """Debt totals for one group."""

    group_id: UUID
    currency: str
    total: AmountCount = Field(default_factory=AmountCount)
    settled: AmountCount = Field(default_factory=AmountCount)
    pending: AmountCount = Field(default_factory=AmountCount)
    overdue_count: int = 0
    members: dict[str, MemberPosition] = Field(default_factory=dict)


class UserSummary(BaseModel):
    """Debt totals for one user across groups."""

    user_id: str
    owed_to_me: AmountCount = Field(default_factory=AmountCount)
    i_owe: AmountCount = Field(default_factory=AmountCount)
    net_balance: Decimal = ZERO
    by_group: dict[str, Decimal] = Field(default_factory=dict)
    partial: bool = False

    @field_serializer("net_balance")
    def serialize_amount(self, v: Decimal) -> str:
        return str(v)

    @field_serializer("by_group")
    def serialize_by_group(self, v: dict[str, Decimal]) -> dict[str, str]:
        return {k: str(val) for k, val in v.items()}


class GroupStats(BaseModel):
    """Headline numbers for one group."""

    group_id: UUID
    currency: str
    member_count: int = 0
    expense_count: int = 0
    total_expenses: Decimal = ZERO
    outstanding: Decimal = ZERO

    @field_serializer("total_expenses", "outstanding")
    def serialize_amount(self, v: Decimal) -> str:
        return str(v)


class ExpensePage(BaseModel):
    """One page of a longer expense listing."""

    items: list[Expense]
    page: int
    limit: int
    total: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def pages(self) -> int:
        return -(-self.total // self.limit)
