"""Credit domain models.

Invariants held by storage and the ledger:
- 0 <= remaining_amount <= total_amount
- status is DEPLETED iff remaining_amount == 0
- sum(entry.amount_applied) == total_amount - remaining_amount
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import Field

from core.models.base import BillingModel, ZERO


class CreditType(str, Enum):
    """Where a credit came from."""

    PROMOTIONAL = "PROMOTIONAL"
    COMMITMENT = "COMMITMENT"
    GOODWILL = "GOODWILL"
    REFUND = "REFUND"


class CreditStatus(str, Enum):
    """Credit lifecycle status."""

    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    DEPLETED = "DEPLETED"


class CreditCreate(BillingModel):
    """Data required to create a credit. Date/amount rules are checked by CreditService."""

    customer_id: UUID
    type: CreditType
    total_amount: Decimal
    currency: str | None = Field(None, min_length=3, max_length=3)
    valid_from: date
    valid_to: date
    allow_carry_over: bool = False
    billing_account_id: str | None = Field(None, max_length=100)
    description: str | None = Field(None, max_length=2000)


class Credit(BillingModel):
    """A prepaid or goodwill balance a customer draws down against invoices."""

    id: UUID
    customer_id: UUID
    billing_account_id: str | None = None
    type: CreditType
    total_amount: Decimal
    remaining_amount: Decimal
    currency: str
    valid_from: date
    valid_to: date
    allow_carry_over: bool = False
    status: CreditStatus = CreditStatus.ACTIVE
    description: str | None = None
    created_at: datetime
    updated_at: datetime | None = None

    def is_usable_on(self, on: date) -> bool:
        """ACTIVE, positive balance, and on falls inside [valid_from, valid_to]."""
        return (
            self.status == CreditStatus.ACTIVE
            and self.remaining_amount > ZERO
            and self.valid_from <= on <= self.valid_to
        )


class CreditLedgerEntry(BillingModel):
    """One application of a credit to an invoice. Append-only."""

    id: UUID
    credit_id: UUID
    invoice_id: UUID
    invoice_run_id: UUID | None = None
    amount_applied: Decimal
    remaining_before: Decimal
    remaining_after: Decimal
    created_at: datetime


class CreditWithLedger(BillingModel):
    """A credit and every ledger entry posted against it."""

    credit: Credit
    entries: list[CreditLedgerEntry] = Field(default_factory=list)

    @property
    def total_applied(self) -> Decimal:
        return sum((e.amount_applied for e in self.entries), ZERO)


class CreditApplication(BillingModel):
    """Outcome of applying a customer's credits to one invoice."""

    amount_covered: Decimal = ZERO
    entries: list[CreditLedgerEntry] = Field(default_factory=list)
    depleted_credit_ids: list[UUID] = Field(default_factory=list)


class CreditTypeSummary(BillingModel):
    count: int = 0
    remaining_amount: Decimal = ZERO


class CreditSummary(BillingModel):
    """Aggregate view of a customer's usable credits."""

    customer_id: UUID
    total_active_credits: int = 0
    remaining_by_currency: dict[str, Decimal] = Field(default_factory=dict)
    credits_by_type: dict[CreditType, CreditTypeSummary] = Field(default_factory=dict)
