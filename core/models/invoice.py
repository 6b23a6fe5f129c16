"""Invoice domain models.

Amounts are Decimal in the invoice currency. ``total_amount`` is the gross
(pre-credit) figure; credits reduce ``amount_due``, never the total.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import Field

from core.models.base import BillingModel, ZERO


class InvoiceStatus(str, Enum):
    """Invoice lifecycle status."""

    DRAFT = "DRAFT"
    ISSUED = "ISSUED"
    PAID = "PAID"
    LOCKED = "LOCKED"
    CANCELLED = "CANCELLED"


class InvoiceLineItem(BillingModel):
    """Priced cost for one SKU group on an invoice."""

    line_number: int
    sku_group_code: str
    description: str
    raw_amount: Decimal
    amount: Decimal
    entry_count: int = 0
    discount_rate: Decimal | None = None
    pricing_rule_id: UUID | None = None


class Invoice(BillingModel):
    """Full invoice entity as stored."""

    id: UUID
    invoice_run_id: UUID
    invoice_number: str
    customer_id: UUID
    billing_month: str
    status: InvoiceStatus = InvoiceStatus.DRAFT
    subtotal: Decimal
    tax_amount: Decimal = ZERO
    total_amount: Decimal
    credit_amount: Decimal = ZERO
    amount_due: Decimal
    currency: str
    issue_date: date
    due_date: date
    locked_at: datetime | None = None
    line_items: list[InvoiceLineItem] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime | None = None

    @property
    def is_locked(self) -> bool:
        """Whether monetary fields are frozen."""
        return self.locked_at is not None


class InvoiceSummary(BillingModel):
    """Invoice as listed on a run detail."""

    id: UUID
    invoice_number: str
    customer_id: UUID
    status: InvoiceStatus
    total_amount: Decimal
    credit_amount: Decimal = ZERO
    amount_due: Decimal
    currency: str
    issue_date: date
    due_date: date

    @classmethod
    def from_invoice(cls, invoice: Invoice) -> "InvoiceSummary":
        return cls.model_validate(invoice.model_dump())


class InvoiceTotals(BillingModel):
    """Aggregate of non-cancelled invoices for one billing month."""

    subtotal: Decimal = ZERO
    tax_amount: Decimal = ZERO
    total_amount: Decimal = ZERO
    invoice_count: int = 0


class CustomerInvoiced(BillingModel):
    """Invoiced total for one customer in a billing month."""

    customer_id: UUID
    invoiced_amount: Decimal = ZERO
