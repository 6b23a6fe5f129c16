"""Invoice run domain models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import Field, computed_field

from core.models.base import BillingModel, ZERO
from core.models.credit import Credit
from core.models.invoice import InvoiceSummary
from core.models.pricing import PricingRule
from core.models.special_rule import SpecialRule, SpecialRuleEffect


class InvoiceRunStatus(str, Enum):
    """
    Run state machine.

    PENDING -> RUNNING -> SUCCEEDED
                       -> FAILED
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class InvoiceRunCreate(BillingModel):
    """Data required to register a run."""

    billing_month: str
    source_key: str
    ingestion_batch_id: UUID | None = None
    target_customer_id: UUID | None = None
    created_by: UUID | None = None


class InvoiceRunSummary(BillingModel):
    """Counters written when a run succeeds."""

    customer_count: int = 0
    project_count: int = 0
    row_count: int = 0
    currency_breakdown: dict[str, Decimal] = Field(default_factory=dict)
    total_invoices: int = 0
    total_amount: Decimal = ZERO
    total_credits_applied: Decimal = ZERO
    source_ingestion_batch_ids: list[UUID] = Field(default_factory=list)
    source_time_range_start: datetime | None = None
    source_time_range_end: datetime | None = None


class InvoiceRun(BillingModel):
    """One attempt to generate a month's invoices."""

    id: UUID
    billing_month: str
    status: InvoiceRunStatus = InvoiceRunStatus.PENDING
    source_key: str
    ingestion_batch_id: UUID | None = None
    target_customer_id: UUID | None = None
    created_by: UUID | None = None

    customer_count: int = 0
    project_count: int = 0
    row_count: int = 0
    currency_breakdown: dict[str, Decimal] = Field(default_factory=dict)
    total_invoices: int = 0
    total_amount: Decimal = ZERO
    total_credits_applied: Decimal = ZERO
    source_ingestion_batch_ids: list[UUID] = Field(default_factory=list)
    source_time_range_start: datetime | None = None
    source_time_range_end: datetime | None = None

    error_message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime

    @property
    def is_finished(self) -> bool:
        return self.status in (InvoiceRunStatus.SUCCEEDED, InvoiceRunStatus.FAILED)


class InvoiceRunDetail(BillingModel):
    """A run and the invoices it produced, as shown to collaborators."""

    id: UUID
    billing_month: str
    status: InvoiceRunStatus
    total_invoices: int
    total_amount: Decimal
    total_credits_applied: Decimal = ZERO
    currency_breakdown: dict[str, Decimal] = Field(default_factory=dict)
    error_message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    invoices: list[InvoiceSummary] = Field(default_factory=list)


class ConfigSnapshot(BillingModel):
    """
    Configuration one customer was invoiced under in one run.

    Captured inside the run before any credit is drawn, so credits show
    the balances the run started from.
    """

    id: UUID
    invoice_run_id: UUID
    customer_id: UUID
    billing_month: str
    pricing_list_id: UUID | None = None
    pricing_rules: list[PricingRule] = Field(default_factory=list)
    credits: list[Credit] = Field(default_factory=list)
    special_rules: list[SpecialRule] = Field(default_factory=list)
    special_rules_applied: list[SpecialRuleEffect] = Field(default_factory=list)
    captured_at: datetime


class RunValidationIssue(BillingModel):
    """One finding of a pre-run check."""

    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class RunValidation(BillingModel):
    """Read-only pre-flight report for a prospective run."""

    billing_month: str
    target_customer_id: UUID | None = None
    raw_entry_count: int = 0
    customer_count: int = 0
    errors: list[RunValidationIssue] = Field(default_factory=list)
    warnings: list[RunValidationIssue] = Field(default_factory=list)

    @computed_field
    @property
    def valid(self) -> bool:
        return not self.errors
