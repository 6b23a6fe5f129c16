"""Reconciliation report models."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import Field

from core.models.base import BillingModel, ZERO
from core.models.invoice_run import InvoiceRunStatus


class ReconciliationSummary(BillingModel):
    """Month totals and the variance between them."""

    raw_cost_total: Decimal = ZERO
    invoiced_total: Decimal = ZERO
    variance: Decimal = ZERO
    variance_percent: Decimal = ZERO
    raw_cost_zero: bool = False
    raw_entry_count: int = 0
    invoiced_subtotal: Decimal = ZERO
    invoiced_tax: Decimal = ZERO
    invoice_count: int = 0


class CustomerReconciliation(BillingModel):
    """Raw cost against invoiced amount for one customer."""

    customer_id: UUID
    customer_name: str | None = None
    raw_cost: Decimal = ZERO
    invoiced_amount: Decimal = ZERO
    variance: Decimal = ZERO


class UnassignedProject(BillingModel):
    """Cost on a project with no active customer binding."""

    project_id: str
    cost: Decimal


class RunReference(BillingModel):
    """Brief view of a recent invoice run for the month."""

    id: UUID
    status: InvoiceRunStatus
    source_key: str
    total_invoices: int = 0
    total_amount: Decimal = ZERO
    created_at: datetime
    finished_at: datetime | None = None


class ReconciliationReport(BillingModel):
    """Raw cost vs invoiced comparison for one billing month."""

    month: str
    summary: ReconciliationSummary
    customer_breakdown: list[CustomerReconciliation] = Field(default_factory=list)
    unassigned_projects: list[UnassignedProject] = Field(default_factory=list)
    unassigned_cost_total: Decimal = ZERO
    recent_runs: list[RunReference] = Field(default_factory=list)
    generated_at: datetime
