"""
Storage contract for the billing core.

Services depend on these protocols, never on SQL. Each repository returns
fully-materialized models (e.g. PricingListWithRules, CreditWithLedger) so
the core never issues ad hoc joins.

Conditional writes return None when their condition fails; the caller
decides which error that means. Unique-constraint collisions surface as
ConflictError.
"""

from contextlib import AbstractContextManager
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Protocol
from uuid import UUID

from core.models import (
    AttributedCost,
    ConfigSnapshot,
    Credit,
    CreditCreate,
    CreditLedgerEntry,
    CreditStatus,
    CreditWithLedger,
    Customer,
    CustomerCost,
    CustomerInvoiced,
    CustomerProject,
    CustomerProjectCreate,
    Invoice,
    InvoiceRun,
    InvoiceRunCreate,
    InvoiceRunStatus,
    InvoiceRunSummary,
    InvoiceStatus,
    InvoiceTotals,
    PricingList,
    PricingListCreate,
    PricingListWithRules,
    PricingRule,
    PricingRuleCreate,
    Project,
    ProjectCost,
    RawCostTotals,
    SkuGroup,
    SkuGroupCreate,
    SkuGroupMapping,
    SpecialRule,
    SpecialRuleCreate,
)


class CustomerRepository(Protocol):
    def get(self, customer_id: UUID) -> Customer | None: ...

    def get_project(self, project_id: str) -> Project | None: ...

    def get_binding(self, binding_id: UUID) -> CustomerProject | None: ...

    def get_active_binding(self, project_id: str) -> CustomerProject | None: ...

    def create_binding(self, data: CustomerProjectCreate) -> CustomerProject:
        """Insert an active binding. ConflictError if the project already has one."""
        ...

    def deactivate_binding(self, binding_id: UUID, end_date: date) -> CustomerProject | None:
        """Deactivate an active binding; None if it was not active."""
        ...


class CostRepository(Protocol):
    def list_billable(
        self,
        start: datetime,
        end: datetime,
        ingestion_batch_id: UUID | None = None,
        customer_id: UUID | None = None,
    ) -> list[AttributedCost]:
        """
        Entries with usage_start_time in [start, end) on projects actively
        bound to an ACTIVE customer, ordered by usage_start_time then id.
        """
        ...

    def totals(self, start: datetime, end: datetime) -> RawCostTotals: ...

    def cost_by_customer(self, start: datetime, end: datetime) -> list[CustomerCost]:
        """Raw cost per customer through bindings active now."""
        ...

    def unassigned_projects(self, start: datetime, end: datetime, limit: int) -> list[ProjectCost]:
        """Cost on projects without an active binding, highest first."""
        ...


class PricingRepository(Protocol):
    def get_active_lists(self, customer_id: UUID) -> list[PricingListWithRules]: ...

    def get_list(self, pricing_list_id: UUID) -> PricingListWithRules | None: ...

    def create_list(self, data: PricingListCreate) -> PricingList: ...

    def add_rule(self, pricing_list_id: UUID, data: PricingRuleCreate) -> PricingRule: ...

    def delete_list(self, pricing_list_id: UUID) -> bool:
        """Delete a list and its rules together. False if it did not exist."""
        ...

    def get_sku_mappings(self, sku_ids: Iterable[str] | None = None) -> dict[str, SkuGroupMapping]:
        """Group mapping per SKU; all mappings when sku_ids is None."""
        ...

    def get_sku_group(self, sku_group_id: UUID) -> SkuGroup | None: ...

    def create_sku_group(self, data: SkuGroupCreate) -> SkuGroup:
        """Insert a group and its SKU mappings. ConflictError on duplicate code or mapped SKU."""
        ...


class SpecialRuleRepository(Protocol):
    def create(self, data: SpecialRuleCreate) -> SpecialRule: ...

    def get(self, rule_id: UUID) -> SpecialRule | None: ...

    def list_rules(self, customer_id: UUID | None = None) -> list[SpecialRule]:
        """The customer's rules plus global rules; every rule when customer_id is None."""
        ...

    def list_enabled(self, start: date, end: date) -> list[SpecialRule]:
        """Enabled rules of every customer whose window overlaps [start, end)."""
        ...

    def set_enabled(self, rule_id: UUID, enabled: bool) -> SpecialRule | None: ...


class CreditRepository(Protocol):
    def create(self, data: CreditCreate) -> Credit: ...

    def get(self, credit_id: UUID) -> Credit | None: ...

    def get_with_ledger(self, credit_id: UUID) -> CreditWithLedger | None: ...

    def list_for_customer(
        self, customer_id: UUID, status: CreditStatus | None = None
    ) -> list[Credit]: ...

    def list_usable(self, customer_id: UUID, on: date, currency: str) -> list[Credit]:
        """ACTIVE credits with remaining > 0 and valid_from <= on <= valid_to."""
        ...

    def decrement(self, credit_id: UUID, amount: Decimal) -> Credit | None:
        """
        Atomically subtract amount if the credit is ACTIVE and remaining >= amount.

        Sets DEPLETED in the same write when remaining reaches zero. Returns
        None, leaving the credit untouched, when the condition fails.
        """
        ...

    def insert_ledger_entry(
        self,
        credit_id: UUID,
        invoice_id: UUID,
        invoice_run_id: UUID | None,
        amount_applied: Decimal,
        remaining_before: Decimal,
        remaining_after: Decimal,
    ) -> CreditLedgerEntry: ...

    def expire(self, as_of: date) -> list[Credit]:
        """Move ACTIVE credits with valid_to < as_of and remaining > 0 to EXPIRED."""
        ...


class InvoiceRepository(Protocol):
    def insert(self, invoice: Invoice) -> Invoice: ...

    def get(self, invoice_id: UUID) -> Invoice | None: ...

    def list_for_run(self, invoice_run_id: UUID) -> list[Invoice]: ...

    def count_for_customer_month(self, customer_id: UUID, billing_month: str) -> int: ...

    def number_exists(self, invoice_number: str) -> bool: ...

    def record_credit(
        self, invoice_id: UUID, credit_amount: Decimal, amount_due: Decimal
    ) -> Invoice | None:
        """Set credit_amount/amount_due. None if the invoice is missing or locked."""
        ...

    def update_status(
        self,
        invoice_id: UUID,
        status: InvoiceStatus,
        expected: Iterable[InvoiceStatus],
        locked_at: datetime | None = None,
    ) -> Invoice | None:
        """Conditional status change; None unless the current status is in expected."""
        ...

    def totals_for_month(self, billing_month: str) -> InvoiceTotals:
        """Non-CANCELLED invoices only."""
        ...

    def invoiced_by_customer(self, billing_month: str) -> list[CustomerInvoiced]:
        """Non-CANCELLED invoices only."""
        ...


class InvoiceRunRepository(Protocol):
    def create(self, data: InvoiceRunCreate) -> InvoiceRun: ...

    def get(self, run_id: UUID) -> InvoiceRun | None: ...

    def find_by_key(
        self, billing_month: str, source_key: str, status: InvoiceRunStatus
    ) -> InvoiceRun | None:
        """Most recent run for the key in the given status."""
        ...

    def list_runs(
        self,
        billing_month: str | None = None,
        status: InvoiceRunStatus | None = None,
        limit: int = 50,
    ) -> list[InvoiceRun]:
        """Newest first."""
        ...

    def mark_running(self, run_id: UUID, started_at: datetime) -> InvoiceRun | None:
        """
        PENDING -> RUNNING. None if the run is not PENDING.

        ConflictError if another run for the month is already RUNNING.
        """
        ...

    def mark_succeeded(
        self, run_id: UUID, summary: InvoiceRunSummary, finished_at: datetime
    ) -> InvoiceRun | None:
        """RUNNING -> SUCCEEDED. None if the run is not RUNNING."""
        ...

    def mark_failed(self, run_id: UUID, error_message: str, finished_at: datetime) -> InvoiceRun | None:
        """PENDING/RUNNING -> FAILED. None if the run already finished."""
        ...

    def release_stale(self, started_before: datetime, error_message: str) -> list[InvoiceRun]:
        """Fail RUNNING runs that started before the cutoff."""
        ...

    def insert_snapshot(self, snapshot: ConfigSnapshot) -> ConfigSnapshot:
        """ConflictError if the run already has a snapshot for the customer."""
        ...

    def list_snapshots(self, run_id: UUID) -> list[ConfigSnapshot]: ...


class BillingStore(Protocol):
    """All repositories plus an all-or-nothing transaction boundary."""

    customers: CustomerRepository
    costs: CostRepository
    pricing: PricingRepository
    special_rules: SpecialRuleRepository
    credits: CreditRepository
    invoices: InvoiceRepository
    runs: InvoiceRunRepository

    def transaction(self) -> AbstractContextManager["BillingStore"]:
        """
        Yield a store whose writes commit together on exit, or roll back
        together if the block raises.
        """
        ...
