"""
Reconciliation of raw cost against invoiced amounts.

Read-only. Safe to run while an invoice run is in progress; figures for a
month are advisory until its run SUCCEEDS.

Per-customer raw cost is attributed through the binding active *now*, not
the binding active during the month. A project rebound after the month
shows up under its new customer.
"""

import logging
from decimal import Decimal
from uuid import UUID

from core.access import AccessScope
from core.config import BillingConfig
from core.errors import ValidationError
from core.models import (
    CustomerReconciliation,
    ReconciliationReport,
    ReconciliationSummary,
    RunReference,
    UnassignedProject,
    ZERO,
    quantize,
)
from core.store import BillingStore
from utils.timezone import month_bounds, now_utc

logger = logging.getLogger(__name__)

_PERCENT_QUANTUM = Decimal("0.01")
_HUNDRED = Decimal("100")


class ReconciliationService:
    """Builds reconciliation reports for a billing month."""

    def __init__(self, store: BillingStore, config: BillingConfig | None = None):
        self.store = store
        self.config = config or BillingConfig()

    def reconcile(self, access: AccessScope, month: str) -> ReconciliationReport:
        """
        Compare raw cost with invoiced totals for a month.

        variance = invoiced_total - raw_cost_total, exactly, after both are
        rounded to the money quantum. variance_percent is 0 with
        raw_cost_zero set when there is no raw cost.

        Scoped actors get only their customers' breakdown rows, totals
        summed from those rows, and no unassigned projects.

        Raises:
            PermissionDeniedError: Missing reconciliation:read
            ValidationError: Malformed month
        """
        access.require("reconciliation", "read")
        try:
            start, end = month_bounds(month)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        scoped = access.scoped_customer_ids()
        breakdown = self._customer_breakdown(month, start, end, scoped)

        if scoped is None:
            raw_totals = self.store.costs.totals(start, end)
            invoice_totals = self.store.invoices.totals_for_month(month)
            summary = ReconciliationSummary(
                raw_cost_total=self._money(raw_totals.total),
                invoiced_total=self._money(invoice_totals.total_amount),
                raw_entry_count=raw_totals.entry_count,
                invoiced_subtotal=self._money(invoice_totals.subtotal),
                invoiced_tax=self._money(invoice_totals.tax_amount),
                invoice_count=invoice_totals.invoice_count,
            )
            unassigned = [
                UnassignedProject(project_id=row.project_id, cost=self._money(row.cost))
                for row in self.store.costs.unassigned_projects(
                    start, end, self.config.unassigned_project_limit
                )
            ]
        else:
            summary = ReconciliationSummary(
                raw_cost_total=sum((row.raw_cost for row in breakdown), ZERO),
                invoiced_total=sum((row.invoiced_amount for row in breakdown), ZERO),
            )
            unassigned = []

        summary.variance = summary.invoiced_total - summary.raw_cost_total
        if summary.raw_cost_total == ZERO:
            summary.raw_cost_zero = True
            summary.variance_percent = ZERO
        else:
            summary.variance_percent = quantize(
                summary.variance / summary.raw_cost_total * _HUNDRED, _PERCENT_QUANTUM
            )

        report = ReconciliationReport(
            month=month,
            summary=summary,
            customer_breakdown=breakdown,
            unassigned_projects=unassigned,
            unassigned_cost_total=sum((row.cost for row in unassigned), ZERO),
            recent_runs=self._recent_runs(access, month),
            generated_at=now_utc(),
        )
        logger.info(
            "Reconciled %s: raw %s, invoiced %s, variance %s",
            month, summary.raw_cost_total, summary.invoiced_total, summary.variance,
        )
        return report

    def _money(self, amount: Decimal) -> Decimal:
        return quantize(amount, self.config.money_quantum)

    def _customer_breakdown(
        self, month: str, start, end, scoped: frozenset[UUID] | None
    ) -> list[CustomerReconciliation]:
        rows: dict[UUID, CustomerReconciliation] = {}
        for cost in self.store.costs.cost_by_customer(start, end):
            rows[cost.customer_id] = CustomerReconciliation(
                customer_id=cost.customer_id,
                customer_name=cost.customer_name,
                raw_cost=self._money(cost.raw_cost),
            )
        for invoiced in self.store.invoices.invoiced_by_customer(month):
            row = rows.get(invoiced.customer_id)
            if row is None:
                customer = self.store.customers.get(invoiced.customer_id)
                row = rows[invoiced.customer_id] = CustomerReconciliation(
                    customer_id=invoiced.customer_id,
                    customer_name=customer.name if customer else None,
                )
            row.invoiced_amount = self._money(invoiced.invoiced_amount)

        breakdown = []
        for row in rows.values():
            if scoped is not None and row.customer_id not in scoped:
                continue
            if row.raw_cost == ZERO and row.invoiced_amount == ZERO:
                continue
            row.variance = row.invoiced_amount - row.raw_cost
            breakdown.append(row)

        breakdown.sort(key=lambda row: (-row.raw_cost, str(row.customer_id)))
        return breakdown

    def _recent_runs(self, access: AccessScope, month: str) -> list[RunReference]:
        if not access.has_permission("invoice_runs", "read"):
            return []
        scoped = access.scoped_customer_ids()
        runs = self.store.runs.list_runs(month, None, self.config.recent_runs_limit)
        return [
            RunReference.model_validate(run.model_dump())
            for run in runs
            if scoped is None or (run.target_customer_id is not None and run.target_customer_id in scoped)
        ]
