"""Tests for ReconciliationService."""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from core.access import AccessScope
from core.config import BillingConfig
from core.errors import PermissionDeniedError, ValidationError
from core.models import InvoiceStatus, ZERO
from core.services.invoice_run_service import InvoiceRunService
from core.services.reconciliation_service import ReconciliationService

JUNE = "2024-06"
JUNE_15 = datetime(2024, 6, 15, tzinfo=timezone.utc)


@pytest.fixture
def reconciliation_service(store):
    return ReconciliationService(store)


@pytest.fixture
def acme(store):
    customer = store.add_customer("Acme Corp", external_id="ACME")
    store.bind(customer.id, "proj-acme")
    return customer


class TestSummary:
    """Month totals and variance."""

    def test_under_invoiced_month(self, store, reconciliation_service, operator_access, acme):
        """1000 raw vs 950 invoiced is a -50.00 (-5.00%) variance."""
        store.add_cost("proj-acme", "sku-vm", "600.00", usage_start=JUNE_15)
        store.add_cost("proj-acme", "sku-vm", "400.00", usage_start=JUNE_15)
        store.add_invoice(acme.id, "950.00", billing_month=JUNE)

        report = reconciliation_service.reconcile(operator_access, JUNE)

        summary = report.summary
        assert summary.raw_cost_total == Decimal("1000.00")
        assert summary.invoiced_total == Decimal("950.00")
        assert summary.variance == Decimal("-50.00")
        assert summary.variance_percent == Decimal("-5.00")
        assert summary.raw_cost_zero is False
        assert summary.raw_entry_count == 2
        assert summary.invoice_count == 1
        assert summary.invoiced_subtotal == Decimal("950.00")

    def test_no_raw_cost(self, store, reconciliation_service, operator_access, acme):
        """Zero raw cost reports a 0 percentage and flags it."""
        store.add_invoice(acme.id, "10.00", billing_month=JUNE)

        summary = reconciliation_service.reconcile(operator_access, JUNE).summary

        assert summary.raw_cost_zero is True
        assert summary.variance_percent == ZERO
        assert summary.variance == Decimal("10.00")

    def test_empty_month(self, reconciliation_service, operator_access):
        report = reconciliation_service.reconcile(operator_access, JUNE)

        assert report.summary.raw_cost_total == ZERO
        assert report.summary.invoiced_total == ZERO
        assert report.customer_breakdown == []
        assert report.unassigned_projects == []

    def test_percent_rounded_to_hundredths(self, store, reconciliation_service, operator_access, acme):
        store.add_cost("proj-acme", "sku-vm", "3.00", usage_start=JUNE_15)
        store.add_invoice(acme.id, "4.00", billing_month=JUNE)

        summary = reconciliation_service.reconcile(operator_access, JUNE).summary

        assert summary.variance_percent == Decimal("33.33")

    def test_totals_rounded_before_variance(self, store, reconciliation_service, operator_access, acme):
        """variance == invoiced_total - raw_cost_total exactly, as reported."""
        store.add_cost("proj-acme", "sku-vm", "0.004", usage_start=JUNE_15)
        store.add_cost("proj-acme", "sku-vm", "0.004", usage_start=JUNE_15)
        store.add_invoice(acme.id, "0.01", billing_month=JUNE)

        summary = reconciliation_service.reconcile(operator_access, JUNE).summary

        assert summary.raw_cost_total == Decimal("0.01")
        assert summary.variance == summary.invoiced_total - summary.raw_cost_total == ZERO

    def test_excludes_cancelled_invoices_and_other_months(self, store, reconciliation_service, operator_access, acme):
        store.add_cost("proj-acme", "sku-vm", "100.00", usage_start=JUNE_15)
        store.add_cost("proj-acme", "sku-vm", "999.00", usage_start=datetime(2024, 7, 1, tzinfo=timezone.utc))
        store.add_invoice(acme.id, "100.00", billing_month=JUNE)
        store.add_invoice(acme.id, "50.00", billing_month=JUNE, status=InvoiceStatus.CANCELLED)
        store.add_invoice(acme.id, "70.00", billing_month="2024-07")

        summary = reconciliation_service.reconcile(operator_access, JUNE).summary

        assert summary.raw_cost_total == Decimal("100.00")
        assert summary.invoiced_total == Decimal("100.00")
        assert summary.variance == ZERO

    def test_after_invoice_run(self, store, event_bus, reconciliation_service, operator_access, acme):
        """A 20% discount shows up as a -20.00% variance."""
        group = store.add_sku_group("COMPUTE", ["sku-vm"])
        pricing_list = store.add_pricing_list(acme.id)
        store.add_rule(pricing_list.id, group.id, "0.8")
        store.add_cost("proj-acme", "sku-vm", "100.00", usage_start=JUNE_15)
        InvoiceRunService(store, event_bus).start_run(operator_access, JUNE)

        report = reconciliation_service.reconcile(operator_access, JUNE)

        assert report.summary.variance == Decimal("-20.00")
        assert report.summary.variance_percent == Decimal("-20.00")
        assert len(report.recent_runs) == 1

    @pytest.mark.parametrize("month", ["2024-00", "24-06", "2024/06"])
    def test_rejects_malformed_month(self, reconciliation_service, operator_access, month):
        with pytest.raises(ValidationError):
            reconciliation_service.reconcile(operator_access, month)

    def test_requires_permission(self, reconciliation_service):
        with pytest.raises(PermissionDeniedError):
            reconciliation_service.reconcile(AccessScope.for_actor(uuid4(), ["invoices:read"]), JUNE)


class TestCustomerBreakdown:
    """Per-customer rows."""

    def test_rows_sorted_by_raw_cost(self, store, reconciliation_service, operator_access, acme):
        beta = store.add_customer("Beta Co")
        store.bind(beta.id, "proj-beta")
        store.add_customer("Idle Ltd")
        store.add_cost("proj-acme", "sku-vm", "100.00", usage_start=JUNE_15)
        store.add_cost("proj-beta", "sku-vm", "300.00", usage_start=JUNE_15)
        store.add_invoice(acme.id, "90.00", billing_month=JUNE)

        breakdown = reconciliation_service.reconcile(operator_access, JUNE).customer_breakdown

        assert [row.customer_name for row in breakdown] == ["Beta Co", "Acme Corp"]
        assert breakdown[0].invoiced_amount == ZERO
        assert breakdown[0].variance == Decimal("-300.00")
        assert breakdown[1].variance == Decimal("-10.00")

    def test_invoiced_only_customer_included(self, store, reconciliation_service, operator_access):
        gone = store.add_customer("Gone Inc")
        store.add_invoice(gone.id, "15.00", billing_month=JUNE)

        [row] = reconciliation_service.reconcile(operator_access, JUNE).customer_breakdown

        assert row.customer_id == gone.id
        assert row.customer_name == "Gone Inc"
        assert row.raw_cost == ZERO
        assert row.variance == Decimal("15.00")

    def test_net_refund_customer_included(self, store, reconciliation_service, operator_access, acme):
        """A customer whose month nets negative still appears, so rows add up to the raw total."""
        store.add_cost("proj-acme", "sku-vm", "100.00", usage_start=JUNE_15)
        refunded = store.add_customer("Refund Co")
        store.bind(refunded.id, "proj-refund")
        store.add_cost("proj-refund", "sku-vm", "-25.00", usage_start=JUNE_15)

        report = reconciliation_service.reconcile(operator_access, JUNE)

        rows = {row.customer_id: row for row in report.customer_breakdown}
        assert rows[refunded.id].raw_cost == Decimal("-25.00")
        assert rows[refunded.id].variance == Decimal("25.00")
        assert sum((row.raw_cost for row in report.customer_breakdown), ZERO) == report.summary.raw_cost_total


class TestUnassignedProjects:
    """Cost on projects with no active binding."""

    def test_lists_unassigned_by_cost(self, store, reconciliation_service, operator_access, acme):
        store.add_cost("proj-acme", "sku-vm", "100.00", usage_start=JUNE_15)
        store.add_cost("proj-orphan-a", "sku-vm", "5.00", usage_start=JUNE_15)
        store.add_cost("proj-orphan-b", "sku-vm", "50.00", usage_start=JUNE_15)

        report = reconciliation_service.reconcile(operator_access, JUNE)

        assert [(p.project_id, p.cost) for p in report.unassigned_projects] == [
            ("proj-orphan-b", Decimal("50.00")),
            ("proj-orphan-a", Decimal("5.00")),
        ]
        assert report.unassigned_cost_total == Decimal("55.00")
        assert report.summary.raw_cost_total == Decimal("155.00")

    def test_limit(self, store, operator_access):
        service = ReconciliationService(store, BillingConfig(unassigned_project_limit=1))
        store.add_cost("proj-orphan-a", "sku-vm", "5.00", usage_start=JUNE_15)
        store.add_cost("proj-orphan-b", "sku-vm", "50.00", usage_start=JUNE_15)

        report = service.reconcile(operator_access, JUNE)

        assert [p.project_id for p in report.unassigned_projects] == ["proj-orphan-b"]


class TestScopedReconciliation:
    """Actors restricted to some customers."""

    def test_scoped_actor_sees_own_rows_only(self, store, reconciliation_service, scoped_access, acme):
        beta = store.add_customer("Beta Co")
        store.bind(beta.id, "proj-beta")
        store.add_cost("proj-acme", "sku-vm", "100.00", usage_start=JUNE_15)
        store.add_cost("proj-beta", "sku-vm", "300.00", usage_start=JUNE_15)
        store.add_cost("proj-orphan", "sku-vm", "7.00", usage_start=JUNE_15)
        store.add_invoice(acme.id, "80.00", billing_month=JUNE)
        store.add_invoice(beta.id, "300.00", billing_month=JUNE)

        report = reconciliation_service.reconcile(scoped_access(acme.id), JUNE)

        assert [row.customer_id for row in report.customer_breakdown] == [acme.id]
        assert report.summary.raw_cost_total == Decimal("100.00")
        assert report.summary.invoiced_total == Decimal("80.00")
        assert report.summary.variance_percent == Decimal("-20.00")
        assert report.unassigned_projects == []
        assert report.unassigned_cost_total == ZERO

    def test_recent_runs_need_run_permission(self, store, event_bus, reconciliation_service, operator_access):
        InvoiceRunService(store, event_bus).start_run(operator_access, JUNE)
        finance = AccessScope.for_actor(uuid4(), ["reconciliation:read"])

        assert reconciliation_service.reconcile(operator_access, JUNE).recent_runs != []
        assert reconciliation_service.reconcile(finance, JUNE).recent_runs == []

    def test_scoped_recent_runs_only_targeted(self, store, event_bus, reconciliation_service,
                                             operator_access, scoped_access, acme):
        runs = InvoiceRunService(store, event_bus)
        runs.start_run(operator_access, JUNE)
        targeted = runs.start_run(operator_access, JUNE, target_customer_id=acme.id)

        report = reconciliation_service.reconcile(scoped_access(acme.id), JUNE)

        assert [r.id for r in report.recent_runs] == [targeted.id]
