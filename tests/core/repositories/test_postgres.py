"""Tests for PostgresBillingStore - constraints the services rely on."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import psycopg2
import pytest

from core.errors import ConflictError, InternalError
from core.event_bus import EventBus
from core.models import (
    ConfigSnapshot,
    CreditCreate,
    CreditStatus,
    CreditType,
    CustomerProjectCreate,
    Invoice,
    InvoiceRunCreate,
    InvoiceRunStatus,
    InvoiceStatus,
    PricingListCreate,
    PricingRuleCreate,
    SkuGroupCreate,
    SpecialRuleCreate,
    SpecialRuleType,
    ZERO,
)
from core.services.invoice_run_service import InvoiceRunService
from core.services.reconciliation_service import ReconciliationService
from utils.timezone import now_utc


JUNE_15 = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def _customer(db, name="Acme Corp", status="ACTIVE"):
    customer_id = uuid4()
    db.execute(
        "INSERT INTO customers (id, name, currency, status) VALUES (%s, %s, 'USD', %s)",
        (customer_id, name, status)
    )
    return customer_id


def _project(db, project_id):
    db.execute("INSERT INTO projects (id, project_id) VALUES (%s, %s)", (uuid4(), project_id))


def _cost(db, project_id, sku_id, cost, usage_start=JUNE_15, batch_id=None):
    db.execute(
        """
        INSERT INTO raw_cost_entries (
            id, ingestion_batch_id, project_id, sku_id,
            usage_start_time, usage_end_time, cost, currency
        ) VALUES (%s, %s, %s, %s, %s, %s, %s, 'USD')
        """,
        (uuid4(), batch_id, project_id, sku_id, usage_start, usage_start + timedelta(hours=1), Decimal(cost))
    )


def _run(pg_store, month="2024-06"):
    return pg_store.runs.create(InvoiceRunCreate(billing_month=month, source_key=f"batch:{uuid4()}"))


def _invoice(pg_store, customer_id, run_id, total="100.00"):
    total = Decimal(total)
    return pg_store.invoices.insert(Invoice(
        id=uuid4(), invoice_run_id=run_id, invoice_number=f"INV-202406-{uuid4().hex[:8].upper()}-0001",
        customer_id=customer_id, billing_month="2024-06", subtotal=total, total_amount=total,
        amount_due=total, currency="USD", issue_date=date(2024, 7, 1), due_date=date(2024, 7, 31),
        created_at=now_utc(),
    ))


def _credit(pg_store, customer_id, amount="50.00", valid_to=date(2099, 12, 31)):
    return pg_store.credits.create(CreditCreate(
        customer_id=customer_id, type=CreditType.COMMITMENT, total_amount=Decimal(amount),
        currency="USD", valid_from=date(2024, 1, 1), valid_to=valid_to,
    ))


class TestBindings:
    """At most one active binding per project."""

    def test_second_active_binding_conflicts(self, db, pg_store):
        first, second = _customer(db, "First"), _customer(db, "Second")
        _project(db, "proj-1")
        pg_store.customers.create_binding(CustomerProjectCreate(customer_id=first, project_id="proj-1"))

        with pytest.raises(ConflictError, match="active customer binding"):
            pg_store.customers.create_binding(CustomerProjectCreate(customer_id=second, project_id="proj-1"))

    def test_rebind_after_deactivation(self, db, pg_store):
        first, second = _customer(db, "First"), _customer(db, "Second")
        _project(db, "proj-1")
        binding = pg_store.customers.create_binding(CustomerProjectCreate(customer_id=first, project_id="proj-1"))

        closed = pg_store.customers.deactivate_binding(binding.id, date(2024, 6, 30))
        rebound = pg_store.customers.create_binding(CustomerProjectCreate(customer_id=second, project_id="proj-1"))

        assert closed.is_active is False
        assert pg_store.customers.get_active_binding("proj-1").id == rebound.id
        assert pg_store.customers.deactivate_binding(binding.id, date(2024, 7, 1)) is None


class TestCosts:
    """Billable cost attribution."""

    def test_only_bound_projects_of_active_customers(self, db, pg_store):
        active, suspended = _customer(db, "Active"), _customer(db, "Suspended", status="SUSPENDED")
        for project_id, owner in (("proj-a", active), ("proj-s", suspended), ("proj-x", None)):
            _project(db, project_id)
            if owner:
                pg_store.customers.create_binding(CustomerProjectCreate(customer_id=owner, project_id=project_id))
            _cost(db, project_id, "sku-1", "10.00")

        start = datetime(2024, 6, 1, tzinfo=timezone.utc)
        end = datetime(2024, 7, 1, tzinfo=timezone.utc)
        billable = pg_store.costs.list_billable(start, end)

        assert [c.entry.project_id for c in billable] == ["proj-a"]
        assert billable[0].customer_id == active
        assert pg_store.costs.totals(start, end).total == Decimal("30.00")
        assert [p.project_id for p in pg_store.costs.unassigned_projects(start, end, 10)] == ["proj-x"]

    def test_month_end_is_exclusive(self, db, pg_store):
        customer_id = _customer(db)
        _project(db, "proj-1")
        pg_store.customers.create_binding(CustomerProjectCreate(customer_id=customer_id, project_id="proj-1"))
        _cost(db, "proj-1", "sku-1", "5.00", usage_start=datetime(2024, 7, 1, tzinfo=timezone.utc))

        billable = pg_store.costs.list_billable(
            datetime(2024, 6, 1, tzinfo=timezone.utc), datetime(2024, 7, 1, tzinfo=timezone.utc)
        )

        assert billable == []


class TestPricing:
    """Pricing lists, rules and SKU groups."""

    def test_rules_come_back_with_group_code(self, db, pg_store):
        customer_id = _customer(db)
        group = pg_store.pricing.create_sku_group(SkuGroupCreate(code="COMPUTE", name="Compute", sku_ids=["sku-1"]))
        pricing_list = pg_store.pricing.create_list(PricingListCreate(customer_id=customer_id, name="2024"))
        pg_store.pricing.add_rule(pricing_list.id, PricingRuleCreate(sku_group_id=group.id, discount_rate=Decimal("0.8")))

        active = pg_store.pricing.get_active_lists(customer_id)

        assert len(active) == 1
        assert active[0].rules[0].sku_group_code == "COMPUTE"
        assert active[0].rules[0].discount_rate == Decimal("0.8")
        assert pg_store.pricing.get_sku_mappings(["sku-1"])["sku-1"].sku_group_code == "COMPUTE"

    def test_sku_maps_to_one_group(self, pg_store):
        pg_store.pricing.create_sku_group(SkuGroupCreate(code="COMPUTE", name="Compute", sku_ids=["sku-1"]))

        with pytest.raises(ConflictError):
            pg_store.pricing.create_sku_group(SkuGroupCreate(code="STORAGE", name="Storage", sku_ids=["sku-1"]))


class TestCredits:
    """Conditional draw-down and the ledger."""

    def test_decrement_to_zero_depletes(self, db, pg_store):
        credit = _credit(pg_store, _customer(db))

        partial = pg_store.credits.decrement(credit.id, Decimal("30.00"))
        full = pg_store.credits.decrement(credit.id, Decimal("20.00"))

        assert partial.remaining_amount == Decimal("20.00")
        assert partial.status == CreditStatus.ACTIVE
        assert full.remaining_amount == ZERO
        assert full.status == CreditStatus.DEPLETED

    def test_decrement_beyond_balance_writes_nothing(self, db, pg_store):
        credit = _credit(pg_store, _customer(db), "20.00")

        assert pg_store.credits.decrement(credit.id, Decimal("25.00")) is None
        assert pg_store.credits.get(credit.id).remaining_amount == Decimal("20.00")

    def test_ledger_is_append_only(self, db, pg_store):
        customer_id = _customer(db)
        credit = _credit(pg_store, customer_id)
        run = _run(pg_store)
        invoice = _invoice(pg_store, customer_id, run.id)
        entry = pg_store.credits.insert_ledger_entry(
            credit.id, invoice.id, run.id, Decimal("10.00"), Decimal("50.00"), Decimal("40.00")
        )

        with pytest.raises(psycopg2.Error, match="append-only"):
            db.execute("UPDATE credit_ledger SET amount_applied = 1 WHERE id = %s", (entry.id,))
        with pytest.raises(psycopg2.Error, match="append-only"):
            db.execute("DELETE FROM credit_ledger WHERE id = %s", (entry.id,))

        assert pg_store.credits.get_with_ledger(credit.id).entries[0].amount_applied == Decimal("10.00")

    def test_inconsistent_ledger_entry_rejected(self, db, pg_store):
        customer_id = _customer(db)
        credit = _credit(pg_store, customer_id)
        run = _run(pg_store)
        invoice = _invoice(pg_store, customer_id, run.id)

        with pytest.raises(InternalError):
            pg_store.credits.insert_ledger_entry(
                credit.id, invoice.id, run.id, Decimal("10.00"), Decimal("50.00"), Decimal("45.00")
            )

    def test_expire_only_past_valid_to(self, db, pg_store):
        credit = _credit(pg_store, _customer(db), valid_to=date(2024, 12, 31))

        assert pg_store.credits.expire(date(2024, 12, 31)) == []
        expired = pg_store.credits.expire(date(2025, 1, 1))

        assert [c.id for c in expired] == [credit.id]
        assert expired[0].status == CreditStatus.EXPIRED


class TestInvoices:
    """Invoice persistence and locking."""

    def test_line_items_round_trip_as_json(self, db, pg_store):
        customer_id = _customer(db)
        invoice = _invoice(pg_store, customer_id, _run(pg_store).id)

        assert pg_store.invoices.get(invoice.id).total_amount == Decimal("100.00")
        assert pg_store.invoices.count_for_customer_month(customer_id, "2024-06") == 1
        assert pg_store.invoices.number_exists(invoice.invoice_number) is True
        assert pg_store.invoices.number_exists("INV-202406-NONE-0001") is False

    def test_locked_invoice_refuses_credit(self, db, pg_store):
        customer_id = _customer(db)
        invoice = _invoice(pg_store, customer_id, _run(pg_store).id)
        pg_store.invoices.update_status(
            invoice.id, InvoiceStatus.LOCKED, [InvoiceStatus.DRAFT], locked_at=now_utc()
        )

        assert pg_store.invoices.record_credit(invoice.id, Decimal("10.00"), Decimal("90.00")) is None
        assert pg_store.invoices.get(invoice.id).credit_amount == ZERO

    def test_cancelled_invoices_left_out_of_totals(self, db, pg_store):
        customer_id = _customer(db)
        run = _run(pg_store)
        _invoice(pg_store, customer_id, run.id, "100.00")
        cancelled = _invoice(pg_store, customer_id, run.id, "40.00")
        pg_store.invoices.update_status(cancelled.id, InvoiceStatus.CANCELLED, [InvoiceStatus.DRAFT])

        totals = pg_store.invoices.totals_for_month("2024-06")

        assert totals.total_amount == Decimal("100.00")
        assert totals.invoice_count == 1


class TestRuns:
    """Run lifecycle and the per-month lock."""

    def test_one_running_run_per_month(self, pg_store):
        first, second = _run(pg_store), _run(pg_store)
        pg_store.runs.mark_running(first.id, now_utc())

        with pytest.raises(ConflictError, match="already running"):
            pg_store.runs.mark_running(second.id, now_utc())

    def test_other_months_unaffected(self, pg_store):
        june, july = _run(pg_store, "2024-06"), _run(pg_store, "2024-07")
        pg_store.runs.mark_running(june.id, now_utc())

        assert pg_store.runs.mark_running(july.id, now_utc()).status == InvoiceRunStatus.RUNNING

    def test_release_stale(self, pg_store):
        run = _run(pg_store)
        pg_store.runs.mark_running(run.id, now_utc() - timedelta(hours=3))

        released = pg_store.runs.release_stale(now_utc() - timedelta(hours=1), "timed out")

        assert [r.id for r in released] == [run.id]
        assert pg_store.runs.get(run.id).status == InvoiceRunStatus.FAILED

    def test_snapshot_round_trips_config(self, db, pg_store):
        customer_id = _customer(db)
        run = _run(pg_store)
        credit = _credit(pg_store, customer_id)
        snapshot = ConfigSnapshot(
            id=uuid4(), invoice_run_id=run.id, customer_id=customer_id, billing_month="2024-06",
            credits=[credit], captured_at=now_utc(),
        )

        pg_store.runs.insert_snapshot(snapshot)
        [stored] = pg_store.runs.list_snapshots(run.id)

        assert stored.customer_id == customer_id
        assert stored.pricing_list_id is None
        assert stored.credits[0].id == credit.id
        assert stored.credits[0].remaining_amount == Decimal("50.00")
        with pytest.raises(ConflictError):
            pg_store.runs.insert_snapshot(snapshot.model_copy(update={"id": uuid4()}))


class TestSpecialRules:
    """Special rule persistence."""

    def test_window_overlap_and_enabled(self, db, pg_store):
        customer_id = _customer(db)
        in_june = pg_store.special_rules.create(SpecialRuleCreate(
            customer_id=customer_id, name="drop support", rule_type=SpecialRuleType.EXCLUDE_SKU,
            match_sku_id="sku-support", effective_start=date(2024, 6, 30),
        ))
        pg_store.special_rules.create(SpecialRuleCreate(
            name="july only", rule_type=SpecialRuleType.EXCLUDE_SKU, match_sku_id="sku-x",
            effective_start=date(2024, 7, 1),
        ))

        assert [r.id for r in pg_store.special_rules.list_enabled(date(2024, 6, 1), date(2024, 7, 1))] == [in_june.id]
        pg_store.special_rules.set_enabled(in_june.id, False)
        assert pg_store.special_rules.list_enabled(date(2024, 6, 1), date(2024, 7, 1)) == []
        assert len(pg_store.special_rules.list_rules(customer_id)) == 2

    def test_override_requires_multiplier(self, pg_store):
        with pytest.raises(InternalError):
            pg_store.special_rules.create(SpecialRuleCreate(
                name="broken", rule_type=SpecialRuleType.OVERRIDE_COST, match_sku_id="sku-vm",
            ))


class TestTransactions:
    """Store-level units of work."""

    def test_rollback_discards_every_repository_write(self, db, pg_store):
        customer_id = _customer(db)
        credit = _credit(pg_store, customer_id)

        with pytest.raises(RuntimeError):
            with pg_store.transaction() as tx:
                tx.credits.decrement(credit.id, Decimal("10.00"))
                _run(tx)
                raise RuntimeError("abort")

        assert pg_store.credits.get(credit.id).remaining_amount == Decimal("50.00")
        assert pg_store.runs.list_runs() == []


class TestEndToEnd:
    """Invoice run and reconciliation over PostgreSQL."""

    def test_run_then_reconcile(self, db, pg_store, system_access):
        customer_id = _customer(db)
        _project(db, "proj-1")
        pg_store.customers.create_binding(CustomerProjectCreate(customer_id=customer_id, project_id="proj-1"))
        group = pg_store.pricing.create_sku_group(SkuGroupCreate(code="COMPUTE", name="Compute", sku_ids=["sku-1"]))
        pricing_list = pg_store.pricing.create_list(PricingListCreate(customer_id=customer_id, name="2024"))
        pg_store.pricing.add_rule(pricing_list.id, PricingRuleCreate(sku_group_id=group.id, discount_rate=Decimal("0.8")))
        _cost(db, "proj-1", "sku-1", "100.00")
        _credit(pg_store, customer_id, "30.00")

        run = InvoiceRunService(pg_store, EventBus()).start_run(system_access, "2024-06")
        report = ReconciliationService(pg_store).reconcile(system_access, "2024-06")

        assert run.status == InvoiceRunStatus.SUCCEEDED
        assert run.total_credits_applied == Decimal("30.00")
        invoice = pg_store.invoices.list_for_run(run.id)[0]
        assert invoice.total_amount == Decimal("80.00")
        assert invoice.amount_due == Decimal("50.00")
        assert invoice.line_items[0].sku_group_code == "COMPUTE"
        [snapshot] = pg_store.runs.list_snapshots(run.id)
        assert snapshot.customer_id == customer_id
        assert snapshot.credits[0].remaining_amount == Decimal("30.00")
        assert report.summary.raw_cost_total == Decimal("100.00")
        assert report.summary.invoiced_total == Decimal("80.00")
        assert report.summary.variance == Decimal("-20.00")
