"""
Invoice run orchestration.

A run turns one billing month of raw cost into invoices:

    PENDING -> RUNNING -> SUCCEEDED
                       -> FAILED

Runs are keyed by (billing_month, source_key). Starting a run whose key
already SUCCEEDED returns that run unchanged. At most one run per month may
be RUNNING; the month lock is the storage's conditional PENDING -> RUNNING
transition and is never waited on.

Special rules run over each customer's raw cost before pricing. All
invoices, config snapshots, ledger entries and credit decrements of a run
are written in one transaction together with the SUCCEEDED transition. A
failure rolls every one of them back; the FAILED status is written
separately afterwards.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from core.access import AccessScope
from core.config import BillingConfig
from core.errors import (
    BillingError,
    ConfigurationError,
    ConflictError,
    InternalError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from core.event_bus import EventBus
from core.events import CreditDepleted, InvoiceRunFailed, InvoiceRunSucceeded
from core.models import (
    UNMAPPED_GROUP_CODE,
    ConfigSnapshot,
    CreditStatus,
    Customer,
    CustomerStatus,
    Invoice,
    InvoiceLineItem,
    InvoiceRun,
    InvoiceRunCreate,
    InvoiceRunDetail,
    InvoiceRunStatus,
    InvoiceRunSummary,
    InvoiceStatus,
    InvoiceSummary,
    RawCostEntry,
    RunValidation,
    RunValidationIssue,
    SkuGroupMapping,
    SpecialRule,
    SpecialRuleEffect,
    SpecialRuleType,
    ZERO,
    quantize,
)
from core.services.credit_service import CreditLedger
from core.services.pricing_service import CustomerPricing, PricedLine, PricingResolver
from core.services.special_rule_service import SpecialRuleService, apply_special_rules, rules_for_customer
from core.store import BillingStore
from core.tax import NoTax, TaxPolicy
from utils.timezone import month_bounds, now_utc, today_utc

logger = logging.getLogger(__name__)

STALE_RUN_ERROR_CODE = "STALE_RUN"


def _iso_millis(moment: datetime) -> str:
    """UTC timestamp as 2024-06-01T00:00:00.000Z."""
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def _line_description(sku_group_code: str) -> str:
    if sku_group_code == UNMAPPED_GROUP_CODE:
        return "Unmapped SKUs (no pricing rule)"
    return f"{sku_group_code} services"


class InvoiceRunService:
    """Creates and executes invoice runs."""

    def __init__(
        self,
        store: BillingStore,
        event_bus: EventBus,
        tax_policy: TaxPolicy | None = None,
        config: BillingConfig | None = None,
    ):
        self.store = store
        self.event_bus = event_bus
        self.tax_policy = tax_policy or NoTax()
        self.config = config or BillingConfig()

    # =========================================================================
    # KEYS AND SCOPE
    # =========================================================================

    @staticmethod
    def compute_source_key(
        billing_month: str,
        ingestion_batch_id: UUID | None = None,
        target_customer_id: UUID | None = None,
    ) -> str:
        """
        Idempotency key for a run's input.

        batch:<id> for a specific ingestion batch, otherwise
        time:<month start>:<next month start>. Customer-targeted runs append
        :customer:<id> so they never collide with the full-month run.
        """
        if ingestion_batch_id is not None:
            key = f"batch:{ingestion_batch_id}"
        else:
            start, end = month_bounds(billing_month)
            key = f"time:{_iso_millis(start)}:{_iso_millis(end)}"
        if target_customer_id is not None:
            key += f":customer:{target_customer_id}"
        return key

    @staticmethod
    def _validate_month(billing_month: str) -> tuple[datetime, datetime]:
        try:
            return month_bounds(billing_month)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    @staticmethod
    def _run_visible(access: AccessScope, run: InvoiceRun) -> bool:
        scoped = access.scoped_customer_ids()
        if scoped is None:
            return True
        return run.target_customer_id is not None and run.target_customer_id in scoped

    def _get_visible_run(self, access: AccessScope, run_id: UUID) -> InvoiceRun:
        run = self.store.runs.get(run_id)
        if run is None or not self._run_visible(access, run):
            raise NotFoundError(f"Invoice run {run_id} not found")
        return run

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def create_run(
        self,
        access: AccessScope,
        billing_month: str,
        ingestion_batch_id: UUID | None = None,
        target_customer_id: UUID | None = None,
    ) -> InvoiceRun:
        """
        Register a run in PENDING, or return the run that already covers the key.

        Args:
            access: Actor scope; needs invoice_runs:execute
            billing_month: YYYY-MM
            ingestion_batch_id: Restrict input to one ingestion batch
            target_customer_id: Invoice only this customer

        Returns:
            The SUCCEEDED run for the same key if one exists, else an existing
            PENDING run for the key, else a new PENDING run.

        Raises:
            ValidationError: Malformed billing month
            PermissionDeniedError: Missing permission, or a scoped actor
                without a visible target customer
            NotFoundError: Unknown target customer
        """
        access.require("invoice_runs", "execute")
        self._validate_month(billing_month)

        scoped = access.scoped_customer_ids()
        if scoped is not None and (target_customer_id is None or target_customer_id not in scoped):
            raise PermissionDeniedError("invoice_runs", "execute")

        if target_customer_id is not None and self.store.customers.get(target_customer_id) is None:
            raise NotFoundError(f"Customer {target_customer_id} not found")

        source_key = self.compute_source_key(billing_month, ingestion_batch_id, target_customer_id)

        succeeded = self.store.runs.find_by_key(billing_month, source_key, InvoiceRunStatus.SUCCEEDED)
        if succeeded is not None:
            logger.info(
                "Invoice run for %s (%s) already succeeded as %s",
                billing_month, source_key, succeeded.id,
            )
            return succeeded

        pending = self.store.runs.find_by_key(billing_month, source_key, InvoiceRunStatus.PENDING)
        if pending is not None:
            return pending

        previous = self.store.runs.list_runs(billing_month, InvoiceRunStatus.SUCCEEDED, limit=1)
        if previous:
            logger.warning(
                "Billing month %s already has succeeded run %s under %s; new run uses %s",
                billing_month, previous[0].id, previous[0].source_key, source_key,
            )

        run = self.store.runs.create(InvoiceRunCreate(
            billing_month=billing_month,
            source_key=source_key,
            ingestion_batch_id=ingestion_batch_id,
            target_customer_id=target_customer_id,
            created_by=access.actor_id,
        ))
        logger.info("Created invoice run %s for %s (%s)", run.id, billing_month, source_key)
        return run

    def execute_run(self, access: AccessScope, run_id: UUID) -> InvoiceRun:
        """
        Take the month lock and generate the run's invoices.

        Returns:
            The SUCCEEDED run (unchanged if it had already succeeded).

        Raises:
            NotFoundError: Unknown or invisible run
            ConflictError: Run not PENDING, or another run holds the month lock
            BillingError: Generation failed; the run is FAILED and nothing
                it computed was committed. Unexpected failures surface as
                InternalError.
        """
        access.require("invoice_runs", "execute")
        run = self._get_visible_run(access, run_id)

        if run.status == InvoiceRunStatus.SUCCEEDED:
            return run
        if run.status != InvoiceRunStatus.PENDING:
            raise ConflictError(
                f"Invoice run {run.id} is {run.status.value}, not PENDING",
                existing_id=run.id,
            )

        try:
            running = self.store.runs.mark_running(run.id, now_utc())
        except ConflictError as e:
            holders = self.store.runs.list_runs(run.billing_month, InvoiceRunStatus.RUNNING, limit=1)
            raise ConflictError(
                f"Another invoice run is already running for {run.billing_month}",
                existing_id=holders[0].id if holders else None,
            ) from e
        if running is None:
            raise ConflictError(f"Invoice run {run.id} is no longer PENDING", existing_id=run.id)

        logger.info("Invoice run %s started for %s", run.id, run.billing_month)

        try:
            with self.store.transaction() as tx:
                summary, depletions = self._generate(tx, running)
                finished = tx.runs.mark_succeeded(run.id, summary, now_utc())
                if finished is None:
                    raise ConflictError(f"Invoice run {run.id} is no longer RUNNING", existing_id=run.id)
        except BillingError as e:
            self._fail(running, e.message, e.code, access)
            raise
        except Exception as e:
            logger.exception("Invoice run %s failed unexpectedly", run.id)
            error = InternalError()
            self._fail(running, error.message, error.code, access)
            raise error from e

        logger.info(
            "Invoice run %s succeeded: %d invoices, %d customers, %d rows, total %s, credits %s",
            finished.id, finished.total_invoices, finished.customer_count, finished.row_count,
            finished.total_amount, finished.total_credits_applied,
        )

        self.event_bus.publish(InvoiceRunSucceeded.create(finished, actor_id=access.actor_id))
        self.event_bus.publish_all(
            CreditDepleted.create(credit_id=credit_id, invoice_id=invoice_id)
            for credit_id, invoice_id in depletions
        )
        return finished

    def start_run(
        self,
        access: AccessScope,
        billing_month: str,
        ingestion_batch_id: UUID | None = None,
        target_customer_id: UUID | None = None,
    ) -> InvoiceRun:
        """create_run then execute_run. Idempotent for a key that already succeeded."""
        run = self.create_run(access, billing_month, ingestion_batch_id, target_customer_id)
        if run.status == InvoiceRunStatus.SUCCEEDED:
            return run
        return self.execute_run(access, run.id)

    def _fail(self, run: InvoiceRun, message: str, code: str, access: AccessScope) -> None:
        try:
            failed = self.store.runs.mark_failed(run.id, message, now_utc())
        except BillingError:
            logger.exception("Could not mark invoice run %s FAILED", run.id)
            return

        logger.info("Invoice run %s failed (%s): %s", run.id, code, message)
        if failed is not None:
            self.event_bus.publish(InvoiceRunFailed.create(failed, error_code=code, actor_id=access.actor_id))

    def release_stale_runs(self, max_age: timedelta | None = None) -> list[InvoiceRun]:
        """
        Fail RUNNING runs older than max_age so their month can run again.

        For runs whose host died mid-run; their transaction was never
        committed, so no invoices exist for them.
        """
        max_age = max_age or timedelta(minutes=self.config.stale_run_minutes)
        released = self.store.runs.release_stale(
            now_utc() - max_age,
            f"Released after running longer than {max_age}",
        )
        for run in released:
            logger.warning(
                "Released stale invoice run %s for %s (started %s)",
                run.id, run.billing_month, run.started_at,
            )
            self.event_bus.publish(InvoiceRunFailed.create(run, error_code=STALE_RUN_ERROR_CODE))
        return released

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate_run(
        self,
        access: AccessScope,
        billing_month: str,
        target_customer_id: UUID | None = None,
    ) -> RunValidation:
        """
        Check whether a run for the month would succeed, without writing.

        Errors mean the run would fail or must not start; warnings mean it
        would succeed but the result may be incomplete.

        Raises:
            ValidationError: Malformed billing month
            PermissionDeniedError: Missing permission, or a scoped actor
                without a visible target customer
        """
        access.require("invoice_runs", "execute")
        start, end = self._validate_month(billing_month)

        scoped = access.scoped_customer_ids()
        if scoped is not None and (target_customer_id is None or target_customer_id not in scoped):
            raise PermissionDeniedError("invoice_runs", "execute")

        report = RunValidation(billing_month=billing_month, target_customer_id=target_customer_id)

        def error(code: str, message: str, **details):
            report.errors.append(RunValidationIssue(code=code, message=message, details=details))

        def warning(code: str, message: str, **details):
            report.warnings.append(RunValidationIssue(code=code, message=message, details=details))

        running = self.store.runs.list_runs(billing_month, InvoiceRunStatus.RUNNING, limit=1)
        if running:
            error("RUN_IN_PROGRESS", f"An invoice run is already running for {billing_month}",
                  run_id=running[0].id)

        report.raw_entry_count = self.store.costs.totals(start, end).entry_count
        if report.raw_entry_count == 0:
            error("NO_COST_DATA", f"No raw cost data for {billing_month}")

        if target_customer_id is not None:
            customer = self.store.customers.get(target_customer_id)
            if customer is None:
                error("INVALID_CUSTOMER", f"Customer {target_customer_id} not found",
                      customer_id=target_customer_id)
            elif customer.status != CustomerStatus.ACTIVE:
                error("INVALID_CUSTOMER", f"Customer {customer.name} is {customer.status.value}",
                      customer_id=target_customer_id, status=customer.status.value)

        attributed = self.store.costs.list_billable(start, end, customer_id=target_customer_id)
        customer_ids = sorted({item.customer_id for item in attributed}, key=str)
        report.customer_count = len(customer_ids)
        if report.raw_entry_count and not customer_ids and target_customer_id is None:
            warning("NO_BILLABLE_COST", "No cost is bound to an ACTIVE customer; the run would invoice nothing")

        unpriced = []
        for customer_id in customer_ids:
            lists = self.store.pricing.get_active_lists(customer_id)
            if len(lists) > 1:
                error("MULTIPLE_ACTIVE_PRICING_LISTS",
                      f"Customer {customer_id} has {len(lists)} ACTIVE pricing lists",
                      customer_id=customer_id,
                      pricing_list_ids=[item.pricing_list.id for item in lists])
            elif not lists:
                unpriced.append(customer_id)
        if unpriced:
            warning("CUSTOMERS_WITHOUT_PRICING",
                    f"{len(unpriced)} customer(s) have no ACTIVE pricing list and will be billed at list price",
                    customer_ids=unpriced)

        involved = set(customer_ids)
        for rule in SpecialRuleService(self.store).rules_in_force(start.date(), end.date()):
            if rule.rule_type != SpecialRuleType.MOVE_TO_CUSTOMER:
                continue
            if rule.customer_id is not None and rule.customer_id not in involved:
                continue
            receiver = self.store.customers.get(rule.target_customer_id)
            if receiver is None or receiver.status != CustomerStatus.ACTIVE:
                error("INVALID_RULE_TARGET",
                      f"Special rule {rule.name} moves cost to a customer that is not ACTIVE",
                      rule_id=rule.id, target_customer_id=rule.target_customer_id)

        previous = self.store.runs.list_runs(billing_month, InvoiceRunStatus.SUCCEEDED, limit=1)
        if previous:
            warning("PREVIOUS_RUN_EXISTS", f"{billing_month} already has a succeeded invoice run",
                    run_id=previous[0].id, source_key=previous[0].source_key)

        if scoped is None and target_customer_id is None:
            unassigned = self.store.costs.unassigned_projects(start, end, self.config.unassigned_project_limit)
            if unassigned:
                warning("UNASSIGNED_PROJECTS",
                        f"{len(unassigned)} project(s) with cost have no active customer binding",
                        project_ids=[project.project_id for project in unassigned])

        sku_ids = {item.entry.sku_id for item in attributed}
        unmapped = sorted(sku_ids - self.store.pricing.get_sku_mappings(sorted(sku_ids)).keys())
        if unmapped:
            warning("UNMAPPED_SKUS", f"{len(unmapped)} SKU(s) are not mapped to a SKU group",
                    sku_ids=unmapped)

        logger.info(
            "Validated invoice run for %s: %d errors, %d warnings",
            billing_month, len(report.errors), len(report.warnings),
        )
        return report

    # =========================================================================
    # GENERATION
    # =========================================================================

    def _generate(
        self, tx: BillingStore, run: InvoiceRun
    ) -> tuple[InvoiceRunSummary, list[tuple[UUID, UUID]]]:
        """
        Apply special rules, then price, invoice and credit every billable
        entry of the run.

        Returns the run summary and the (credit_id, invoice_id) pairs of
        credits depleted along the way.
        """
        start, end = month_bounds(run.billing_month)
        rules = SpecialRuleService(tx).rules_in_force(start.date(), end.date())

        # A targeted run needs every customer's cost when rules may move some to the target
        target = run.target_customer_id
        moves_in = target is not None and any(
            rule.rule_type == SpecialRuleType.MOVE_TO_CUSTOMER and rule.target_customer_id == target
            for rule in rules
        )
        attributed = tx.costs.list_billable(
            start, end,
            ingestion_batch_id=run.ingestion_batch_id,
            customer_id=None if moves_in else target,
        )

        raw: dict[UUID, list[RawCostEntry]] = defaultdict(list)
        for item in attributed:
            raw[item.customer_id].append(item.entry)

        sku_map = tx.pricing.get_sku_mappings(sorted({item.entry.sku_id for item in attributed}))
        billable, received, effects = self._apply_special_rules(raw, rules, sku_map)

        in_scope = sorted(raw.keys() | received.keys(), key=str)
        if target is not None:
            in_scope = [customer_id for customer_id in in_scope if customer_id == target]
        # Entries moved between two in-scope customers count once
        inputs = list({
            entry.id: entry
            for customer_id in in_scope
            for entry in raw.get(customer_id, []) + received.get(customer_id, [])
        }.values())

        summary = InvoiceRunSummary(
            customer_count=len(in_scope),
            row_count=len(inputs),
        )
        if run.ingestion_batch_id is not None:
            summary.source_ingestion_batch_ids = [run.ingestion_batch_id]
        if not inputs:
            logger.info("Invoice run %s found no billable cost for %s", run.id, run.billing_month)
            return summary, []

        summary.project_count = len({entry.project_id for entry in inputs})
        summary.source_ingestion_batch_ids = sorted(
            {entry.ingestion_batch_id for entry in inputs if entry.ingestion_batch_id is not None},
            key=str,
        )
        summary.source_time_range_start = min(entry.usage_start_time for entry in inputs)
        summary.source_time_range_end = max(
            entry.usage_end_time or entry.usage_start_time for entry in inputs
        )

        issue_date = today_utc()
        resolver = PricingResolver(tx)
        ledger = CreditLedger(tx)
        depletions: list[tuple[UUID, UUID]] = []

        for customer_id in in_scope:
            customer = tx.customers.get(customer_id)
            if customer is None:
                raise NotFoundError(f"Customer {customer_id} not found")
            if customer_id in received and customer.status != CustomerStatus.ACTIVE:
                raise ConfigurationError(
                    f"Special rules move cost to customer {customer.name}, which is {customer.status.value}"
                )

            by_currency: dict[str, list[RawCostEntry]] = defaultdict(list)
            for entry in billable.get(customer_id, []):
                by_currency[entry.currency].append(entry)

            pricing = resolver.for_customer(
                customer_id,
                {entry.sku_id for group in by_currency.values() for entry in group},
            )
            tx.runs.insert_snapshot(self._capture_snapshot(
                tx, run, customer_id, pricing, rules, effects.get(customer_id, []),
            ))

            for currency in sorted(by_currency):
                invoice = tx.invoices.insert(self._build_invoice(
                    tx, run, customer, currency, by_currency[currency], pricing, issue_date,
                ))

                application = ledger.apply_credits(invoice, customer.id, invoice.total_amount)
                if application.amount_covered > ZERO:
                    invoice = tx.invoices.record_credit(
                        invoice.id,
                        application.amount_covered,
                        invoice.total_amount - application.amount_covered,
                    )
                    if invoice is None:
                        raise ConflictError("Invoice was locked during its own run")
                depletions.extend((credit_id, invoice.id) for credit_id in application.depleted_credit_ids)

                summary.total_invoices += 1
                summary.total_amount += invoice.total_amount
                summary.total_credits_applied += invoice.credit_amount
                summary.currency_breakdown[currency] = (
                    summary.currency_breakdown.get(currency, ZERO) + invoice.total_amount
                )

        return summary, depletions

    @staticmethod
    def _apply_special_rules(
        raw: dict[UUID, list[RawCostEntry]],
        rules: list[SpecialRule],
        sku_map: dict[str, SkuGroupMapping],
    ) -> tuple[
        dict[UUID, list[RawCostEntry]],
        dict[UUID, list[RawCostEntry]],
        dict[UUID, list[SpecialRuleEffect]],
    ]:
        """
        Run each customer's rules over its entries.

        Returns the entries left to bill per customer (moved entries land
        on their target), the entries each customer received by a move, and
        the rule effects per customer. Moved entries are not run through
        the target's rules.
        """
        billable: dict[UUID, list[RawCostEntry]] = defaultdict(list)
        received: dict[UUID, list[RawCostEntry]] = defaultdict(list)
        effects: dict[UUID, list[SpecialRuleEffect]] = {}

        for customer_id in sorted(raw, key=str):
            result = apply_special_rules(raw[customer_id], rules_for_customer(rules, customer_id), sku_map)
            billable[customer_id].extend(result.entries)
            for target_id, moved in result.moved.items():
                billable[target_id].extend(moved)
                received[target_id].extend(moved)
            if result.effects:
                effects[customer_id] = result.effects
                logger.info(
                    "Special rules for customer %s: %d excluded, %d moved, cost delta %s",
                    customer_id, len(result.excluded),
                    sum(len(moved) for moved in result.moved.values()), result.cost_delta,
                )

        return billable, received, effects

    @staticmethod
    def _capture_snapshot(
        tx: BillingStore,
        run: InvoiceRun,
        customer_id: UUID,
        pricing: CustomerPricing,
        rules: list[SpecialRule],
        effects: list[SpecialRuleEffect],
    ) -> ConfigSnapshot:
        """Must run before the customer's credits are drawn."""
        return ConfigSnapshot(
            id=uuid4(),
            invoice_run_id=run.id,
            customer_id=customer_id,
            billing_month=run.billing_month,
            pricing_list_id=pricing.pricing_list.pricing_list.id if pricing.pricing_list else None,
            pricing_rules=pricing.rules,
            credits=tx.credits.list_for_customer(customer_id, CreditStatus.ACTIVE),
            special_rules=rules_for_customer(rules, customer_id),
            special_rules_applied=effects,
            captured_at=now_utc(),
        )

    def _build_invoice(
        self,
        tx: BillingStore,
        run: InvoiceRun,
        customer: Customer,
        currency: str,
        entries: list[RawCostEntry],
        pricing: CustomerPricing,
        issue_date: date,
    ) -> Invoice:
        quantum = self.config.money_quantum
        line_items = self._build_line_items([pricing.price_line(entry) for entry in entries], quantum)

        subtotal = sum((item.amount for item in line_items), ZERO)
        tax_amount = quantize(self.tax_policy.compute_tax(subtotal, customer), quantum)
        total_amount = subtotal + tax_amount

        invoice_number = self._next_invoice_number(tx, run.billing_month, customer)

        terms = customer.payment_terms_days
        if terms is None:
            terms = self.config.default_payment_terms_days

        return Invoice(
            id=uuid4(),
            invoice_run_id=run.id,
            invoice_number=invoice_number,
            customer_id=customer.id,
            billing_month=run.billing_month,
            status=InvoiceStatus.DRAFT,
            subtotal=subtotal,
            tax_amount=tax_amount,
            total_amount=total_amount,
            credit_amount=ZERO,
            amount_due=total_amount,
            currency=currency,
            issue_date=issue_date,
            due_date=issue_date + timedelta(days=terms),
            line_items=line_items,
            created_at=now_utc(),
        )

    def _next_invoice_number(self, tx: BillingStore, billing_month: str, customer: Customer) -> str:
        """
        PREFIX-YYYYMM-SLUG-NNNN, unique across all customers.

        Slugs are not unique (Acme Corp and Acme Industries are both ACME),
        so the sequence starts after the customer's own invoices for the
        month and steps past numbers another customer already holds.
        """
        base = f"{self.config.invoice_number_prefix}-{billing_month.replace('-', '')}-{customer.slug}"
        sequence = tx.invoices.count_for_customer_month(customer.id, billing_month) + 1
        while tx.invoices.number_exists(f"{base}-{sequence:04d}"):
            sequence += 1
        return f"{base}-{sequence:04d}"

    @staticmethod
    def _build_line_items(priced: list[PricedLine], quantum: Decimal) -> list[InvoiceLineItem]:
        """One line per SKU group; amounts rounded per line so lines sum to the subtotal."""
        by_group: dict[str, list[PricedLine]] = defaultdict(list)
        for line in priced:
            by_group[line.sku_group_code].append(line)

        items = []
        for number, code in enumerate(sorted(by_group), start=1):
            lines = by_group[code]
            rates = {line.discount_rate for line in lines}
            rule_ids = {line.pricing_rule_id for line in lines}
            items.append(InvoiceLineItem(
                line_number=number,
                sku_group_code=code,
                description=_line_description(code),
                raw_amount=quantize(sum((line.entry.cost for line in lines), ZERO), quantum),
                amount=quantize(sum((line.amount for line in lines), ZERO), quantum),
                entry_count=len(lines),
                discount_rate=rates.pop() if len(rates) == 1 else None,
                pricing_rule_id=rule_ids.pop() if len(rule_ids) == 1 else None,
            ))
        return items

    # =========================================================================
    # READS
    # =========================================================================

    def get_run(self, access: AccessScope, run_id: UUID) -> InvoiceRun:
        access.require("invoice_runs", "read")
        return self._get_visible_run(access, run_id)

    def get_run_detail(self, access: AccessScope, run_id: UUID) -> InvoiceRunDetail:
        """Run with its invoices; invoices of customers outside the scope are omitted."""
        run = self.get_run(access, run_id)
        invoices = [
            InvoiceSummary.from_invoice(invoice)
            for invoice in self.store.invoices.list_for_run(run.id)
            if access.can_see_customer(invoice.customer_id)
        ]
        return InvoiceRunDetail(
            id=run.id,
            billing_month=run.billing_month,
            status=run.status,
            total_invoices=run.total_invoices,
            total_amount=run.total_amount,
            total_credits_applied=run.total_credits_applied,
            currency_breakdown=run.currency_breakdown,
            error_message=run.error_message,
            started_at=run.started_at,
            finished_at=run.finished_at,
            invoices=invoices,
        )

    def list_runs(
        self,
        access: AccessScope,
        billing_month: str | None = None,
        status: InvoiceRunStatus | None = None,
        limit: int = 50,
    ) -> list[InvoiceRun]:
        """Newest first. Scoped actors only see runs targeted at their customers."""
        access.require("invoice_runs", "read")
        if billing_month is not None:
            self._validate_month(billing_month)
        runs = self.store.runs.list_runs(billing_month, status, limit)
        return [run for run in runs if self._run_visible(access, run)]

    def get_run_snapshots(self, access: AccessScope, run_id: UUID) -> list[ConfigSnapshot]:
        """Configuration each customer of the run was invoiced under; other customers' are omitted."""
        run = self.get_run(access, run_id)
        return [
            snapshot for snapshot in self.store.runs.list_snapshots(run.id)
            if access.can_see_customer(snapshot.customer_id)
        ]
