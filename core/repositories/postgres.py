"""
PostgreSQL implementation of the billing store.

Raw SQL with %s parameters over PostgresClient (or an open Transaction).
Driver errors are translated here: unique violations become ConflictError,
anything else is logged and becomes InternalError.
"""

import functools
import logging
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Iterator
from uuid import UUID, uuid4

import psycopg2
import psycopg2.errors

from clients.postgres_client import PostgresClient, Transaction, jsonb
from core.errors import ConflictError, InternalError
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
    PricingListStatus,
    PricingListWithRules,
    PricingRule,
    PricingRuleCreate,
    Project,
    ProjectCost,
    RawCostEntry,
    RawCostTotals,
    SkuGroup,
    SkuGroupCreate,
    SkuGroupMapping,
    SpecialRule,
    SpecialRuleCreate,
)
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

_CONFLICT_MESSAGES = {
    "customer_projects_one_active": "Project already has an active customer binding",
    "invoice_runs_one_running_per_month": "Another invoice run is already running for this billing month",
    "sku_groups_code_key": "SKU group code already exists",
    "sku_group_mappings_pkey": "SKU is already mapped to a group",
    "invoices_invoice_number_key": "Invoice number already exists",
    "invoice_run_snapshots_run_customer_key": "Invoice run already has a snapshot for this customer",
}


def translate_errors(func):
    """Map psycopg2 errors onto the billing error hierarchy."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except psycopg2.errors.UniqueViolation as e:
            constraint = e.diag.constraint_name
            raise ConflictError(
                _CONFLICT_MESSAGES.get(constraint, f"Conflicts with existing record ({constraint})")
            ) from e
        except psycopg2.Error as e:
            logger.exception("Database error in %s", func.__qualname__)
            raise InternalError() from e

    return wrapper


class _Repository:
    def __init__(self, db: PostgresClient | Transaction):
        self.db = db


# =============================================================================
# CUSTOMERS AND BINDINGS
# =============================================================================


class PostgresCustomerRepository(_Repository):

    @translate_errors
    def get(self, customer_id: UUID) -> Customer | None:
        row = self.db.execute_single("SELECT * FROM customers WHERE id = %s", (customer_id,))
        return Customer.model_validate(row) if row else None

    @translate_errors
    def get_project(self, project_id: str) -> Project | None:
        row = self.db.execute_single("SELECT * FROM projects WHERE project_id = %s", (project_id,))
        return Project.model_validate(row) if row else None

    @translate_errors
    def get_binding(self, binding_id: UUID) -> CustomerProject | None:
        row = self.db.execute_single("SELECT * FROM customer_projects WHERE id = %s", (binding_id,))
        return CustomerProject.model_validate(row) if row else None

    @translate_errors
    def get_active_binding(self, project_id: str) -> CustomerProject | None:
        row = self.db.execute_single(
            "SELECT * FROM customer_projects WHERE project_id = %s AND is_active",
            (project_id,)
        )
        return CustomerProject.model_validate(row) if row else None

    @translate_errors
    def create_binding(self, data: CustomerProjectCreate) -> CustomerProject:
        row = self.db.execute_returning(
            """
            INSERT INTO customer_projects (id, customer_id, project_id, start_date, is_active, created_at)
            VALUES (%s, %s, %s, %s, TRUE, %s)
            RETURNING *
            """,
            (uuid4(), data.customer_id, data.project_id, data.start_date, now_utc())
        )[0]
        return CustomerProject.model_validate(row)

    @translate_errors
    def deactivate_binding(self, binding_id: UUID, end_date: date) -> CustomerProject | None:
        rows = self.db.execute_returning(
            """
            UPDATE customer_projects SET is_active = FALSE, end_date = %s
            WHERE id = %s AND is_active
            RETURNING *
            """,
            (end_date, binding_id)
        )
        return CustomerProject.model_validate(rows[0]) if rows else None


# =============================================================================
# RAW COST
# =============================================================================


class PostgresCostRepository(_Repository):

    @translate_errors
    def list_billable(
        self,
        start: datetime,
        end: datetime,
        ingestion_batch_id: UUID | None = None,
        customer_id: UUID | None = None,
    ) -> list[AttributedCost]:
        conditions = ["r.usage_start_time >= %s", "r.usage_start_time < %s"]
        params: list = [start, end]
        if ingestion_batch_id is not None:
            conditions.append("r.ingestion_batch_id = %s")
            params.append(ingestion_batch_id)
        if customer_id is not None:
            conditions.append("cp.customer_id = %s")
            params.append(customer_id)

        rows = self.db.execute(
            f"""
            SELECT r.*, cp.customer_id
            FROM raw_cost_entries r
            JOIN customer_projects cp ON cp.project_id = r.project_id AND cp.is_active
            JOIN customers c ON c.id = cp.customer_id AND c.status = 'ACTIVE'
            WHERE {" AND ".join(conditions)}
            ORDER BY r.usage_start_time, r.id
            """,
            tuple(params)
        )
        return [
            AttributedCost(entry=RawCostEntry.model_validate(row), customer_id=row["customer_id"])
            for row in rows
        ]

    @translate_errors
    def totals(self, start: datetime, end: datetime) -> RawCostTotals:
        row = self.db.execute_single(
            """
            SELECT COALESCE(SUM(cost), 0) AS total, COUNT(*) AS entry_count
            FROM raw_cost_entries
            WHERE usage_start_time >= %s AND usage_start_time < %s
            """,
            (start, end)
        )
        return RawCostTotals.model_validate(row)

    @translate_errors
    def cost_by_customer(self, start: datetime, end: datetime) -> list[CustomerCost]:
        rows = self.db.execute(
            """
            SELECT c.id AS customer_id, c.name AS customer_name, SUM(r.cost) AS raw_cost
            FROM raw_cost_entries r
            JOIN customer_projects cp ON cp.project_id = r.project_id AND cp.is_active
            JOIN customers c ON c.id = cp.customer_id
            WHERE r.usage_start_time >= %s AND r.usage_start_time < %s
            GROUP BY c.id, c.name
            """,
            (start, end)
        )
        return [CustomerCost.model_validate(row) for row in rows]

    @translate_errors
    def unassigned_projects(self, start: datetime, end: datetime, limit: int) -> list[ProjectCost]:
        rows = self.db.execute(
            """
            SELECT r.project_id, SUM(r.cost) AS cost
            FROM raw_cost_entries r
            WHERE r.usage_start_time >= %s AND r.usage_start_time < %s
              AND NOT EXISTS (
                  SELECT 1 FROM customer_projects cp
                  WHERE cp.project_id = r.project_id AND cp.is_active
              )
            GROUP BY r.project_id
            ORDER BY cost DESC, r.project_id
            LIMIT %s
            """,
            (start, end, limit)
        )
        return [ProjectCost.model_validate(row) for row in rows]


# =============================================================================
# PRICING
# =============================================================================


class PostgresPricingRepository(_Repository):

    _RULES_FOR_LISTS = """
        SELECT pr.*, sg.code AS sku_group_code
        FROM pricing_rules pr
        JOIN sku_groups sg ON sg.id = pr.sku_group_id
        WHERE pr.pricing_list_id = ANY(%s::uuid[])
        ORDER BY pr.priority, pr.created_at DESC, pr.id DESC
    """

    def _with_rules(self, list_rows: list[dict]) -> list[PricingListWithRules]:
        if not list_rows:
            return []
        rule_rows = self.db.execute(self._RULES_FOR_LISTS, ([row["id"] for row in list_rows],))
        rules_by_list: dict = {}
        for row in rule_rows:
            rules_by_list.setdefault(row["pricing_list_id"], []).append(PricingRule.model_validate(row))
        return [
            PricingListWithRules(
                pricing_list=PricingList.model_validate(row),
                rules=rules_by_list.get(row["id"], []),
            )
            for row in list_rows
        ]

    @translate_errors
    def get_active_lists(self, customer_id: UUID) -> list[PricingListWithRules]:
        rows = self.db.execute(
            """
            SELECT * FROM pricing_lists
            WHERE customer_id = %s AND status = %s
            ORDER BY created_at, id
            """,
            (customer_id, PricingListStatus.ACTIVE.value)
        )
        return self._with_rules(rows)

    @translate_errors
    def get_list(self, pricing_list_id: UUID) -> PricingListWithRules | None:
        row = self.db.execute_single("SELECT * FROM pricing_lists WHERE id = %s", (pricing_list_id,))
        if row is None:
            return None
        return self._with_rules([row])[0]

    @translate_errors
    def create_list(self, data: PricingListCreate) -> PricingList:
        row = self.db.execute_returning(
            """
            INSERT INTO pricing_lists (id, customer_id, name, status, created_at)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING *
            """,
            (uuid4(), data.customer_id, data.name, data.status.value, now_utc())
        )[0]
        return PricingList.model_validate(row)

    @translate_errors
    def add_rule(self, pricing_list_id: UUID, data: PricingRuleCreate) -> PricingRule:
        row = self.db.execute_returning(
            """
            WITH inserted AS (
                INSERT INTO pricing_rules (
                    id, pricing_list_id, sku_group_id, rule_type, discount_rate,
                    effective_start, effective_end, priority, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
            )
            SELECT inserted.*, sg.code AS sku_group_code
            FROM inserted JOIN sku_groups sg ON sg.id = inserted.sku_group_id
            """,
            (
                uuid4(), pricing_list_id, data.sku_group_id, data.rule_type.value,
                data.discount_rate, data.effective_start, data.effective_end,
                data.priority, now_utc()
            )
        )[0]
        return PricingRule.model_validate(row)

    @translate_errors
    def delete_list(self, pricing_list_id: UUID) -> bool:
        self.db.execute("DELETE FROM pricing_rules WHERE pricing_list_id = %s", (pricing_list_id,))
        rows = self.db.execute_returning(
            "DELETE FROM pricing_lists WHERE id = %s RETURNING id",
            (pricing_list_id,)
        )
        return bool(rows)

    @translate_errors
    def get_sku_mappings(self, sku_ids: Iterable[str] | None = None) -> dict[str, SkuGroupMapping]:
        query = """
            SELECT m.sku_id, m.sku_group_id, g.code AS sku_group_code
            FROM sku_group_mappings m
            JOIN sku_groups g ON g.id = m.sku_group_id
        """
        params = None
        if sku_ids is not None:
            query += " WHERE m.sku_id = ANY(%s)"
            params = (list(sku_ids),)
        rows = self.db.execute(query, params)
        return {row["sku_id"]: SkuGroupMapping.model_validate(row) for row in rows}

    @translate_errors
    def get_sku_group(self, sku_group_id: UUID) -> SkuGroup | None:
        row = self.db.execute_single(
            """
            SELECT g.*,
                   COALESCE(
                       array_agg(m.sku_id ORDER BY m.sku_id) FILTER (WHERE m.sku_id IS NOT NULL),
                       '{}'
                   ) AS sku_ids
            FROM sku_groups g
            LEFT JOIN sku_group_mappings m ON m.sku_group_id = g.id
            WHERE g.id = %s
            GROUP BY g.id
            """,
            (sku_group_id,)
        )
        return SkuGroup.model_validate(row) if row else None

    @translate_errors
    def create_sku_group(self, data: SkuGroupCreate) -> SkuGroup:
        row = self.db.execute_returning(
            "INSERT INTO sku_groups (id, code, name) VALUES (%s, %s, %s) RETURNING *",
            (uuid4(), data.code, data.name)
        )[0]
        for sku_id in data.sku_ids:
            self.db.execute(
                "INSERT INTO sku_group_mappings (sku_id, sku_group_id) VALUES (%s, %s)",
                (sku_id, row["id"])
            )
        return SkuGroup(id=row["id"], code=row["code"], name=row["name"], sku_ids=sorted(data.sku_ids))


# =============================================================================
# SPECIAL RULES
# =============================================================================


class PostgresSpecialRuleRepository(_Repository):

    @translate_errors
    def create(self, data: SpecialRuleCreate) -> SpecialRule:
        row = self.db.execute_returning(
            """
            INSERT INTO special_rules (
                id, customer_id, name, rule_type, priority,
                match_sku_id, match_sku_group_id, match_service_id,
                match_project_id, match_billing_account_id,
                cost_multiplier, target_customer_id,
                effective_start, effective_end, enabled, created_at
            ) VALUES (
                %s, %s, %s, %s, %s,
                %s, %s, %s,
                %s, %s,
                %s, %s,
                %s, %s, %s, %s
            )
            RETURNING *
            """,
            (
                uuid4(), data.customer_id, data.name, data.rule_type.value, data.priority,
                data.match_sku_id, data.match_sku_group_id, data.match_service_id,
                data.match_project_id, data.match_billing_account_id,
                data.cost_multiplier, data.target_customer_id,
                data.effective_start, data.effective_end, data.enabled, now_utc()
            )
        )[0]
        return SpecialRule.model_validate(row)

    @translate_errors
    def get(self, rule_id: UUID) -> SpecialRule | None:
        row = self.db.execute_single("SELECT * FROM special_rules WHERE id = %s", (rule_id,))
        return SpecialRule.model_validate(row) if row else None

    @translate_errors
    def list_rules(self, customer_id: UUID | None = None) -> list[SpecialRule]:
        if customer_id is None:
            rows = self.db.execute(
                "SELECT * FROM special_rules ORDER BY priority, created_at, id"
            )
        else:
            rows = self.db.execute(
                """
                SELECT * FROM special_rules
                WHERE customer_id = %s OR customer_id IS NULL
                ORDER BY priority, created_at, id
                """,
                (customer_id,)
            )
        return [SpecialRule.model_validate(row) for row in rows]

    @translate_errors
    def list_enabled(self, start: date, end: date) -> list[SpecialRule]:
        rows = self.db.execute(
            """
            SELECT * FROM special_rules
            WHERE enabled
              AND (effective_start IS NULL OR effective_start < %s)
              AND (effective_end IS NULL OR effective_end > %s)
            ORDER BY priority, created_at, id
            """,
            (end, start)
        )
        return [SpecialRule.model_validate(row) for row in rows]

    @translate_errors
    def set_enabled(self, rule_id: UUID, enabled: bool) -> SpecialRule | None:
        rows = self.db.execute_returning(
            "UPDATE special_rules SET enabled = %s WHERE id = %s RETURNING *",
            (enabled, rule_id)
        )
        return SpecialRule.model_validate(rows[0]) if rows else None


# =============================================================================
# CREDITS
# =============================================================================


class PostgresCreditRepository(_Repository):

    @translate_errors
    def create(self, data: CreditCreate) -> Credit:
        now = now_utc()
        row = self.db.execute_returning(
            """
            INSERT INTO credits (
                id, customer_id, billing_account_id, type,
                total_amount, remaining_amount, currency,
                valid_from, valid_to, allow_carry_over,
                status, description, created_at, updated_at
            ) VALUES (
                %s, %s, %s, %s,
                %s, %s, %s,
                %s, %s, %s,
                %s, %s, %s, %s
            )
            RETURNING *
            """,
            (
                uuid4(), data.customer_id, data.billing_account_id, data.type.value,
                data.total_amount, data.total_amount, data.currency,
                data.valid_from, data.valid_to, data.allow_carry_over,
                CreditStatus.ACTIVE.value, data.description, now, now
            )
        )[0]
        return Credit.model_validate(row)

    @translate_errors
    def get(self, credit_id: UUID) -> Credit | None:
        row = self.db.execute_single("SELECT * FROM credits WHERE id = %s", (credit_id,))
        return Credit.model_validate(row) if row else None

    @translate_errors
    def get_with_ledger(self, credit_id: UUID) -> CreditWithLedger | None:
        credit = self.get(credit_id)
        if credit is None:
            return None
        rows = self.db.execute(
            "SELECT * FROM credit_ledger WHERE credit_id = %s ORDER BY created_at, id",
            (credit_id,)
        )
        return CreditWithLedger(
            credit=credit,
            entries=[CreditLedgerEntry.model_validate(row) for row in rows],
        )

    @translate_errors
    def list_for_customer(
        self, customer_id: UUID, status: CreditStatus | None = None
    ) -> list[Credit]:
        query = "SELECT * FROM credits WHERE customer_id = %s"
        params: list = [customer_id]
        if status is not None:
            query += " AND status = %s"
            params.append(status.value)
        query += " ORDER BY valid_from, created_at, id"
        return [Credit.model_validate(row) for row in self.db.execute(query, tuple(params))]

    @translate_errors
    def list_usable(self, customer_id: UUID, on: date, currency: str) -> list[Credit]:
        rows = self.db.execute(
            """
            SELECT * FROM credits
            WHERE customer_id = %s
              AND status = 'ACTIVE'
              AND remaining_amount > 0
              AND valid_from <= %s AND valid_to >= %s
              AND currency = %s
            """,
            (customer_id, on, on, currency)
        )
        return [Credit.model_validate(row) for row in rows]

    @translate_errors
    def decrement(self, credit_id: UUID, amount: Decimal) -> Credit | None:
        rows = self.db.execute_returning(
            """
            UPDATE credits
            SET remaining_amount = remaining_amount - %s,
                status = CASE WHEN remaining_amount - %s = 0 THEN 'DEPLETED' ELSE status END,
                updated_at = %s
            WHERE id = %s AND status = 'ACTIVE' AND remaining_amount >= %s
            RETURNING *
            """,
            (amount, amount, now_utc(), credit_id, amount)
        )
        return Credit.model_validate(rows[0]) if rows else None

    @translate_errors
    def insert_ledger_entry(
        self,
        credit_id: UUID,
        invoice_id: UUID,
        invoice_run_id: UUID | None,
        amount_applied: Decimal,
        remaining_before: Decimal,
        remaining_after: Decimal,
    ) -> CreditLedgerEntry:
        row = self.db.execute_returning(
            """
            INSERT INTO credit_ledger (
                id, credit_id, invoice_id, invoice_run_id,
                amount_applied, remaining_before, remaining_after, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                uuid4(), credit_id, invoice_id, invoice_run_id,
                amount_applied, remaining_before, remaining_after, now_utc()
            )
        )[0]
        return CreditLedgerEntry.model_validate(row)

    @translate_errors
    def expire(self, as_of: date) -> list[Credit]:
        rows = self.db.execute_returning(
            """
            UPDATE credits SET status = 'EXPIRED', updated_at = %s
            WHERE status = 'ACTIVE' AND valid_to < %s AND remaining_amount > 0
            RETURNING *
            """,
            (now_utc(), as_of)
        )
        return [Credit.model_validate(row) for row in rows]


# =============================================================================
# INVOICES
# =============================================================================


class PostgresInvoiceRepository(_Repository):

    @translate_errors
    def insert(self, invoice: Invoice) -> Invoice:
        row = self.db.execute_returning(
            """
            INSERT INTO invoices (
                id, invoice_run_id, invoice_number, customer_id, billing_month, status,
                subtotal, tax_amount, total_amount, credit_amount, amount_due, currency,
                issue_date, due_date, locked_at, line_items, created_at, updated_at
            ) VALUES (
                %s, %s, %s, %s, %s, %s,
                %s, %s, %s, %s, %s, %s,
                %s, %s, %s, %s, %s, %s
            )
            RETURNING *
            """,
            (
                invoice.id, invoice.invoice_run_id, invoice.invoice_number,
                invoice.customer_id, invoice.billing_month, invoice.status.value,
                invoice.subtotal, invoice.tax_amount, invoice.total_amount,
                invoice.credit_amount, invoice.amount_due, invoice.currency,
                invoice.issue_date, invoice.due_date, invoice.locked_at,
                jsonb([item.model_dump(mode="json") for item in invoice.line_items]),
                invoice.created_at, invoice.updated_at,
            )
        )[0]
        return Invoice.model_validate(row)

    @translate_errors
    def get(self, invoice_id: UUID) -> Invoice | None:
        row = self.db.execute_single("SELECT * FROM invoices WHERE id = %s", (invoice_id,))
        return Invoice.model_validate(row) if row else None

    @translate_errors
    def list_for_run(self, invoice_run_id: UUID) -> list[Invoice]:
        rows = self.db.execute(
            "SELECT * FROM invoices WHERE invoice_run_id = %s ORDER BY invoice_number",
            (invoice_run_id,)
        )
        return [Invoice.model_validate(row) for row in rows]

    @translate_errors
    def count_for_customer_month(self, customer_id: UUID, billing_month: str) -> int:
        return self.db.execute_scalar(
            "SELECT COUNT(*) FROM invoices WHERE customer_id = %s AND billing_month = %s",
            (customer_id, billing_month)
        ) or 0

    @translate_errors
    def number_exists(self, invoice_number: str) -> bool:
        return self.db.execute_scalar(
            "SELECT EXISTS (SELECT 1 FROM invoices WHERE invoice_number = %s)",
            (invoice_number,)
        ) is True

    @translate_errors
    def record_credit(
        self, invoice_id: UUID, credit_amount: Decimal, amount_due: Decimal
    ) -> Invoice | None:
        rows = self.db.execute_returning(
            """
            UPDATE invoices SET credit_amount = %s, amount_due = %s, updated_at = %s
            WHERE id = %s AND locked_at IS NULL
            RETURNING *
            """,
            (credit_amount, amount_due, now_utc(), invoice_id)
        )
        return Invoice.model_validate(rows[0]) if rows else None

    @translate_errors
    def update_status(
        self,
        invoice_id: UUID,
        status: InvoiceStatus,
        expected: Iterable[InvoiceStatus],
        locked_at: datetime | None = None,
    ) -> Invoice | None:
        rows = self.db.execute_returning(
            """
            UPDATE invoices
            SET status = %s, locked_at = COALESCE(%s, locked_at), updated_at = %s
            WHERE id = %s AND status = ANY(%s)
            RETURNING *
            """,
            (status.value, locked_at, now_utc(), invoice_id, [s.value for s in expected])
        )
        return Invoice.model_validate(rows[0]) if rows else None

    @translate_errors
    def totals_for_month(self, billing_month: str) -> InvoiceTotals:
        row = self.db.execute_single(
            """
            SELECT COALESCE(SUM(subtotal), 0) AS subtotal,
                   COALESCE(SUM(tax_amount), 0) AS tax_amount,
                   COALESCE(SUM(total_amount), 0) AS total_amount,
                   COUNT(*) AS invoice_count
            FROM invoices
            WHERE billing_month = %s AND status <> 'CANCELLED'
            """,
            (billing_month,)
        )
        return InvoiceTotals.model_validate(row)

    @translate_errors
    def invoiced_by_customer(self, billing_month: str) -> list[CustomerInvoiced]:
        rows = self.db.execute(
            """
            SELECT customer_id, SUM(total_amount) AS invoiced_amount
            FROM invoices
            WHERE billing_month = %s AND status <> 'CANCELLED'
            GROUP BY customer_id
            """,
            (billing_month,)
        )
        return [CustomerInvoiced.model_validate(row) for row in rows]


# =============================================================================
# INVOICE RUNS
# =============================================================================


class PostgresInvoiceRunRepository(_Repository):

    @translate_errors
    def create(self, data: InvoiceRunCreate) -> InvoiceRun:
        row = self.db.execute_returning(
            """
            INSERT INTO invoice_runs (
                id, billing_month, status, source_key,
                ingestion_batch_id, target_customer_id, created_by, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                uuid4(), data.billing_month, InvoiceRunStatus.PENDING.value, data.source_key,
                data.ingestion_batch_id, data.target_customer_id, data.created_by, now_utc()
            )
        )[0]
        return InvoiceRun.model_validate(row)

    @translate_errors
    def get(self, run_id: UUID) -> InvoiceRun | None:
        row = self.db.execute_single("SELECT * FROM invoice_runs WHERE id = %s", (run_id,))
        return InvoiceRun.model_validate(row) if row else None

    @translate_errors
    def find_by_key(
        self, billing_month: str, source_key: str, status: InvoiceRunStatus
    ) -> InvoiceRun | None:
        row = self.db.execute_single(
            """
            SELECT * FROM invoice_runs
            WHERE billing_month = %s AND source_key = %s AND status = %s
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (billing_month, source_key, status.value)
        )
        return InvoiceRun.model_validate(row) if row else None

    @translate_errors
    def list_runs(
        self,
        billing_month: str | None = None,
        status: InvoiceRunStatus | None = None,
        limit: int = 50,
    ) -> list[InvoiceRun]:
        conditions = []
        params: list = []
        if billing_month is not None:
            conditions.append("billing_month = %s")
            params.append(billing_month)
        if status is not None:
            conditions.append("status = %s")
            params.append(status.value)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)
        rows = self.db.execute(
            f"SELECT * FROM invoice_runs {where} ORDER BY created_at DESC, id DESC LIMIT %s",
            tuple(params)
        )
        return [InvoiceRun.model_validate(row) for row in rows]

    @translate_errors
    def mark_running(self, run_id: UUID, started_at: datetime) -> InvoiceRun | None:
        rows = self.db.execute_returning(
            """
            UPDATE invoice_runs SET status = 'RUNNING', started_at = %s
            WHERE id = %s AND status = 'PENDING'
            RETURNING *
            """,
            (started_at, run_id)
        )
        return InvoiceRun.model_validate(rows[0]) if rows else None

    @translate_errors
    def mark_succeeded(
        self, run_id: UUID, summary: InvoiceRunSummary, finished_at: datetime
    ) -> InvoiceRun | None:
        rows = self.db.execute_returning(
            """
            UPDATE invoice_runs SET
                status = 'SUCCEEDED',
                finished_at = %s,
                customer_count = %s,
                project_count = %s,
                row_count = %s,
                currency_breakdown = %s,
                total_invoices = %s,
                total_amount = %s,
                total_credits_applied = %s,
                source_ingestion_batch_ids = %s,
                source_time_range_start = %s,
                source_time_range_end = %s
            WHERE id = %s AND status = 'RUNNING'
            RETURNING *
            """,
            (
                finished_at,
                summary.customer_count,
                summary.project_count,
                summary.row_count,
                jsonb(summary.currency_breakdown),
                summary.total_invoices,
                summary.total_amount,
                summary.total_credits_applied,
                [str(batch_id) for batch_id in summary.source_ingestion_batch_ids],
                summary.source_time_range_start,
                summary.source_time_range_end,
                run_id,
            )
        )
        return InvoiceRun.model_validate(rows[0]) if rows else None

    @translate_errors
    def mark_failed(self, run_id: UUID, error_message: str, finished_at: datetime) -> InvoiceRun | None:
        rows = self.db.execute_returning(
            """
            UPDATE invoice_runs SET status = 'FAILED', error_message = %s, finished_at = %s
            WHERE id = %s AND status IN ('PENDING', 'RUNNING')
            RETURNING *
            """,
            (error_message, finished_at, run_id)
        )
        return InvoiceRun.model_validate(rows[0]) if rows else None

    @translate_errors
    def release_stale(self, started_before: datetime, error_message: str) -> list[InvoiceRun]:
        rows = self.db.execute_returning(
            """
            UPDATE invoice_runs SET status = 'FAILED', error_message = %s, finished_at = %s
            WHERE status = 'RUNNING' AND started_at < %s
            RETURNING *
            """,
            (error_message, now_utc(), started_before)
        )
        return [InvoiceRun.model_validate(row) for row in rows]

    _SNAPSHOT_CONFIG_FIELDS = {
        "pricing_list_id", "pricing_rules", "credits", "special_rules", "special_rules_applied",
    }

    @translate_errors
    def insert_snapshot(self, snapshot: ConfigSnapshot) -> ConfigSnapshot:
        self.db.execute_returning(
            """
            INSERT INTO invoice_run_snapshots (
                id, invoice_run_id, customer_id, billing_month, config, captured_at
            ) VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                snapshot.id, snapshot.invoice_run_id, snapshot.customer_id, snapshot.billing_month,
                jsonb(snapshot.model_dump(mode="json", include=self._SNAPSHOT_CONFIG_FIELDS)),
                snapshot.captured_at,
            )
        )
        return snapshot

    @translate_errors
    def list_snapshots(self, run_id: UUID) -> list[ConfigSnapshot]:
        rows = self.db.execute(
            """
            SELECT id, invoice_run_id, customer_id, billing_month, config, captured_at
            FROM invoice_run_snapshots
            WHERE invoice_run_id = %s
            ORDER BY customer_id
            """,
            (run_id,)
        )
        snapshots = []
        for row in rows:
            config = row.pop("config")
            snapshots.append(ConfigSnapshot.model_validate({**config, **row}))
        return snapshots


# =============================================================================
# STORE
# =============================================================================


class PostgresBillingStore:
    """
    BillingStore over PostgreSQL.

    Outside a transaction every call commits on its own. Inside
    ``transaction()`` all repositories share one connection; nested
    ``transaction()`` calls join the open one.
    """

    def __init__(self, db: PostgresClient | Transaction, _in_transaction: bool = False):
        self._db = db
        self._in_transaction = _in_transaction
        self.customers = PostgresCustomerRepository(db)
        self.costs = PostgresCostRepository(db)
        self.pricing = PostgresPricingRepository(db)
        self.special_rules = PostgresSpecialRuleRepository(db)
        self.credits = PostgresCreditRepository(db)
        self.invoices = PostgresInvoiceRepository(db)
        self.runs = PostgresInvoiceRunRepository(db)

    @contextmanager
    def transaction(self) -> Iterator["PostgresBillingStore"]:
        if self._in_transaction:
            yield self
            return
        try:
            with self._db.transaction() as tx:
                yield PostgresBillingStore(tx, _in_transaction=True)
        except psycopg2.errors.UniqueViolation as e:
            raise ConflictError(
                _CONFLICT_MESSAGES.get(e.diag.constraint_name, "Conflicts with existing record")
            ) from e
        except psycopg2.Error as e:
            logger.exception("Transaction failed")
            raise InternalError() from e
