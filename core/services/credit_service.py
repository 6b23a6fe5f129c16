"""
Credit ledger and credit administration.

Credits are drawn down against invoice amounts due. Every draw is one
atomic conditional decrement plus one append-only ledger entry, so for
every credit:

    sum(entry.amount_applied) == total_amount - remaining_amount

Concurrent draws against the same credit cannot both succeed past its
balance: the losing decrement is rejected with InsufficientCreditBalance
and never retried.
"""

import logging
from datetime import date
from decimal import Decimal
from uuid import UUID

from core.access import AccessScope
from core.config import BillingConfig
from core.errors import (
    ConflictError,
    CurrencyMismatchError,
    InsufficientCreditBalance,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from core.event_bus import EventBus
from core.events import CreditDepleted, CreditsExpired
from core.models import (
    Credit,
    CreditApplication,
    CreditCreate,
    CreditLedgerEntry,
    CreditStatus,
    CreditSummary,
    CreditTypeSummary,
    CreditWithLedger,
    Invoice,
    InvoiceStatus,
    ZERO,
    quantize,
)
from core.store import BillingStore
from utils.timezone import today_utc

logger = logging.getLogger(__name__)

# Invoices that may still receive credit
CREDITABLE_STATUSES = frozenset({InvoiceStatus.DRAFT, InvoiceStatus.ISSUED})


def credit_sort_key(credit: Credit) -> tuple:
    """
    Consumption order: oldest valid_from first, then credits that cannot
    carry over, then earliest valid_to, then oldest created.
    """
    return (
        credit.valid_from,
        credit.allow_carry_over,
        credit.valid_to,
        credit.created_at,
        credit.id,
    )


class CreditLedger:
    """Applies credits to invoices through a BillingStore."""

    def __init__(self, store: BillingStore):
        self.store = store

    def select_credits(self, customer_id: UUID, issue_date: date, currency: str) -> list[Credit]:
        """Usable credits for an invoice, in consumption order."""
        credits = self.store.credits.list_usable(customer_id, issue_date, currency)
        return sorted(credits, key=credit_sort_key)

    def apply_credit(self, credit: Credit, invoice: Invoice, amount: Decimal) -> CreditLedgerEntry:
        """
        Apply one credit to one invoice.

        Args:
            credit: Credit to draw from (its balance is re-checked at write time)
            invoice: Invoice the draw is recorded against
            amount: Positive amount to draw

        Returns:
            The ledger entry written for this draw.

        Raises:
            CurrencyMismatchError: Credit and invoice currencies differ
            ValidationError: amount is not positive
            InsufficientCreditBalance: Credit no longer ACTIVE or below amount
        """
        if credit.currency != invoice.currency:
            raise CurrencyMismatchError(credit.currency, invoice.currency)
        if amount <= ZERO:
            raise ValidationError("Credit amount to apply must be positive")

        updated = self.store.credits.decrement(credit.id, amount)
        if updated is None:
            current = self.store.credits.get(credit.id)
            raise InsufficientCreditBalance(
                credit.id,
                amount,
                current.remaining_amount if current else None,
            )

        entry = self.store.credits.insert_ledger_entry(
            credit_id=credit.id,
            invoice_id=invoice.id,
            invoice_run_id=invoice.invoice_run_id,
            amount_applied=amount,
            remaining_before=updated.remaining_amount + amount,
            remaining_after=updated.remaining_amount,
        )

        if updated.status == CreditStatus.DEPLETED:
            logger.info("Credit %s depleted by invoice %s", credit.id, invoice.invoice_number)

        return entry

    def apply_credits(self, invoice: Invoice, customer_id: UUID, amount_due: Decimal) -> CreditApplication:
        """
        Cover as much of amount_due as the customer's credits allow.

        Only credits in the invoice currency that are valid on the invoice
        issue date are considered.
        """
        application = CreditApplication()
        if amount_due <= ZERO:
            return application

        for credit in self.select_credits(customer_id, invoice.issue_date, invoice.currency):
            outstanding = amount_due - application.amount_covered
            if outstanding <= ZERO:
                break

            amount = min(credit.remaining_amount, outstanding)
            entry = self.apply_credit(credit, invoice, amount)

            application.amount_covered += amount
            application.entries.append(entry)
            if entry.remaining_after == ZERO:
                application.depleted_credit_ids.append(credit.id)

        return application


class CreditService:
    """Credit creation, lookup, expiry and manual application."""

    def __init__(self, store: BillingStore, event_bus: EventBus, config: BillingConfig | None = None):
        self.store = store
        self.event_bus = event_bus
        self.config = config or BillingConfig()

    def _require_customer_visible(self, access: AccessScope, customer_id: UUID) -> None:
        if not access.can_see_customer(customer_id):
            raise PermissionDeniedError("customers", "read")

    def create(self, access: AccessScope, data: CreditCreate) -> Credit:
        """
        Create a credit with its full amount remaining.

        Raises:
            PermissionDeniedError: Missing credits:write or customer out of scope
            ValidationError: Non-positive amount, bad precision, or valid_to <= valid_from
            NotFoundError: Unknown customer
        """
        access.require("credits", "write")
        self._require_customer_visible(access, data.customer_id)

        if data.total_amount <= ZERO:
            raise ValidationError("total_amount must be positive")
        if quantize(data.total_amount, self.config.money_quantum) != data.total_amount:
            raise ValidationError(
                f"total_amount must have at most {self.config.money_quantum} precision"
            )
        if data.valid_to <= data.valid_from:
            raise ValidationError("valid_to must be after valid_from")

        customer = self.store.customers.get(data.customer_id)
        if customer is None:
            raise NotFoundError(f"Customer {data.customer_id} not found")

        currency = (data.currency or customer.currency or self.config.default_currency).upper()
        credit = self.store.credits.create(data.model_copy(update={"currency": currency}))

        logger.info(
            "Created %s credit %s for customer %s: %s %s",
            credit.type.value, credit.id, credit.customer_id, credit.total_amount, credit.currency,
        )
        return credit

    def get_with_ledger(self, access: AccessScope, credit_id: UUID) -> CreditWithLedger:
        result = self.store.credits.get_with_ledger(credit_id)
        if result is None or not access.can_see_customer(result.credit.customer_id):
            raise NotFoundError(f"Credit {credit_id} not found")
        return result

    def list_for_customer(
        self, access: AccessScope, customer_id: UUID, status: CreditStatus | None = None
    ) -> list[Credit]:
        self._require_customer_visible(access, customer_id)
        return self.store.credits.list_for_customer(customer_id, status)

    def customer_summary(self, access: AccessScope, customer_id: UUID) -> CreditSummary:
        """Count and remaining balance of a customer's ACTIVE credits."""
        self._require_customer_visible(access, customer_id)
        credits = self.store.credits.list_for_customer(customer_id, CreditStatus.ACTIVE)

        summary = CreditSummary(customer_id=customer_id, total_active_credits=len(credits))
        for credit in credits:
            summary.remaining_by_currency[credit.currency] = (
                summary.remaining_by_currency.get(credit.currency, ZERO) + credit.remaining_amount
            )
            by_type = summary.credits_by_type.setdefault(credit.type, CreditTypeSummary())
            by_type.count += 1
            by_type.remaining_amount += credit.remaining_amount
        return summary

    def expire_credits(self, as_of: date | None = None) -> int:
        """
        Move ACTIVE credits whose valid_to has passed to EXPIRED.

        Returns:
            Number of credits expired.
        """
        as_of = as_of or today_utc()
        with self.store.transaction() as tx:
            expired = tx.credits.expire(as_of)

        if expired:
            logger.info("Expired %d credits as of %s", len(expired), as_of)
            self.event_bus.publish(CreditsExpired.create(as_of=as_of, count=len(expired)))
        return len(expired)

    def apply_to_invoice(
        self, access: AccessScope, credit_id: UUID, invoice_id: UUID, amount: Decimal
    ) -> CreditLedgerEntry:
        """
        Manually apply one credit to one invoice.

        Raises:
            NotFoundError: Unknown credit or invoice
            ConflictError: Invoice is locked, or not DRAFT or ISSUED
            ValidationError: amount exceeds the invoice's amount due
            CurrencyMismatchError / InsufficientCreditBalance: see CreditLedger.apply_credit
        """
        access.require("credits", "write")

        with self.store.transaction() as tx:
            credit = tx.credits.get(credit_id)
            if credit is None or not access.can_see_customer(credit.customer_id):
                raise NotFoundError(f"Credit {credit_id} not found")
            invoice = tx.invoices.get(invoice_id)
            if invoice is None or invoice.customer_id != credit.customer_id:
                raise NotFoundError(f"Invoice {invoice_id} not found")
            if invoice.is_locked:
                raise ConflictError(f"Invoice {invoice.invoice_number} is locked")
            if invoice.status not in CREDITABLE_STATUSES:
                raise ConflictError(
                    f"Invoice {invoice.invoice_number} is {invoice.status.value} and cannot receive credit"
                )
            if amount > invoice.amount_due:
                raise ValidationError(
                    f"Amount {amount} exceeds amount due {invoice.amount_due}"
                )

            entry = CreditLedger(tx).apply_credit(credit, invoice, amount)
            tx.invoices.record_credit(
                invoice.id,
                invoice.credit_amount + amount,
                invoice.amount_due - amount,
            )

        if entry.remaining_after == ZERO:
            self.event_bus.publish(CreditDepleted.create(credit_id=credit_id, invoice_id=invoice_id))
        return entry
