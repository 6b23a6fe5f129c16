"""
Invoice service for post-run invoice lifecycle.

Invoices are always created by an invoice run. Afterwards they can be
locked (monetary fields frozen for good) or cancelled (dropped from
reconciliation totals).
"""

import logging
from uuid import UUID

from core.access import AccessScope
from core.errors import ConflictError, NotFoundError
from core.event_bus import EventBus
from core.events import InvoiceCancelled, InvoiceLocked
from core.models import Invoice, InvoiceStatus
from core.store import BillingStore
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

_LOCKABLE = (InvoiceStatus.DRAFT, InvoiceStatus.ISSUED, InvoiceStatus.PAID)
_CANCELLABLE = (InvoiceStatus.DRAFT, InvoiceStatus.ISSUED)


class InvoiceService:
    """Service for invoice operations."""

    def __init__(self, store: BillingStore, event_bus: EventBus):
        self.store = store
        self.event_bus = event_bus

    def get(self, access: AccessScope, invoice_id: UUID) -> Invoice:
        """
        Get invoice by ID.

        Raises:
            NotFoundError: Invoice missing or outside the actor's customer scope
        """
        invoice = self.store.invoices.get(invoice_id)
        if invoice is None or not access.can_see_customer(invoice.customer_id):
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    def list_for_run(self, access: AccessScope, invoice_run_id: UUID) -> list[Invoice]:
        """Invoices of a run, restricted to visible customers."""
        return [
            invoice for invoice in self.store.invoices.list_for_run(invoice_run_id)
            if access.can_see_customer(invoice.customer_id)
        ]

    def lock(self, access: AccessScope, invoice_id: UUID) -> Invoice:
        """
        Lock an invoice.

        Args:
            access: Actor scope; needs invoices:lock
            invoice_id: Invoice UUID

        Returns:
            Updated invoice with LOCKED status and locked_at set

        Raises:
            NotFoundError: Invoice not found
            ConflictError: Already locked or cancelled
        """
        access.require("invoices", "lock")
        current = self.get(access, invoice_id)

        if current.is_locked:
            raise ConflictError(f"Invoice {current.invoice_number} is already locked", existing_id=current.id)

        invoice = self.store.invoices.update_status(
            invoice_id, InvoiceStatus.LOCKED, expected=_LOCKABLE, locked_at=now_utc()
        )
        if invoice is None:
            raise ConflictError(
                f"Invoice {current.invoice_number} cannot be locked from {current.status.value}",
                existing_id=current.id,
            )

        logger.info("Locked invoice %s", invoice.invoice_number)
        self.event_bus.publish(InvoiceLocked.create(invoice, actor_id=access.actor_id))
        return invoice

    def cancel(self, access: AccessScope, invoice_id: UUID) -> Invoice:
        """
        Cancel an invoice.

        Raises:
            NotFoundError: Invoice not found
            ConflictError: Invoice is LOCKED, PAID or already CANCELLED
        """
        access.require("invoices", "lock")
        current = self.get(access, invoice_id)

        invoice = self.store.invoices.update_status(
            invoice_id, InvoiceStatus.CANCELLED, expected=_CANCELLABLE
        )
        if invoice is None:
            raise ConflictError(
                f"Invoice {current.invoice_number} cannot be cancelled from {current.status.value}",
                existing_id=current.id,
            )

        logger.info("Cancelled invoice %s", invoice.invoice_number)
        self.event_bus.publish(InvoiceCancelled.create(invoice, actor_id=access.actor_id))
        return invoice
