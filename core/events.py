"""
Domain events for billing.

Immutable event objects describing state changes the core has committed.
Host-side collaborators (audit log writers, analytics snapshots, notifiers)
subscribe to these instead of the core calling them directly.

Event Categories:
- InvoiceRunEvent: run lifecycle (succeeded, failed)
- CreditEvent: credit balance changes (depleted, expired)
- InvoiceEvent: invoice lifecycle (locked, cancelled)

Events carry the full domain object so handlers don't need to re-fetch state.
They are published only after the owning transaction commits.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any
from uuid import UUID, uuid4

from utils.timezone import now_utc


@dataclass(frozen=True, kw_only=True)
class BillingEvent:
    """Base class for all billing domain events."""
    event_id: str = field(default_factory=lambda: str(uuid4()))
    occurred_at: datetime = field(default_factory=now_utc)
    actor_id: UUID | None = None


# =============================================================================
# INVOICE RUN EVENTS
# =============================================================================


@dataclass(frozen=True)
class InvoiceRunEvent(BillingEvent):
    """Events related to invoice run lifecycle."""
    pass


@dataclass(frozen=True)
class InvoiceRunSucceeded(InvoiceRunEvent):
    """A run committed its invoices."""
    run: Any = None  # InvoiceRun; Any avoids a models import cycle

    @classmethod
    def create(cls, run: Any, actor_id: UUID | None = None) -> "InvoiceRunSucceeded":
        return cls(run=run, actor_id=actor_id)


@dataclass(frozen=True)
class InvoiceRunFailed(InvoiceRunEvent):
    """A run was rolled back and marked FAILED."""
    run: Any = None
    error_code: str = ""

    @classmethod
    def create(cls, run: Any, error_code: str, actor_id: UUID | None = None) -> "InvoiceRunFailed":
        return cls(run=run, error_code=error_code, actor_id=actor_id)


# =============================================================================
# CREDIT EVENTS
# =============================================================================


@dataclass(frozen=True)
class CreditEvent(BillingEvent):
    """Events related to credit balances."""
    pass


@dataclass(frozen=True)
class CreditDepleted(CreditEvent):
    """A credit's remaining amount reached zero."""
    credit_id: UUID | None = None
    invoice_id: UUID | None = None

    @classmethod
    def create(cls, credit_id: UUID, invoice_id: UUID | None = None) -> "CreditDepleted":
        return cls(credit_id=credit_id, invoice_id=invoice_id)


@dataclass(frozen=True)
class CreditsExpired(CreditEvent):
    """ACTIVE credits past valid_to were moved to EXPIRED."""
    as_of: date | None = None
    count: int = 0

    @classmethod
    def create(cls, as_of: date, count: int) -> "CreditsExpired":
        return cls(as_of=as_of, count=count)


# =============================================================================
# INVOICE EVENTS
# =============================================================================


@dataclass(frozen=True)
class InvoiceEvent(BillingEvent):
    """Events related to invoice lifecycle."""
    pass


@dataclass(frozen=True)
class InvoiceLocked(InvoiceEvent):
    """An invoice's monetary fields were frozen."""
    invoice: Any = None

    @classmethod
    def create(cls, invoice: Any, actor_id: UUID | None = None) -> "InvoiceLocked":
        return cls(invoice=invoice, actor_id=actor_id)


@dataclass(frozen=True)
class InvoiceCancelled(InvoiceEvent):
    """An invoice was cancelled and drops out of reconciliation."""
    invoice: Any = None

    @classmethod
    def create(cls, invoice: Any, actor_id: UUID | None = None) -> "InvoiceCancelled":
        return cls(invoice=invoice, actor_id=actor_id)
