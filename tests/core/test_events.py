"""Tests for domain event models."""

from dataclasses import FrozenInstanceError
from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from core.events import (
    BillingEvent,
    InvoiceRunEvent, InvoiceRunSucceeded, InvoiceRunFailed,
    CreditEvent, CreditDepleted, CreditsExpired,
    InvoiceEvent, InvoiceLocked, InvoiceCancelled,
)
from core.models import Invoice, InvoiceRun, InvoiceRunStatus, InvoiceStatus
from utils.timezone import now_utc


# =============================================================================
# FIXTURES - lightweight in-memory stubs, no DB needed
# =============================================================================


@pytest.fixture
def _run():
    return InvoiceRun(
        id=uuid4(),
        billing_month="2024-06",
        status=InvoiceRunStatus.FAILED,
        source_key="batch:abc",
        created_at=now_utc(),
    )


@pytest.fixture
def _invoice():
    today = now_utc().date()
    return Invoice(
        id=uuid4(), invoice_run_id=uuid4(), invoice_number="INV-202406-ACME-0001",
        customer_id=uuid4(), billing_month="2024-06", status=InvoiceStatus.LOCKED,
        subtotal=Decimal("80.00"), total_amount=Decimal("80.00"), amount_due=Decimal("80.00"),
        currency="USD", issue_date=today, due_date=today + timedelta(days=30),
        locked_at=now_utc(), created_at=now_utc(),
    )


# =============================================================================
# BASE FIELDS
# =============================================================================


class TestBaseFields:

    def test_event_id_is_unique_uuid_string(self, _run):
        first = InvoiceRunSucceeded.create(_run)
        second = InvoiceRunSucceeded.create(_run)

        assert first.event_id != second.event_id
        UUID(first.event_id)

    def test_occurred_at_is_utc(self, _run):
        event = InvoiceRunSucceeded.create(_run)
        assert event.occurred_at.utcoffset() == timedelta(0)

    def test_actor_id_defaults_to_none(self):
        assert CreditDepleted.create(credit_id=uuid4()).actor_id is None

    def test_events_are_frozen(self, _run):
        event = InvoiceRunSucceeded.create(_run)
        with pytest.raises(FrozenInstanceError):
            event.run = None


# =============================================================================
# HIERARCHY AND PAYLOADS
# =============================================================================


class TestEventPayloads:

    def test_run_events(self, _run):
        actor = uuid4()
        failed = InvoiceRunFailed.create(_run, error_code="INTERNAL_ERROR", actor_id=actor)

        assert isinstance(failed, InvoiceRunEvent)
        assert isinstance(failed, BillingEvent)
        assert failed.run is _run
        assert failed.error_code == "INTERNAL_ERROR"
        assert failed.actor_id == actor

    def test_credit_events(self):
        credit_id, invoice_id = uuid4(), uuid4()

        depleted = CreditDepleted.create(credit_id=credit_id, invoice_id=invoice_id)
        expired = CreditsExpired.create(as_of=date(2024, 7, 1), count=4)

        assert isinstance(depleted, CreditEvent)
        assert depleted.credit_id == credit_id
        assert depleted.invoice_id == invoice_id
        assert isinstance(expired, CreditEvent)
        assert expired.count == 4

    def test_invoice_events(self, _invoice):
        locked = InvoiceLocked.create(_invoice)
        cancelled = InvoiceCancelled.create(_invoice)

        assert isinstance(locked, InvoiceEvent)
        assert isinstance(cancelled, InvoiceEvent)
        assert locked.invoice.invoice_number == "INV-202406-ACME-0001"
