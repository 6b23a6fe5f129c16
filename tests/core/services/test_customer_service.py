"""Tests for CustomerService."""

from datetime import date
from uuid import uuid4

import pytest

from core.errors import ConflictError, NotFoundError
from core.services.customer_service import CustomerService
from utils.timezone import today_utc


@pytest.fixture
def customer_service(store):
    return CustomerService(store)


@pytest.fixture
def customer(store):
    return store.add_customer("Acme Corp", external_id="ACME-001")


class TestCustomerGet:
    """Tests for CustomerService.get."""

    def test_gets_customer(self, customer_service, customer):
        assert customer_service.get(customer.id).name == "Acme Corp"

    def test_missing_customer(self, customer_service):
        with pytest.raises(NotFoundError):
            customer_service.get(uuid4())

    def test_slug_from_external_id(self, customer):
        assert customer.slug == "ACME"

    def test_slug_padded_from_name(self, store):
        assert store.add_customer("X-1").slug == "X1XX"


class TestBindProject:
    """Tests for CustomerService.bind_project."""

    def test_binds_project(self, store, customer_service, customer):
        store.add_project("proj-1")

        binding = customer_service.bind_project(customer.id, "proj-1", start_date=date(2024, 6, 1))

        assert binding.is_active
        assert binding.start_date == date(2024, 6, 1)
        assert store.customers.get_active_binding("proj-1").id == binding.id

    def test_start_date_defaults_to_today(self, store, customer_service, customer):
        store.add_project("proj-1")

        assert customer_service.bind_project(customer.id, "proj-1").start_date == today_utc()

    def test_second_active_binding_conflicts(self, store, customer_service, customer):
        """A project has at most one active binding."""
        other = store.add_customer("Other Inc")
        store.add_project("proj-1")
        first = customer_service.bind_project(customer.id, "proj-1")

        with pytest.raises(ConflictError) as exc_info:
            customer_service.bind_project(other.id, "proj-1")

        assert exc_info.value.existing_id == first.id

    def test_unknown_project(self, customer_service, customer):
        with pytest.raises(NotFoundError, match="Project"):
            customer_service.bind_project(customer.id, "proj-missing")

    def test_unknown_customer(self, store, customer_service):
        store.add_project("proj-1")

        with pytest.raises(NotFoundError, match="Customer"):
            customer_service.bind_project(uuid4(), "proj-1")


class TestUnbindProject:
    """Tests for CustomerService.unbind_project."""

    def test_unbind_then_rebind(self, store, customer_service, customer):
        other = store.add_customer("Other Inc")
        store.add_project("proj-1")
        binding = customer_service.bind_project(customer.id, "proj-1")

        ended = customer_service.unbind_project(binding.id, end_date=date(2024, 6, 30))
        rebound = customer_service.bind_project(other.id, "proj-1")

        assert not ended.is_active
        assert ended.end_date == date(2024, 6, 30)
        assert rebound.customer_id == other.id

    def test_unbind_inactive_conflicts(self, store, customer_service, customer):
        store.add_project("proj-1")
        binding = customer_service.bind_project(customer.id, "proj-1")
        customer_service.unbind_project(binding.id)

        with pytest.raises(ConflictError, match="not active"):
            customer_service.unbind_project(binding.id)

    def test_unknown_binding(self, customer_service):
        with pytest.raises(NotFoundError):
            customer_service.unbind_project(uuid4())
