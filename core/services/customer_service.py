"""Customer lookups and customer-project bindings."""

import logging
from datetime import date
from uuid import UUID

from core.errors import ConflictError, NotFoundError
from core.models import Customer, CustomerProject, CustomerProjectCreate
from core.store import BillingStore
from utils.timezone import today_utc

logger = logging.getLogger(__name__)


class CustomerService:
    """Service for customer and binding operations."""

    def __init__(self, store: BillingStore):
        self.store = store

    def get(self, customer_id: UUID) -> Customer:
        customer = self.store.customers.get(customer_id)
        if customer is None:
            raise NotFoundError(f"Customer {customer_id} not found")
        return customer

    def bind_project(
        self, customer_id: UUID, project_id: str, start_date: date | None = None
    ) -> CustomerProject:
        """
        Bind a project to a customer.

        Raises:
            NotFoundError: Unknown customer or project
            ConflictError: Project already has an active binding
        """
        self.get(customer_id)
        if self.store.customers.get_project(project_id) is None:
            raise NotFoundError(f"Project {project_id} not found")

        existing = self.store.customers.get_active_binding(project_id)
        if existing is not None:
            raise ConflictError(
                f"Project {project_id} is already bound to customer {existing.customer_id}",
                existing_id=existing.id,
            )

        binding = self.store.customers.create_binding(CustomerProjectCreate(
            customer_id=customer_id,
            project_id=project_id,
            start_date=start_date or today_utc(),
        ))
        logger.info("Bound project %s to customer %s", project_id, customer_id)
        return binding

    def unbind_project(self, binding_id: UUID, end_date: date | None = None) -> CustomerProject:
        """
        Deactivate a binding.

        Raises:
            NotFoundError: Unknown binding
            ConflictError: Binding already inactive
        """
        if self.store.customers.get_binding(binding_id) is None:
            raise NotFoundError(f"Binding {binding_id} not found")

        binding = self.store.customers.deactivate_binding(binding_id, end_date or today_utc())
        if binding is None:
            raise ConflictError(f"Binding {binding_id} is not active", existing_id=binding_id)

        logger.info("Unbound project %s from customer %s", binding.project_id, binding.customer_id)
        return binding
