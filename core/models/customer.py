"""Customer, project and binding domain models."""

import re
from datetime import date, datetime
from enum import Enum
from uuid import UUID

from pydantic import Field

from core.models.base import BillingModel

_NON_ALNUM = re.compile(r"[^A-Z0-9]")


class CustomerStatus(str, Enum):
    """Customer lifecycle status. Only ACTIVE customers are invoiced."""

    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    TERMINATED = "TERMINATED"


class Customer(BillingModel):
    """Billable entity."""

    id: UUID
    name: str
    external_id: str | None = None
    currency: str = "USD"
    payment_terms_days: int | None = None
    status: CustomerStatus = CustomerStatus.ACTIVE
    created_at: datetime | None = None

    @property
    def slug(self) -> str:
        """
        Four-character invoice-number slug.

        Taken from external_id (or name), uppercased, alphanumerics only,
        padded with X.
        """
        source = self.external_id or self.name
        return _NON_ALNUM.sub("", source.upper())[:4].ljust(4, "X")


class Project(BillingModel):
    """A cloud provider project, keyed by its external project ID."""

    id: UUID
    project_id: str
    name: str | None = None
    billing_account_id: str | None = None


class CustomerProjectCreate(BillingModel):
    """Data required to bind a project to a customer."""

    customer_id: UUID
    project_id: str = Field(..., min_length=1, max_length=100)
    start_date: date | None = None


class CustomerProject(BillingModel):
    """Time-bounded ownership of a project by a customer."""

    id: UUID
    customer_id: UUID
    project_id: str
    start_date: date | None = None
    end_date: date | None = None
    is_active: bool = True
    created_at: datetime | None = None
