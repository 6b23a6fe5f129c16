"""Raw cost domain models and the aggregate shapes storage returns for them."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import ConfigDict

from core.models.base import BillingModel, ZERO


class RawCostEntry(BillingModel):
    """Normalized usage/cost line from a provider. Immutable once ingested."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    ingestion_batch_id: UUID | None = None
    billing_account_id: str | None = None
    project_id: str
    service_id: str | None = None
    sku_id: str
    usage_start_time: datetime
    usage_end_time: datetime | None = None
    usage_amount: Decimal = ZERO
    cost: Decimal
    currency: str


class AttributedCost(BillingModel):
    """A raw cost entry together with the customer its project is bound to."""

    entry: RawCostEntry
    customer_id: UUID


class RawCostTotals(BillingModel):
    """Sum and count of raw cost in a time range."""

    total: Decimal = ZERO
    entry_count: int = 0


class CustomerCost(BillingModel):
    """Raw cost attributed to one customer through its active bindings."""

    customer_id: UUID
    customer_name: str
    raw_cost: Decimal = ZERO


class ProjectCost(BillingModel):
    """Raw cost on one project (used for unassigned cost)."""

    project_id: str
    cost: Decimal
