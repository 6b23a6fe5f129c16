"""Pricing domain models.

A discount rate is a multiplier on raw cost: 1.0 means no discount, 0.8
means 20% off. Rates live in (0, 1].
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import Field, computed_field

from core.models.base import BillingModel

NO_DISCOUNT = Decimal("1")
UNMAPPED_GROUP_CODE = "UNMAPPED"


class PricingListStatus(str, Enum):
    """Whether a pricing list is in force."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class PricingRuleType(str, Enum):
    """How a rule turns raw cost into priced cost."""

    LIST_DISCOUNT = "LIST_DISCOUNT"


class SkuGroupCreate(BillingModel):
    """A new SKU group and the SKUs mapped into it."""

    code: str = Field(..., min_length=1, max_length=50, pattern=r"^[A-Z0-9_\-]+$")
    name: str = Field(..., min_length=1, max_length=255)
    sku_ids: list[str] = Field(default_factory=list)


class SkuGroup(BillingModel):
    """Logical grouping of SKUs for pricing."""

    id: UUID
    code: str
    name: str
    sku_ids: list[str] = Field(default_factory=list)


class SkuGroupMapping(BillingModel):
    """Which group a single SKU belongs to."""

    sku_id: str
    sku_group_id: UUID
    sku_group_code: str


class PricingListCreate(BillingModel):
    """Data required to create a pricing list."""

    customer_id: UUID
    name: str = Field(..., min_length=1, max_length=255)
    status: PricingListStatus = PricingListStatus.ACTIVE


class PricingList(BillingModel):
    """A named set of discount rules owned by one customer."""

    id: UUID
    customer_id: UUID
    name: str
    status: PricingListStatus
    created_at: datetime


class PricingRuleCreate(BillingModel):
    """Data required to add a rule to a pricing list."""

    sku_group_id: UUID
    discount_rate: Decimal
    effective_start: date | None = None
    effective_end: date | None = None
    priority: int = 0
    rule_type: PricingRuleType = PricingRuleType.LIST_DISCOUNT


class PricingRule(BillingModel):
    """One discount mapping from a SKU group to a rate, over a date window."""

    id: UUID
    pricing_list_id: UUID
    sku_group_id: UUID
    sku_group_code: str | None = None
    rule_type: PricingRuleType = PricingRuleType.LIST_DISCOUNT
    discount_rate: Decimal
    effective_start: date | None = None
    effective_end: date | None = None
    priority: int = 0
    created_at: datetime

    def is_effective_on(self, usage_date: date) -> bool:
        """Window is [effective_start, effective_end); a missing bound is open."""
        if self.effective_start is not None and usage_date < self.effective_start:
            return False
        if self.effective_end is not None and usage_date >= self.effective_end:
            return False
        return True


class PricingRuleItem(BillingModel):
    """Pricing rule as listed to collaborators."""

    id: UUID
    sku_group: str | None
    rule_type: PricingRuleType
    discount_rate: Decimal
    effective_start: date | None
    effective_end: date | None
    priority: int

    @computed_field
    @property
    def discount_percent(self) -> Decimal:
        return (NO_DISCOUNT - self.discount_rate) * 100

    @classmethod
    def from_rule(cls, rule: PricingRule) -> "PricingRuleItem":
        return cls(
            id=rule.id,
            sku_group=rule.sku_group_code,
            rule_type=rule.rule_type,
            discount_rate=rule.discount_rate,
            effective_start=rule.effective_start,
            effective_end=rule.effective_end,
            priority=rule.priority,
        )


class PricingListWithRules(BillingModel):
    """A pricing list and all of its rules, fully materialized."""

    pricing_list: PricingList
    rules: list[PricingRule] = Field(default_factory=list)
