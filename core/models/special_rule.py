"""Special rule domain models.

Special rules adjust raw cost before pricing: drop entries, scale their
cost, or bill them to another customer. A rule with no customer is global
and applies to every customer.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import Field

from core.models.base import BillingModel, ZERO
from core.models.cost import RawCostEntry


class SpecialRuleType(str, Enum):
    """What a matching rule does to a cost entry."""

    EXCLUDE_SKU = "EXCLUDE_SKU"
    EXCLUDE_SKU_GROUP = "EXCLUDE_SKU_GROUP"
    OVERRIDE_COST = "OVERRIDE_COST"
    MOVE_TO_CUSTOMER = "MOVE_TO_CUSTOMER"


class _MatchCriteria(BillingModel):
    """Entry fields a rule matches on. Every field that is set must match."""

    match_sku_id: str | None = None
    match_sku_group_id: UUID | None = None
    match_service_id: str | None = None
    match_project_id: str | None = None
    match_billing_account_id: str | None = None

    @property
    def has_criteria(self) -> bool:
        return any(
            value is not None
            for value in (
                self.match_sku_id,
                self.match_sku_group_id,
                self.match_service_id,
                self.match_project_id,
                self.match_billing_account_id,
            )
        )


class SpecialRuleCreate(_MatchCriteria):
    """Data required to create a special rule."""

    customer_id: UUID | None = None
    name: str = Field(..., min_length=1, max_length=255)
    rule_type: SpecialRuleType
    priority: int = 0
    cost_multiplier: Decimal | None = None
    target_customer_id: UUID | None = None
    effective_start: date | None = None
    effective_end: date | None = None
    enabled: bool = True


class SpecialRule(_MatchCriteria):
    """A cost adjustment applied ahead of pricing."""

    id: UUID
    customer_id: UUID | None = None
    name: str
    rule_type: SpecialRuleType
    priority: int = 0
    cost_multiplier: Decimal | None = None
    target_customer_id: UUID | None = None
    effective_start: date | None = None
    effective_end: date | None = None
    enabled: bool = True
    created_at: datetime

    @property
    def is_global(self) -> bool:
        return self.customer_id is None

    def is_effective_on(self, usage_date: date) -> bool:
        """Window is [effective_start, effective_end); a missing bound is open."""
        if self.effective_start is not None and usage_date < self.effective_start:
            return False
        if self.effective_end is not None and usage_date >= self.effective_end:
            return False
        return True


class RuleImpact(BillingModel):
    """Rows touched and cost change within one project or SKU."""

    count: int = 0
    delta: Decimal = ZERO


class SpecialRuleEffect(BillingModel):
    """What one rule did to a customer's entries in a run."""

    rule_id: UUID
    name: str
    rule_type: SpecialRuleType
    priority: int
    affected_row_count: int = 0
    cost_delta: Decimal = ZERO
    by_project: dict[str, RuleImpact] = Field(default_factory=dict)
    by_sku: dict[str, RuleImpact] = Field(default_factory=dict)


class SpecialRulesResult(BillingModel):
    """
    Outcome of applying rules to one customer's entries.

    entries are what remains billable to the customer (overridden entries
    carry their new cost); excluded and moved entries are gone from it.
    """

    entries: list[RawCostEntry] = Field(default_factory=list)
    excluded: list[RawCostEntry] = Field(default_factory=list)
    moved: dict[UUID, list[RawCostEntry]] = Field(default_factory=dict)
    effects: list[SpecialRuleEffect] = Field(default_factory=list)

    @property
    def cost_delta(self) -> Decimal:
        return sum((effect.cost_delta for effect in self.effects), ZERO)
