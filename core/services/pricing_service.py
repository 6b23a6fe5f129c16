"""
Pricing resolution and pricing list administration.

A customer has at most one ACTIVE pricing list. Each rule maps a SKU group
to a discount rate over an effective window [start, end). For a line, the
matching rule with the lowest priority wins; ties go to the most recently
created rule. No matching rule means no discount (rate 1).
"""

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable
from uuid import UUID

from core.errors import ConfigurationError, ConflictError, NotFoundError, ValidationError
from core.models import (
    NO_DISCOUNT,
    UNMAPPED_GROUP_CODE,
    PricingList,
    PricingListCreate,
    PricingListStatus,
    PricingListWithRules,
    PricingRule,
    PricingRuleCreate,
    PricingRuleItem,
    RawCostEntry,
    SkuGroup,
    SkuGroupCreate,
    SkuGroupMapping,
)
from core.store import BillingStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PricedLine:
    """One raw cost entry after discount."""

    entry: RawCostEntry
    sku_group_id: UUID | None
    sku_group_code: str
    discount_rate: Decimal
    pricing_rule_id: UUID | None

    @property
    def amount(self) -> Decimal:
        """cost x discount_rate, unrounded."""
        return self.entry.cost * self.discount_rate


class CustomerPricing:
    """
    Snapshot of one customer's pricing configuration.

    Loaded once and then resolved in memory, so a run prices every line of
    a customer against the same rule set.
    """

    def __init__(
        self,
        customer_id: UUID,
        pricing_list: PricingListWithRules | None,
        sku_map: dict[str, SkuGroupMapping],
    ):
        self.customer_id = customer_id
        self.pricing_list = pricing_list
        self._sku_map = sku_map

    @property
    def rules(self) -> list[PricingRule]:
        return self.pricing_list.rules if self.pricing_list else []

    def group_for(self, sku_id: str) -> SkuGroupMapping | None:
        return self._sku_map.get(sku_id)

    def match(self, sku_group_id: UUID, usage_date: date) -> PricingRule | None:
        """The winning rule for a group on a date, or None."""
        candidates = [
            rule for rule in self.rules
            if rule.sku_group_id == sku_group_id and rule.is_effective_on(usage_date)
        ]
        if not candidates:
            return None
        # Newest first so min() keeps the most recent rule among equal priorities
        candidates.sort(key=lambda rule: (rule.created_at, rule.id), reverse=True)
        return min(candidates, key=lambda rule: rule.priority)

    def resolve(
        self,
        usage_date: date,
        sku_id: str | None = None,
        sku_group_id: UUID | None = None,
    ) -> Decimal:
        """Discount rate for a SKU (or SKU group) on a date."""
        if sku_group_id is None:
            if sku_id is None:
                raise ValidationError("Either sku_id or sku_group_id is required")
            mapping = self.group_for(sku_id)
            if mapping is None:
                return NO_DISCOUNT
            sku_group_id = mapping.sku_group_id

        rule = self.match(sku_group_id, usage_date)
        return rule.discount_rate if rule else NO_DISCOUNT

    def price_line(self, entry: RawCostEntry) -> PricedLine:
        mapping = self.group_for(entry.sku_id)
        if mapping is None:
            return PricedLine(
                entry=entry,
                sku_group_id=None,
                sku_group_code=UNMAPPED_GROUP_CODE,
                discount_rate=NO_DISCOUNT,
                pricing_rule_id=None,
            )

        rule = self.match(mapping.sku_group_id, entry.usage_start_time.date())
        return PricedLine(
            entry=entry,
            sku_group_id=mapping.sku_group_id,
            sku_group_code=mapping.sku_group_code,
            discount_rate=rule.discount_rate if rule else NO_DISCOUNT,
            pricing_rule_id=rule.id if rule else None,
        )


class PricingResolver:
    """Read-only discount resolution. Never writes."""

    def __init__(self, store: BillingStore):
        self.store = store

    def for_customer(self, customer_id: UUID, sku_ids: Iterable[str] | None = None) -> CustomerPricing:
        """
        Load a customer's pricing snapshot.

        Args:
            customer_id: Customer whose ACTIVE list applies
            sku_ids: SKUs that will be priced; None loads every mapping

        Raises:
            ConfigurationError: More than one ACTIVE pricing list
        """
        lists = self.store.pricing.get_active_lists(customer_id)
        if len(lists) > 1:
            raise ConfigurationError(
                f"Customer {customer_id} has {len(lists)} ACTIVE pricing lists"
            )
        sku_map = self.store.pricing.get_sku_mappings(
            None if sku_ids is None else sorted(set(sku_ids))
        )
        return CustomerPricing(customer_id, lists[0] if lists else None, sku_map)

    def resolve_rate(
        self,
        customer_id: UUID,
        usage_date: date,
        sku_id: str | None = None,
        sku_group_id: UUID | None = None,
    ) -> Decimal:
        """
        Discount rate for one SKU (or SKU group) for a customer on a date.

        Returns 1 when the customer has no ACTIVE list, the SKU is unmapped,
        or no rule matches.
        """
        if (sku_id is None) == (sku_group_id is None):
            raise ValidationError("Exactly one of sku_id or sku_group_id is required")
        pricing = self.for_customer(customer_id, [] if sku_id is None else [sku_id])
        return pricing.resolve(usage_date, sku_id=sku_id, sku_group_id=sku_group_id)


class PricingService:
    """Pricing list and SKU group administration."""

    def __init__(self, store: BillingStore):
        self.store = store

    def create_list(self, data: PricingListCreate) -> PricingList:
        """
        Create a pricing list for a customer.

        A second ACTIVE list is allowed but logged: resolution for that
        customer fails with ConfigurationError until one is deactivated.
        """
        if self.store.customers.get(data.customer_id) is None:
            raise NotFoundError(f"Customer {data.customer_id} not found")

        if data.status == PricingListStatus.ACTIVE:
            existing = self.store.pricing.get_active_lists(data.customer_id)
            if existing:
                logger.warning(
                    "Customer %s now has %d ACTIVE pricing lists",
                    data.customer_id, len(existing) + 1,
                )

        pricing_list = self.store.pricing.create_list(data)
        logger.info("Created pricing list %s for customer %s", pricing_list.id, data.customer_id)
        return pricing_list

    def get_list(self, pricing_list_id: UUID) -> PricingListWithRules:
        pricing_list = self.store.pricing.get_list(pricing_list_id)
        if pricing_list is None:
            raise NotFoundError(f"Pricing list {pricing_list_id} not found")
        return pricing_list

    def add_rule(self, pricing_list_id: UUID, data: PricingRuleCreate) -> PricingRule:
        """
        Add a discount rule to a list.

        Raises:
            ValidationError: discount_rate outside (0, 1] or empty window
            NotFoundError: Unknown pricing list or SKU group
        """
        if not (Decimal("0") < data.discount_rate <= NO_DISCOUNT):
            raise ValidationError("discount_rate must be greater than 0 and at most 1")
        if (
            data.effective_start is not None
            and data.effective_end is not None
            and data.effective_end <= data.effective_start
        ):
            raise ValidationError("effective_end must be after effective_start")

        self.get_list(pricing_list_id)
        if self.store.pricing.get_sku_group(data.sku_group_id) is None:
            raise NotFoundError(f"SKU group {data.sku_group_id} not found")

        return self.store.pricing.add_rule(pricing_list_id, data)

    def delete_list(self, pricing_list_id: UUID) -> None:
        """Delete a list and all its rules in one transaction."""
        with self.store.transaction() as tx:
            if not tx.pricing.delete_list(pricing_list_id):
                raise NotFoundError(f"Pricing list {pricing_list_id} not found")
        logger.info("Deleted pricing list %s", pricing_list_id)

    def list_rules(self, pricing_list_id: UUID) -> list[PricingRuleItem]:
        return [PricingRuleItem.from_rule(rule) for rule in self.get_list(pricing_list_id).rules]

    def create_sku_group(self, data: SkuGroupCreate) -> SkuGroup:
        """
        Create a SKU group and map its SKUs, all or nothing.

        Raises:
            ConflictError: Duplicate code, SKU listed twice, or SKU already mapped
        """
        duplicates = sorted(sku for sku, count in Counter(data.sku_ids).items() if count > 1)
        if duplicates:
            raise ConflictError(f"SKUs listed more than once: {', '.join(duplicates)}")

        with self.store.transaction() as tx:
            mapped = tx.pricing.get_sku_mappings(data.sku_ids)
            if mapped:
                raise ConflictError(
                    f"SKUs already mapped to a group: {', '.join(sorted(mapped))}"
                )
            group = tx.pricing.create_sku_group(data)

        logger.info("Created SKU group %s with %d SKUs", group.code, len(group.sku_ids))
        return group
