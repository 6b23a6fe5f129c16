"""
Special rules: cost adjustments applied before pricing.

Rules for a customer are its own rules plus the global ones, tried in
priority order (lowest first; ties go to the oldest rule). An entry is
handled by the first rule that matches it on its usage date and is never
passed to a second rule:

    EXCLUDE_SKU / EXCLUDE_SKU_GROUP  entry is dropped
    OVERRIDE_COST                    cost becomes cost x cost_multiplier
    MOVE_TO_CUSTOMER                 entry is billed to target_customer_id
"""

import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Iterable
from uuid import UUID

from core.errors import NotFoundError, ValidationError
from core.models import (
    RawCostEntry,
    RuleImpact,
    SkuGroupMapping,
    SpecialRule,
    SpecialRuleCreate,
    SpecialRuleEffect,
    SpecialRulesResult,
    SpecialRuleType,
    ZERO,
)
from core.store import BillingStore

logger = logging.getLogger(__name__)


def rule_order(rule: SpecialRule) -> tuple:
    return (rule.priority, rule.created_at, str(rule.id))


def rules_for_customer(rules: Iterable[SpecialRule], customer_id: UUID) -> list[SpecialRule]:
    """The customer's own rules and the global ones, in application order."""
    return sorted(
        (rule for rule in rules if rule.customer_id is None or rule.customer_id == customer_id),
        key=rule_order,
    )


def rule_matches(rule: SpecialRule, entry: RawCostEntry, mapping: SkuGroupMapping | None) -> bool:
    """True when every criterion the rule sets equals the entry's value."""
    if rule.match_sku_id is not None and entry.sku_id != rule.match_sku_id:
        return False
    if rule.match_sku_group_id is not None and (
        mapping is None or mapping.sku_group_id != rule.match_sku_group_id
    ):
        return False
    if rule.match_service_id is not None and entry.service_id != rule.match_service_id:
        return False
    if rule.match_project_id is not None and entry.project_id != rule.match_project_id:
        return False
    if rule.match_billing_account_id is not None and entry.billing_account_id != rule.match_billing_account_id:
        return False
    return rule.is_effective_on(entry.usage_start_time.date())


class _EffectTracker:
    def __init__(self, rule: SpecialRule):
        self.rule = rule
        self.count = 0
        self.delta = ZERO
        self.by_project: dict[str, RuleImpact] = {}
        self.by_sku: dict[str, RuleImpact] = {}

    def record(self, entry: RawCostEntry, delta: Decimal) -> None:
        self.count += 1
        self.delta += delta
        for key, bucket in ((entry.project_id, self.by_project), (entry.sku_id, self.by_sku)):
            impact = bucket.setdefault(key, RuleImpact())
            impact.count += 1
            impact.delta += delta

    def effect(self) -> SpecialRuleEffect:
        return SpecialRuleEffect(
            rule_id=self.rule.id,
            name=self.rule.name,
            rule_type=self.rule.rule_type,
            priority=self.rule.priority,
            affected_row_count=self.count,
            cost_delta=self.delta,
            by_project=self.by_project,
            by_sku=self.by_sku,
        )


def apply_special_rules(
    entries: Iterable[RawCostEntry],
    rules: Iterable[SpecialRule],
    sku_mappings: dict[str, SkuGroupMapping],
) -> SpecialRulesResult:
    """
    Apply rules to one customer's entries. Pure: reads and writes nothing.

    Args:
        entries: The customer's billable entries
        rules: Rules to try; disabled rules are ignored
        sku_mappings: Group mapping per SKU, for SKU group criteria

    Returns:
        Remaining, excluded and moved entries plus one effect per rule
        that touched at least one entry. cost_delta is negative for cost
        removed from the customer.
    """
    ordered = sorted((rule for rule in rules if rule.enabled), key=rule_order)
    trackers = {rule.id: _EffectTracker(rule) for rule in ordered}
    result = SpecialRulesResult()
    moved: dict[UUID, list[RawCostEntry]] = defaultdict(list)

    for entry in entries:
        mapping = sku_mappings.get(entry.sku_id)
        rule = next((r for r in ordered if _applies(r) and rule_matches(r, entry, mapping)), None)
        if rule is None:
            result.entries.append(entry)
            continue

        if rule.rule_type == SpecialRuleType.OVERRIDE_COST:
            adjusted = entry.model_copy(update={"cost": entry.cost * rule.cost_multiplier})
            result.entries.append(adjusted)
            delta = adjusted.cost - entry.cost
        elif rule.rule_type == SpecialRuleType.MOVE_TO_CUSTOMER:
            moved[rule.target_customer_id].append(entry)
            delta = -entry.cost
        else:
            result.excluded.append(entry)
            delta = -entry.cost
        trackers[rule.id].record(entry, delta)

    result.moved = dict(moved)
    result.effects = [tracker.effect() for tracker in trackers.values() if tracker.count]
    return result


def _applies(rule: SpecialRule) -> bool:
    """Rules missing the parameter their type needs never match."""
    if rule.rule_type == SpecialRuleType.OVERRIDE_COST:
        return rule.cost_multiplier is not None
    if rule.rule_type == SpecialRuleType.MOVE_TO_CUSTOMER:
        return rule.target_customer_id is not None
    return True


class SpecialRuleService:
    """Special rule administration."""

    def __init__(self, store: BillingStore):
        self.store = store

    def create_rule(self, data: SpecialRuleCreate) -> SpecialRule:
        """
        Create a special rule.

        Raises:
            ValidationError: No match criteria, a parameter missing for the
                rule type, negative multiplier, moving a customer's cost to
                itself, or an empty window
            NotFoundError: Unknown customer, target customer or SKU group
        """
        if not data.has_criteria:
            raise ValidationError("A special rule needs at least one match criterion")
        if (
            data.effective_start is not None
            and data.effective_end is not None
            and data.effective_end <= data.effective_start
        ):
            raise ValidationError("effective_end must be after effective_start")

        if data.rule_type == SpecialRuleType.OVERRIDE_COST:
            if data.cost_multiplier is None or data.cost_multiplier < ZERO:
                raise ValidationError("OVERRIDE_COST needs a cost_multiplier of 0 or more")
        elif data.cost_multiplier is not None:
            raise ValidationError(f"{data.rule_type.value} does not take a cost_multiplier")

        if data.rule_type == SpecialRuleType.MOVE_TO_CUSTOMER:
            if data.target_customer_id is None:
                raise ValidationError("MOVE_TO_CUSTOMER needs a target_customer_id")
            if data.target_customer_id == data.customer_id:
                raise ValidationError("A rule cannot move cost to the customer it belongs to")
            if self.store.customers.get(data.target_customer_id) is None:
                raise NotFoundError(f"Customer {data.target_customer_id} not found")
        elif data.target_customer_id is not None:
            raise ValidationError(f"{data.rule_type.value} does not take a target_customer_id")

        if data.rule_type == SpecialRuleType.EXCLUDE_SKU_GROUP and data.match_sku_group_id is None:
            raise ValidationError("EXCLUDE_SKU_GROUP needs match_sku_group_id")
        if data.rule_type == SpecialRuleType.EXCLUDE_SKU and data.match_sku_id is None:
            raise ValidationError("EXCLUDE_SKU needs match_sku_id")

        if data.customer_id is not None and self.store.customers.get(data.customer_id) is None:
            raise NotFoundError(f"Customer {data.customer_id} not found")
        if data.match_sku_group_id is not None and self.store.pricing.get_sku_group(data.match_sku_group_id) is None:
            raise NotFoundError(f"SKU group {data.match_sku_group_id} not found")

        rule = self.store.special_rules.create(data)
        logger.info(
            "Created %s special rule %s (%s) for %s",
            rule.rule_type.value, rule.id, rule.name, rule.customer_id or "all customers",
        )
        return rule

    def get_rule(self, rule_id: UUID) -> SpecialRule:
        rule = self.store.special_rules.get(rule_id)
        if rule is None:
            raise NotFoundError(f"Special rule {rule_id} not found")
        return rule

    def list_rules(self, customer_id: UUID | None = None) -> list[SpecialRule]:
        """A customer's rules plus global ones in application order; every rule when customer_id is None."""
        rules = self.store.special_rules.list_rules(customer_id)
        return sorted(rules, key=rule_order)

    def set_enabled(self, rule_id: UUID, enabled: bool) -> SpecialRule:
        rule = self.store.special_rules.set_enabled(rule_id, enabled)
        if rule is None:
            raise NotFoundError(f"Special rule {rule_id} not found")
        logger.info("Special rule %s %s", rule_id, "enabled" if enabled else "disabled")
        return rule

    def rules_in_force(self, start: date, end: date) -> list[SpecialRule]:
        """Enabled rules whose window overlaps [start, end)."""
        return sorted(self.store.special_rules.list_enabled(start, end), key=rule_order)
