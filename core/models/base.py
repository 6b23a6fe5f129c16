"""Shared pydantic base for billing models."""

from decimal import Decimal, ROUND_HALF_UP

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

ZERO = Decimal("0")


class BillingModel(BaseModel):
    """
    Base for every billing entity.

    Accepts snake_case (database rows, Python callers) and emits camelCase
    with ``model_dump(mode="json", by_alias=True)``. Decimal fields serialize
    as strings in JSON mode, so amounts never pass through float.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def quantize(amount: Decimal, quantum: Decimal) -> Decimal:
    """Round a money amount to the currency quantum (half up)."""
    return amount.quantize(quantum, rounding=ROUND_HALF_UP)
