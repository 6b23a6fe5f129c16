"""
Tax policy collaborators.

Tax rules are out of scope for the billing core; the host supplies a
TaxPolicy. The two implementations here cover the common deployments and
tests.
"""

from decimal import Decimal
from typing import Protocol

from core.models import Customer, ZERO

_BPS_DIVISOR = Decimal("10000")


class TaxPolicy(Protocol):
    """computeTax(subtotal, customer) -> tax amount (unrounded)."""

    def compute_tax(self, subtotal: Decimal, customer: Customer) -> Decimal:
        ...


class NoTax:
    """Tax-exempt deployments."""

    def compute_tax(self, subtotal: Decimal, customer: Customer) -> Decimal:
        return ZERO


class FlatRateTax:
    """Single rate in basis points (1000 = 10%) for every customer."""

    def __init__(self, rate_bps: int):
        if rate_bps < 0:
            raise ValueError("rate_bps must be non-negative")
        self.rate_bps = rate_bps

    def compute_tax(self, subtotal: Decimal, customer: Customer) -> Decimal:
        return subtotal * Decimal(self.rate_bps) / _BPS_DIVISOR
