"""Storage implementations of the billing store protocols."""

from core.repositories.postgres import PostgresBillingStore

__all__ = ["PostgresBillingStore"]
