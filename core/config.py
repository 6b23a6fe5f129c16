"""Billing configuration."""

from decimal import Decimal

from pydantic import BaseModel, Field, field_validator


class BillingConfig(BaseModel):
    """
    Billing computation configuration.

    Defaults match how invoices were produced historically; override per
    deployment rather than per call.
    """

    # Invoices
    invoice_number_prefix: str = Field(
        default="INV",
        description="Prefix for generated invoice numbers",
        min_length=1,
        max_length=16,
        pattern=r"^[A-Z0-9]+$",
    )
    default_payment_terms_days: int = Field(
        default=30,
        description="Due date offset when the customer has no terms of its own",
        ge=0,
        le=365,
    )
    default_currency: str = Field(
        default="USD",
        description="Currency assumed for credits created without one",
        min_length=3,
        max_length=3,
    )
    money_quantum: Decimal = Field(
        default=Decimal("0.01"),
        description="Currency precision invoice amounts are rounded to",
        gt=0,
    )

    # Reconciliation
    unassigned_project_limit: int = Field(
        default=50,
        description="Max unassigned projects listed in a reconciliation report",
        ge=1,
        le=1000,
    )
    recent_runs_limit: int = Field(
        default=5,
        description="Invoice runs shown alongside a reconciliation report",
        ge=0,
        le=50,
    )

    # Invoice runs
    stale_run_minutes: int = Field(
        default=120,
        description="RUNNING runs older than this may be released as FAILED",
        ge=5,
    )

    @field_validator("money_quantum")
    @classmethod
    def quantum_is_power_of_ten(cls, value: Decimal) -> Decimal:
        """Quantum must look like 1, 0.1, 0.01, ..."""
        if value.normalize().as_tuple().digits != (1,):
            raise ValueError("money_quantum must be a power of ten (e.g. 0.01)")
        return value
