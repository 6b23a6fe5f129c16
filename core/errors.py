"""
Typed exceptions for billing failures.

Every error carries a machine-readable ``code`` so callers can render a
specific message without parsing strings. None of these are retried inside
the core: retrying a financial computation without knowing why it failed
risks double-invoicing.
"""

from decimal import Decimal
from uuid import UUID


class ErrorCodes:
    """Standard error codes for billing failures."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    CURRENCY_MISMATCH = "CURRENCY_MISMATCH"
    INSUFFICIENT_CREDIT_BALANCE = "INSUFFICIENT_CREDIT_BALANCE"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class BillingError(Exception):
    """Base class for all billing core errors."""

    code = ErrorCodes.INTERNAL_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(BillingError):
    """Malformed input, rejected before anything is persisted."""

    code = ErrorCodes.VALIDATION_ERROR


class NotFoundError(BillingError):
    """A referenced customer, project, pricing list, credit, invoice or run is absent."""

    code = ErrorCodes.NOT_FOUND


class ConflictError(BillingError):
    """
    The operation collides with existing state.

    Duplicate active binding, concurrent invoice run for the same month,
    SKU already mapped to a group, invoice already locked.
    """

    code = ErrorCodes.CONFLICT

    def __init__(self, message: str, existing_id: UUID | None = None):
        self.existing_id = existing_id
        super().__init__(message)


class ConfigurationError(BillingError):
    """
    Pricing configuration is ambiguous.

    Raised when a customer has more than one ACTIVE pricing list. This is a
    data-integrity fault: never silently pick one.
    """

    code = ErrorCodes.CONFIGURATION_ERROR


class CurrencyMismatchError(BillingError):
    """A credit and an invoice disagree on currency. No implicit conversion."""

    code = ErrorCodes.CURRENCY_MISMATCH

    def __init__(self, credit_currency: str, invoice_currency: str):
        self.credit_currency = credit_currency
        self.invoice_currency = invoice_currency
        super().__init__(
            f"Credit currency {credit_currency} does not match invoice currency {invoice_currency}"
        )


class InsufficientCreditBalance(BillingError):
    """
    A conditional credit decrement was rejected.

    The credit's remaining amount was below the requested amount at write
    time (or the credit is no longer ACTIVE). The credit is left unchanged.
    """

    code = ErrorCodes.INSUFFICIENT_CREDIT_BALANCE

    def __init__(self, credit_id: UUID, requested: Decimal, available: Decimal | None = None):
        self.credit_id = credit_id
        self.requested = requested
        self.available = available
        detail = f", available {available}" if available is not None else ""
        super().__init__(
            f"Credit {credit_id} cannot cover {requested}{detail}"
        )


class PermissionDeniedError(BillingError):
    """The actor's access scope lacks the required permission."""

    code = ErrorCodes.PERMISSION_DENIED

    def __init__(self, resource: str, action: str):
        self.resource = resource
        self.action = action
        super().__init__(f"Permission denied: {resource}:{action}")


class InternalError(BillingError):
    """
    Unexpected persistence or programming failure.

    The message is deliberately opaque; details are logged server-side
    and kept on ``__cause__``.
    """

    code = ErrorCodes.INTERNAL_ERROR

    def __init__(self, message: str = "An internal error occurred"):
        super().__init__(message)
