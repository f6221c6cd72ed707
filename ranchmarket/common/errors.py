from __future__ import annotations

"""
Error taxonomy shared by every component.

Expected outcomes (duplicate callback, record not due, already processed) are
returned as result values; these exceptions cover rejections and failures.
"""


class MarketplaceError(RuntimeError):
    """Base error for lifecycle engine failures."""


class ValidationError(MarketplaceError, ValueError):
    """Raised when input is malformed. Nothing has been mutated."""


class NotFoundError(MarketplaceError):
    """Raised when a referenced document does not exist."""


class BusinessRuleViolation(MarketplaceError):
    """
    Explicit rejection with a machine-readable reason code.

    Raised before (or inside) a transaction so no partial mutation is committed.
    """

    def __init__(self, code: str, message: str | None = None) -> None:
        self.code = str(code)
        super().__init__(message or self.code)


class DisputeRejected(BusinessRuleViolation):
    """Raised when a dispute cannot be opened, amended or resolved."""


class ReservationRejected(BusinessRuleViolation):
    """Raised when inventory cannot be reserved for an order."""


class GatewayError(MarketplaceError):
    """Raised when the payment gateway call fails."""

    def __init__(self, message: str, *, code: str | None = None, retryable: bool = False) -> None:
        self.code = code
        self.retryable = bool(retryable)
        super().__init__(message)
