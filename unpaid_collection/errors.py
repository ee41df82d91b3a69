"""
Collection Errors
=================
Error taxonomy for the unpaid-balance collection flow.

Every remote-call failure is translated into one of these kinds at the
orchestrator boundary before it reaches the presentation layer. Each class
carries the toast level used when it is surfaced to the user.
"""

from typing import List, Optional


class CollectionError(Exception):
    """Base class for collection flow errors."""
    kind: str = "CollectionError"
    notice_level: str = "error"

    def __init__(self, message: str, order_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.order_id = order_id


class ValidationError(CollectionError):
    """Bad card input or an empty selection. Corrected locally, never sent."""
    kind = "ValidationError"
    notice_level = "warning"


class SelectionConflictError(CollectionError):
    """The selection overlaps a payment that is already in flight."""
    kind = "SelectionConflictError"
    notice_level = "warning"

    def __init__(self, message: str, order_id: Optional[str] = None, keys: Optional[List[str]] = None):
        super().__init__(message, order_id)
        self.keys = list(keys or [])


class PaymentInProgressError(CollectionError):
    """A payment for this account is already being dispatched."""
    kind = "PaymentInProgressError"
    notice_level = "warning"


class ConfigurationError(CollectionError):
    """No merchant id could be resolved for the branch."""
    kind = "ConfigurationError"


class LedgerError(CollectionError):
    """The ledger-insert (pre-authorization) call was rejected."""
    kind = "LedgerError"


class StorageError(CollectionError):
    """The pending record could not be persisted."""
    kind = "StorageError"


class GatewayTimeout(CollectionError):
    """Charge outcome is unknown. The attempt stays pending."""
    kind = "GatewayTimeout"
    notice_level = "info"


class GatewayFailure(CollectionError):
    """The gateway definitely declined the charge."""
    kind = "GatewayFailure"

    def __init__(self, message: str, order_id: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message, order_id)
        self.code = code


class ReconciliationTimeout(CollectionError):
    """The result-check call did not answer in time."""
    kind = "ReconciliationTimeout"
    notice_level = "info"


class ReconciliationStillPending(CollectionError):
    """The gateway has not settled the charge yet."""
    kind = "ReconciliationStillPending"
    notice_level = "info"


class ApiError(CollectionError):
    """Transport or protocol error talking to the billing API."""
    kind = "ApiError"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ApiTimeoutError(ApiError):
    """The billing API did not answer within the client timeout."""
    kind = "ApiTimeoutError"


__all__ = [
    "CollectionError",
    "ValidationError",
    "SelectionConflictError",
    "PaymentInProgressError",
    "ConfigurationError",
    "LedgerError",
    "StorageError",
    "GatewayTimeout",
    "GatewayFailure",
    "ReconciliationTimeout",
    "ReconciliationStillPending",
    "ApiError",
    "ApiTimeoutError",
]
