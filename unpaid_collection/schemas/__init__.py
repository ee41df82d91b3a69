# schemas/__init__.py
from unpaid_collection.schemas.collection import (
    AccountContext,
    AttemptResult,
    CardFields,
    ChargeFailure,
    ChargeOutcome,
    ChargeRequest,
    ChargeSuccess,
    ChargeTimeout,
    CheckAlreadyResolved,
    CheckFailure,
    CheckOutcome,
    CheckQueryTimeout,
    CheckRequest,
    CheckStillPending,
    CheckSuccess,
    CollectionView,
    ItemStatus,
    ItemView,
    LedgerEntryRequest,
    LedgerResult,
    MerchantContext,
    Notice,
    PendingPayment,
    PendingView,
    UnpaidItem,
    format_currency,
    utcnow,
)

__all__ = [
    "AccountContext",
    "AttemptResult",
    "CardFields",
    "ChargeFailure",
    "ChargeOutcome",
    "ChargeRequest",
    "ChargeSuccess",
    "ChargeTimeout",
    "CheckAlreadyResolved",
    "CheckFailure",
    "CheckOutcome",
    "CheckQueryTimeout",
    "CheckRequest",
    "CheckStillPending",
    "CheckSuccess",
    "CollectionView",
    "ItemStatus",
    "ItemView",
    "LedgerEntryRequest",
    "LedgerResult",
    "MerchantContext",
    "Notice",
    "PendingPayment",
    "PendingView",
    "UnpaidItem",
    "format_currency",
    "utcnow",
]
