# storage/__init__.py
# ============================================================================
# UNPAID COLLECTION v1.0 — STORAGE MODULE
# ============================================================================
# Key-value persistence and the durable pending-payment store
# ============================================================================

from unpaid_collection.storage.kv_backend import (
    IKeyValueBackend,
    InMemoryKeyValueBackend,
    JsonFileKeyValueBackend,
)
from unpaid_collection.storage.pending_store import (
    IPendingPaymentStore,
    PendingPaymentStore,
)

__all__ = [
    "IKeyValueBackend",
    "InMemoryKeyValueBackend",
    "JsonFileKeyValueBackend",
    "IPendingPaymentStore",
    "PendingPaymentStore",
]
