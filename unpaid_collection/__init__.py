"""
Unpaid Collection
=================
Deferred card payment for unpaid balances: select billing periods, charge
them once, and resolve ambiguous gateway answers later without ever
charging the same bill twice.
"""

from unpaid_collection.config import CollectionSettings, settings
from unpaid_collection.pipeline import CollectionOrchestrator, Reconciler
from unpaid_collection.storage import (
    InMemoryKeyValueBackend,
    JsonFileKeyValueBackend,
    PendingPaymentStore,
)

__version__ = "1.0.0"

__all__ = [
    "CollectionSettings",
    "settings",
    "CollectionOrchestrator",
    "Reconciler",
    "InMemoryKeyValueBackend",
    "JsonFileKeyValueBackend",
    "PendingPaymentStore",
]
