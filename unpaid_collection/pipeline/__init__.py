# pipeline/__init__.py
# ============================================================================
# UNPAID COLLECTION v1.0 — PIPELINE MODULE
# ============================================================================
# Collection state machine, reconciliation and the audit trail
# ============================================================================

from unpaid_collection.pipeline.audit import (
    AuditEventType,
    AuditLogEntry,
    IAuditLog,
    InMemoryAuditLog,
)
from unpaid_collection.pipeline.collection_orchestrator import CollectionOrchestrator
from unpaid_collection.pipeline.reconciliation import ReconcileResult, Reconciler

__all__ = [
    "AuditEventType",
    "AuditLogEntry",
    "IAuditLog",
    "InMemoryAuditLog",
    "CollectionOrchestrator",
    "ReconcileResult",
    "Reconciler",
]
