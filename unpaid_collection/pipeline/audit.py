# pipeline/audit.py
# ============================================================================
# UNPAID COLLECTION v1.0 — AUDIT TRAIL
# ============================================================================
# Append-only record of every collection state change, keyed by
# correlation id (one per payment attempt or check).
# ============================================================================

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from unpaid_collection.schemas.collection import utcnow


class AuditEventType(str, Enum):
    SELECTION_REJECTED = "selection.rejected"
    PAYMENT_REJECTED = "payment.rejected"
    MERCHANT_MISSING = "payment.merchant_missing"
    LEDGER_REGISTERED = "ledger.registered"
    LEDGER_FAILED = "ledger.failed"
    PENDING_CREATED = "pending.created"
    CHARGE_SUCCEEDED = "charge.succeeded"
    CHARGE_FAILED = "charge.failed"
    CHARGE_AMBIGUOUS = "charge.ambiguous"
    CHECK_SUCCEEDED = "check.succeeded"
    CHECK_FAILED = "check.failed"
    CHECK_UNRESOLVED = "check.unresolved"
    PENDING_REMOVED = "pending.removed"
    PENDING_STALE = "pending.stale"


class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    pym_acnt_id: str
    order_id: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "user"  # "user", "sweep"


class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        pass

    @abstractmethod
    async def get_by_order_id(self, order_id: str) -> list[AuditLogEntry]:
        pass


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_correlation: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_correlation[entry.correlation_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))

    async def get_by_order_id(self, order_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return [e for e in self._logs if e.order_id == order_id]
