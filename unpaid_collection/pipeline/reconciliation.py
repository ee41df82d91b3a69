"""
Reconciliation
==============
Resolves a pending payment by asking the gateway for its definite outcome.

The check always uses the merchant id, order date and amount captured in the
stored record, so it matches the original attempt even when the unpaid list
has changed since. A definite answer (Success / Failure) removes the record;
anything else leaves it in place. Checking an order that is no longer stored
returns AlreadyResolved without calling the gateway.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from unpaid_collection.config import settings
from unpaid_collection.logging_config import get_logger
from unpaid_collection.pipeline.audit import AuditEventType, AuditLogEntry, IAuditLog, InMemoryAuditLog
from unpaid_collection.schemas.collection import (
    CheckAlreadyResolved,
    CheckFailure,
    CheckOutcome,
    CheckQueryTimeout,
    CheckRequest,
    CheckSuccess,
    PendingPayment,
)
from unpaid_collection.services.gateway_client import IPaymentGateway
from unpaid_collection.storage.pending_store import IPendingPaymentStore

logger = get_logger("reconciliation")


@dataclass
class ReconcileResult:
    outcome: CheckOutcome
    record: Optional[PendingPayment] = None

    @property
    def is_definite(self) -> bool:
        return isinstance(self.outcome, (CheckSuccess, CheckFailure))


class Reconciler:
    def __init__(
        self,
        store: IPendingPaymentStore,
        gateway: IPaymentGateway,
        check_timeout: Optional[float] = None,
        audit_log: Optional[IAuditLog] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.check_timeout = check_timeout if check_timeout is not None else settings.check_timeout_seconds
        self.audit = audit_log or InMemoryAuditLog()

    async def reconcile(
        self,
        account_id: str,
        order_id: str,
        correlation_id: Optional[str] = None,
        actor: str = "user",
    ) -> ReconcileResult:
        correlation_id = correlation_id or str(uuid.uuid4())
        log = logger.bind(pym_acnt_id=account_id, order_id=order_id, correlation_id=correlation_id)

        record = await self.store.get(account_id, order_id)
        if record is None:
            log.info("check_already_resolved")
            return ReconcileResult(outcome=CheckAlreadyResolved())

        request = CheckRequest(
            merchant_id=record.merchant_id,
            order_id=record.order_id,
            order_date=record.order_date,
            amount=record.amount,
        )
        try:
            outcome = await self.gateway.check_result(request, self.check_timeout)
        except Exception as e:
            log.error("check_unexpected_error", error=str(e), error_type=type(e).__name__)
            outcome = CheckQueryTimeout(detail=str(e) or type(e).__name__)

        if isinstance(outcome, (CheckSuccess, CheckFailure)):
            try:
                await self.store.remove(account_id, order_id)
            except Exception as e:
                # The outcome stands; the record is re-checked next time
                log.error("pending_remove_failed", error=str(e), error_type=type(e).__name__)
            event_type = (
                AuditEventType.CHECK_SUCCEEDED
                if isinstance(outcome, CheckSuccess)
                else AuditEventType.CHECK_FAILED
            )
        else:
            event_type = AuditEventType.CHECK_UNRESOLVED

        await self.audit.append(AuditLogEntry(
            correlation_id=correlation_id,
            event_type=event_type,
            pym_acnt_id=account_id,
            order_id=order_id,
            metadata={"outcome": outcome.kind, "amount": record.amount, "item_keys": record.item_keys},
            actor=actor,
        ))
        log.info("check_completed", outcome=outcome.kind, amount=record.amount)
        return ReconcileResult(outcome=outcome, record=record)
