"""
Collection Orchestrator
=======================
State machine behind unpaid-balance card collection.

Per billing-period key:

    Unselected -> Selected -> Dispatching -> Pending -> Completed
                                                     -> Unselected (declined)

Guarantees:
- A key covered by a pending record can never be selected again, so the
  same bill is never part of two in-flight charges. This is checked on
  toggle, on select-all and again on submit, against the store. Submit
  reserves its keys in the store before the ledger call, so another
  session on the same account cannot dispatch them in the meantime.
- Ledger registration finishes before the pending record is written, and
  the write finishes before the charge is dispatched. Any stored record is
  therefore an attempt that at least reached the ledger, and survives a
  crash in the middle of the charge.
- A charge Timeout keeps the record. Only a definite Success or Failure,
  from the charge or from a later check, removes it.
- The amount is captured in the record at dispatch; checks use it as-is.

Example:
    orchestrator = CollectionOrchestrator(account, store, gateway)
    await orchestrator.open()
    await orchestrator.select_all()
    result = await orchestrator.submit_payment(card)
    if result.status == "pending":
        await orchestrator.check_pending(result.order_id)
"""

import inspect
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Union

from pydantic import ValidationError as PydanticValidationError

from unpaid_collection.config import CollectionSettings, settings
from unpaid_collection.errors import (
    CollectionError,
    ConfigurationError,
    GatewayFailure,
    GatewayTimeout,
    LedgerError,
    PaymentInProgressError,
    ReconciliationStillPending,
    ReconciliationTimeout,
    SelectionConflictError,
    StorageError,
    ValidationError,
)
from unpaid_collection.logging_config import get_logger
from unpaid_collection.pipeline.audit import AuditEventType, AuditLogEntry, IAuditLog, InMemoryAuditLog
from unpaid_collection.pipeline.reconciliation import Reconciler
from unpaid_collection.schemas.collection import (
    AccountContext,
    AttemptResult,
    CardFields,
    ChargeFailure,
    ChargeRequest,
    ChargeSuccess,
    ChargeTimeout,
    CheckAlreadyResolved,
    CheckFailure,
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
)
from unpaid_collection.services.billing_api import IBillingApi
from unpaid_collection.services.gateway_client import IPaymentGateway
from unpaid_collection.services.order_ids import OrderIdGenerator
from unpaid_collection.storage.pending_store import IPendingPaymentStore

NoticeCallback = Callable[[Notice], Any]
RefreshCallback = Callable[[], Any]


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


class CollectionOrchestrator:
    """
    Drives one payment account's collection session.

    All calls are expected from a single event loop, one at a time. The
    orchestrator refuses a second submit and any selection change while a
    charge is being dispatched.
    """

    def __init__(
        self,
        account: AccountContext,
        store: IPendingPaymentStore,
        gateway: IPaymentGateway,
        billing_api: Optional[IBillingApi] = None,
        order_ids: Optional[OrderIdGenerator] = None,
        on_notice: Optional[NoticeCallback] = None,
        on_refresh: Optional[RefreshCallback] = None,
        audit_log: Optional[IAuditLog] = None,
        config: Optional[CollectionSettings] = None,
    ):
        self.account = account
        self.store = store
        self.gateway = gateway
        self.billing_api = billing_api
        self.order_ids = order_ids or OrderIdGenerator()
        self.on_notice = on_notice
        self.on_refresh = on_refresh
        self.audit = audit_log or InMemoryAuditLog()
        self.config = config or settings
        self.reconciler = Reconciler(store, gateway, self.config.check_timeout_seconds, self.audit)

        self._items: Dict[str, UnpaidItem] = {}
        self._selection: Set[str] = set()
        self._pending: List[PendingPayment] = []
        self._completed: Set[str] = set()
        self._dispatching_keys: Set[str] = set()
        self._dispatching = False
        self._notices: List[Notice] = []

        self._base_logger = get_logger("collection_orchestrator").bind(pym_acnt_id=account.pym_acnt_id)

    @property
    def account_id(self) -> str:
        return self.account.pym_acnt_id

    @property
    def dispatching(self) -> bool:
        return self._dispatching

    @property
    def pending(self) -> List[PendingPayment]:
        return list(self._pending)

    def _get_logger(self, correlation_id: str = None):
        return self._base_logger.bind(correlation_id=correlation_id or str(uuid.uuid4()))

    # =========================================================================
    # LOADING
    # =========================================================================

    async def open(self) -> CollectionView:
        """Resume: read pending records from the store, then the unpaid list."""
        log = self._get_logger()
        await self._reload_pending()
        if self.billing_api is not None:
            await self.refresh_items()

        stale_after = timedelta(hours=self.config.pending_stale_hours)
        for record in self._pending:
            if record.is_stale(stale_after):
                age_hours = round(record.age().total_seconds() / 3600, 1)
                log.warning("pending_stale", order_id=record.order_id, age_hours=age_hours)
                await self._audit(AuditEventType.PENDING_STALE, log, order_id=record.order_id, metadata={"age_hours": age_hours})

        if self._pending:
            total = sum(r.amount for r in self._pending)
            await self._notify(
                "info",
                f"{len(self._pending)} payment(s) still in progress ({format_currency(total)} KRW). "
                "Check the result before collecting again.",
                "PendingPayment",
            )
        log.info("collection_opened", items=len(self._items), pending=len(self._pending))
        return self.view()

    def load_items(self, items: Iterable[UnpaidItem]) -> None:
        """Replace the unpaid list and drop selections that no longer apply."""
        self._items = {item.key: item for item in items}
        self._selection = {k for k in self._selection if self._ineligible_reason(k) is None}

    async def refresh_items(self) -> List[UnpaidItem]:
        if self.billing_api is None:
            return list(self._items.values())
        items = await self.billing_api.list_unpaid_items(self.account.cust_id, self.account_id)
        self.load_items(items)
        return items

    async def _reload_pending(self) -> List[PendingPayment]:
        self._pending = await self.store.list(self.account_id)
        return self._pending

    def _pending_keys(self) -> Set[str]:
        keys: Set[str] = set()
        for record in self._pending:
            keys.update(record.item_keys)
        return keys

    # =========================================================================
    # SELECTION
    # =========================================================================

    def _ineligible_reason(self, key: str) -> Optional[str]:
        if key not in self._items:
            return "unknown item"
        if key in self._completed:
            return "already collected"
        if key in self._pending_keys():
            return "payment already in progress"
        if key in self.store.reserved_keys(self.account_id) - self._dispatching_keys:
            return "payment already in progress"
        return None

    async def toggle_selection(self, key: str) -> bool:
        """Select or deselect one key. Returns False when the toggle is refused."""
        log = self._get_logger()
        if self._dispatching:
            log.info("selection_locked", key=key)
            return False

        if key in self._selection:
            self._selection.discard(key)
            return True

        # The store is the source of truth for exclusion
        await self._reload_pending()
        reason = self._ineligible_reason(key)
        if reason:
            log.warning("selection_rejected", key=key, reason=reason)
            await self._audit(AuditEventType.SELECTION_REJECTED, log, metadata={"key": key, "reason": reason})
            return False

        self._selection.add(key)
        return True

    async def select_all(self) -> List[str]:
        if not self._dispatching:
            await self._reload_pending()
            self._selection = {k for k in self._items if self._ineligible_reason(k) is None}
        return sorted(self._selection)

    def clear_all(self) -> None:
        if not self._dispatching:
            self._selection.clear()

    # =========================================================================
    # SUBMIT
    # =========================================================================

    def _coerce_card(self, card: Union[CardFields, Mapping[str, Any], None]) -> CardFields:
        if isinstance(card, CardFields):
            return card
        try:
            return CardFields.model_validate(dict(card or {}))
        except PydanticValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first.get("loc", ())) or "card"
            message = str(first.get("msg", "invalid value")).removeprefix("Value error, ")
            raise ValidationError(f"Invalid card input ({field}): {message}") from e

    async def submit_payment(self, card: Union[CardFields, Mapping[str, Any], None]) -> AttemptResult:
        """
        Charge the current selection.

        Errors never escape: every failure is translated into an
        AttemptResult and a notice on the toast channel.
        """
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        if self._dispatching:
            return await self._reject(
                PaymentInProgressError("A payment is already being processed for this account."),
                log, correlation_id,
            )

        try:
            keys = sorted(self._selection)
            if not keys:
                raise ValidationError("Select at least one unpaid item.")

            card_fields = self._coerce_card(card)

            # Strict read: an unreadable store must not look like "nothing pending"
            self._pending = await self.store.load(self.account_id)
            overlap = sorted(set(keys) & (self._pending_keys() | self.store.reserved_keys(self.account_id)))
            if overlap:
                raise SelectionConflictError(
                    f"{', '.join(overlap)} already has a payment in progress.", keys=overlap
                )
            unknown = [k for k in keys if self._ineligible_reason(k)]
            if unknown:
                self._selection -= set(unknown)
                raise ValidationError(f"{', '.join(unknown)} can no longer be collected.")

            amount = sum(self._items[k].unpay_amt for k in keys)
            if amount <= 0:
                raise ValidationError("The selected total must be greater than zero.")

            # Claims the keys against other sessions on this account until the
            # pending record is stored or the attempt ends
            await self.store.reserve(self.account_id, keys)
        except CollectionError as e:
            if isinstance(e, SelectionConflictError):
                self._selection -= set(e.keys)
            return await self._reject(e, log, correlation_id)

        self._dispatching = True
        self._dispatching_keys = set(keys)
        try:
            return await self._dispatch(card_fields, keys, amount, correlation_id, log)
        finally:
            self._dispatching = False
            self._dispatching_keys = set()
            self.store.release(self.account_id, keys)

    async def _dispatch(
        self,
        card: CardFields,
        keys: List[str],
        amount: int,
        correlation_id: str,
        log,
    ) -> AttemptResult:
        log = log.bind(amount=amount, item_keys=keys)
        log.info("payment_initiated")

        # (a) merchant id
        try:
            merchant_id = await self.gateway.resolve_merchant_id(MerchantContext(so_id=self.account.so_id))
        except ConfigurationError as e:
            await self._audit(AuditEventType.MERCHANT_MISSING, log, correlation_id, metadata={"error": e.message})
            return await self._reject(e, log, correlation_id)
        except Exception as e:
            log.error("merchant_unexpected_error", error=str(e), error_type=type(e).__name__)
            return await self._reject(ConfigurationError(f"Merchant lookup failed: {e}"), log, correlation_id)

        # (b) order id
        order_id = self.order_ids.next_order_id()
        order_date = self.order_ids.order_date()
        log = log.bind(order_id=order_id)

        # (c) ledger entry
        try:
            ledger = await self.gateway.register_ledger_entry(LedgerEntryRequest(
                pym_acnt_id=self.account_id,
                cust_id=self.account.cust_id,
                order_id=order_id,
                order_date=order_date,
                amount=amount,
                item_keys=keys,
            ))
        except Exception as e:
            log.error("ledger_unexpected_error", error=str(e), error_type=type(e).__name__)
            ledger = LedgerResult(success=False, message=f"Ledger registration failed: {e}")

        if not ledger.success:
            await self._audit(AuditEventType.LEDGER_FAILED, log, correlation_id, order_id, {"message": ledger.message})
            return await self._reject(
                LedgerError(ledger.message or "Ledger registration was rejected.", order_id),
                log, correlation_id,
            )
        await self._audit(AuditEventType.LEDGER_REGISTERED, log, correlation_id, order_id, {"ledger_ref": ledger.ledger_ref})

        # (d) durable pending record, strictly before the charge
        record = PendingPayment(
            order_id=order_id,
            merchant_id=merchant_id,
            order_date=order_date,
            card_last4=card.last4,
            card_expiry_masked=card.expiry_masked,
            identity_masked=card.identity_masked,
            installment=card.installment,
            amount=amount,
            item_keys=keys,
            cust_id=self.account.cust_id,
            ledger_ref=ledger.ledger_ref,
        )
        try:
            await self.store.save(self.account_id, record)
        except Exception as e:
            log.error("pending_save_failed", error=str(e), error_type=type(e).__name__)
            return await self._reject(
                StorageError(f"Could not record the payment before charging: {e}", order_id),
                log, correlation_id,
            )

        self._pending = [r for r in self._pending if r.order_id != order_id] + [record]
        self._selection -= set(keys)
        await self._audit(AuditEventType.PENDING_CREATED, log, correlation_id, order_id, {"amount": amount, "item_keys": keys})
        log.info("payment_dispatched")

        # (e) bounded charge
        try:
            outcome = await self.gateway.charge(
                ChargeRequest(
                    merchant_id=merchant_id,
                    order_id=order_id,
                    order_date=order_date,
                    amount=amount,
                    card=card,
                ),
                self.config.charge_timeout_seconds,
            )
        except Exception as e:
            # Money may have moved; treat like a timeout
            log.error("charge_unexpected_error", error=str(e), error_type=type(e).__name__)
            outcome = ChargeTimeout(detail=str(e) or type(e).__name__)

        if isinstance(outcome, ChargeSuccess):
            await self._discard(order_id, log)
            await self._audit(AuditEventType.CHARGE_SUCCEEDED, log, correlation_id, order_id, {"approval_no": outcome.approval_no})
            return await self._complete(record, log)

        if isinstance(outcome, ChargeFailure):
            await self._discard(order_id, log)
            await self._audit(AuditEventType.CHARGE_FAILED, log, correlation_id, order_id, {"reason": outcome.reason, "code": outcome.code})
            return await self._fail(record, GatewayFailure(outcome.reason, order_id, outcome.code), log)

        await self._audit(AuditEventType.CHARGE_AMBIGUOUS, log, correlation_id, order_id, {"detail": outcome.detail})
        return await self._keep_pending(
            record,
            GatewayTimeout(
                f"Payment of {format_currency(amount)} KRW is in progress. Check the result later.",
                order_id,
            ),
            log,
            outcome.kind,
        )

    async def _discard(self, order_id: str, log) -> bool:
        # A record that cannot be removed stays for a later check
        try:
            await self.store.remove(self.account_id, order_id)
        except Exception as e:
            log.error("pending_remove_failed", order_id=order_id, error=str(e), error_type=type(e).__name__)
            log.warning("pending_record_left_behind", order_id=order_id)
            return False
        return True

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def check_pending(self, order_id: str) -> AttemptResult:
        """Ask the gateway for the definite outcome of a pending order. Safe to repeat."""
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id).bind(order_id=order_id)

        if self._dispatching:
            return await self._reject(
                PaymentInProgressError("Wait for the current payment to finish.", order_id),
                log, correlation_id,
            )

        result = await self.reconciler.reconcile(self.account_id, order_id, correlation_id)
        await self._reload_pending()
        outcome = result.outcome
        record = result.record

        if isinstance(outcome, CheckAlreadyResolved):
            await self._notify("info", "This payment has already been resolved.", outcome.kind, order_id)
            return AttemptResult(
                status="resolved",
                message="This payment has already been resolved.",
                order_id=order_id,
                outcome=outcome.kind,
            )

        if isinstance(outcome, CheckSuccess):
            return await self._complete(record, log)

        if isinstance(outcome, CheckFailure):
            return await self._fail(record, GatewayFailure(outcome.reason, order_id, outcome.code), log)

        if isinstance(outcome, CheckStillPending):
            error = ReconciliationStillPending(
                f"Payment of {format_currency(record.amount)} KRW is still being processed.", order_id
            )
        else:
            error = ReconciliationTimeout(
                f"Could not confirm the payment of {format_currency(record.amount)} KRW. Try again.", order_id
            )
        return await self._keep_pending(record, error, log, outcome.kind)

    # =========================================================================
    # OUTCOMES
    # =========================================================================

    async def _complete(self, record: PendingPayment, log) -> AttemptResult:
        keys = set(record.item_keys)
        already_completed = keys <= self._completed
        self._completed |= keys
        self._selection -= keys
        self._pending = [r for r in self._pending if r.order_id != record.order_id]

        message = f"{format_currency(record.amount)} KRW has been collected."
        if already_completed:
            # Leftover record of a charge this session already reported
            log.info("payment_completion_repeated", order_id=record.order_id)
        else:
            log.info("payment_completed", order_id=record.order_id, amount=record.amount)
            await self._notify("success", message, "Success", record.order_id)

        if self.on_refresh is not None and not already_completed:
            try:
                await _maybe_await(self.on_refresh())
            except Exception as e:
                log.error("refresh_callback_failed", error=str(e))

        return AttemptResult(
            status="completed",
            message=message,
            order_id=record.order_id,
            amount=record.amount,
            item_keys=record.item_keys,
            outcome="Success",
        )

    async def _fail(self, record: PendingPayment, error: GatewayFailure, log) -> AttemptResult:
        self._pending = [r for r in self._pending if r.order_id != record.order_id]
        log.warning("payment_declined", order_id=record.order_id, reason=error.message, code=error.code)
        message = f"Payment was declined: {error.message}"
        await self._notify(error.notice_level, message, error.kind, record.order_id)
        return AttemptResult(
            status="failed",
            message=message,
            order_id=record.order_id,
            amount=record.amount,
            item_keys=record.item_keys,
            error_kind=error.kind,
            outcome="Failure",
        )

    async def _keep_pending(self, record: PendingPayment, error: CollectionError, log, outcome: str) -> AttemptResult:
        log.info("payment_still_pending", order_id=record.order_id, outcome=outcome)
        await self._notify(error.notice_level, error.message, error.kind, record.order_id)
        return AttemptResult(
            status="pending",
            message=error.message,
            order_id=record.order_id,
            amount=record.amount,
            item_keys=record.item_keys,
            error_kind=error.kind,
            outcome=outcome,
        )

    async def _reject(self, error: CollectionError, log, correlation_id: str) -> AttemptResult:
        log.warning("payment_rejected", error_kind=error.kind, error=error.message)
        await self._audit(
            AuditEventType.PAYMENT_REJECTED, log, correlation_id, error.order_id,
            {"error_kind": error.kind, "message": error.message},
        )
        await self._notify(error.notice_level, error.message, error.kind, error.order_id)
        return AttemptResult(
            status="rejected",
            message=error.message,
            order_id=error.order_id,
            item_keys=sorted(self._selection),
            error_kind=error.kind,
        )

    # =========================================================================
    # NOTICES / AUDIT
    # =========================================================================

    async def _notify(self, level: str, message: str, kind: str, order_id: str = None) -> Notice:
        notice = Notice(level=level, message=message, kind=kind, order_id=order_id)
        self._notices.append(notice)
        if self.on_notice is not None:
            try:
                await _maybe_await(self.on_notice(notice))
            except Exception as e:
                self._base_logger.error("notice_callback_failed", error=str(e))
        return notice

    def drain_notices(self) -> List[Notice]:
        """Notices raised since the last drain, oldest first."""
        notices, self._notices = self._notices, []
        return notices

    async def _audit(
        self,
        event_type: AuditEventType,
        log,
        correlation_id: str = None,
        order_id: str = None,
        metadata: dict = None,
    ):
        await self.audit.append(AuditLogEntry(
            correlation_id=correlation_id or str(uuid.uuid4()),
            event_type=event_type,
            pym_acnt_id=self.account_id,
            order_id=order_id,
            metadata=metadata or {},
        ))
        log.debug("audit_event", event_type=event_type.value, order_id=order_id)

    # =========================================================================
    # VIEWS
    # =========================================================================

    def item_status(self, key: str) -> ItemStatus:
        if key in self._completed:
            return ItemStatus.COMPLETED
        if key in self._pending_keys():
            return ItemStatus.PENDING
        if key in self._dispatching_keys or key in self.store.reserved_keys(self.account_id):
            return ItemStatus.DISPATCHING
        if key in self._selection:
            return ItemStatus.SELECTED
        return ItemStatus.UNSELECTED

    def view(self) -> CollectionView:
        """Derived view from the last loaded pending snapshot."""
        stale_after = timedelta(hours=self.config.pending_stale_hours)
        selected = sorted(k for k in self._selection if k in self._items)
        return CollectionView(
            pym_acnt_id=self.account_id,
            items=[
                ItemView(
                    key=key,
                    bill_ym=item.bill_ym,
                    ctrt_id=item.ctrt_id,
                    prod_nm=item.prod_nm,
                    unpay_amt=item.unpay_amt,
                    unpay_days=item.unpay_days,
                    status=self.item_status(key),
                )
                for key, item in self._items.items()
            ],
            selected_keys=selected,
            selected_total=sum(self._items[k].unpay_amt for k in selected),
            pending_total=sum(r.amount for r in self._pending),
            total_owed=sum(item.unpay_amt for key, item in self._items.items() if key not in self._completed),
            pending=[
                PendingView(
                    order_id=r.order_id,
                    amount=r.amount,
                    item_keys=r.item_keys,
                    card_last4=r.card_last4,
                    created_at=r.created_at,
                    stale=r.is_stale(stale_after),
                )
                for r in self._pending
            ],
            dispatching=self._dispatching,
        )

    async def current_view(self) -> CollectionView:
        await self._reload_pending()
        return self.view()
