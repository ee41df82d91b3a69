# services/gateway_client.py
# ============================================================================
# UNPAID COLLECTION v1.0 — PAYMENT GATEWAY CLIENT
# ============================================================================
# Adapter over the four card-payment endpoints:
#   merchant lookup -> ledger insert -> charge -> result check
#
# FAILURE HANDLING:
# - No merchant id: ConfigurationError (fatal for this attempt)
# - Ledger rejected or unreachable: LedgerResult(success=False)
# - Charge: Success / Failure / Timeout. Transport errors, a missed
#   deadline and unrecognised answers are all Timeout, because the charge
#   may still complete server-side.
# - Check: Success / Failure / StillPending / QueryTimeout. Read-only.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from unpaid_collection.config import settings
from unpaid_collection.errors import ApiError, ConfigurationError
from unpaid_collection.logging_config import get_logger
from unpaid_collection.schemas.collection import (
    ChargeFailure,
    ChargeOutcome,
    ChargeRequest,
    ChargeSuccess,
    ChargeTimeout,
    CheckFailure,
    CheckOutcome,
    CheckQueryTimeout,
    CheckRequest,
    CheckStillPending,
    CheckSuccess,
    LedgerEntryRequest,
    LedgerResult,
    MerchantContext,
)
from unpaid_collection.services.api_client import CollectionApiClient

logger = get_logger("gateway_client")

MERCHANT_ENDPOINT = "/billing/payment/card/getPgMerchantId"
LEDGER_ENDPOINT = "/billing/payment/card/insertCardDpst"
CHARGE_ENDPOINT = "/billing/payment/card/approveCard"
CHECK_ENDPOINT = "/billing/payment/card/getCardApprovalResult"

PAY_STAT_SUCCESS = "S"
PAY_STAT_FAILURE = "F"
PAY_STAT_PENDING = "P"


class IPaymentGateway(ABC):
    """Payment gateway interface"""

    @abstractmethod
    async def resolve_merchant_id(self, context: MerchantContext) -> str:
        pass

    @abstractmethod
    async def register_ledger_entry(self, request: LedgerEntryRequest) -> LedgerResult:
        pass

    @abstractmethod
    async def charge(self, request: ChargeRequest, timeout: float) -> ChargeOutcome:
        pass

    @abstractmethod
    async def check_result(self, request: CheckRequest, timeout: float) -> CheckOutcome:
        pass


def _status_of(data: Any) -> Dict[str, Optional[str]]:
    if isinstance(data, list):
        data = data[0] if data else {}
    if not isinstance(data, dict):
        data = {}
    stat = data.get("PAY_STAT")
    code = data.get("RESULT_CD")
    approval_no = data.get("APPR_NO")
    return {
        "stat": str(stat).strip().upper() if stat is not None else None,
        "message": str(data.get("RESULT_MSG") or ""),
        "code": str(code) if code is not None else None,
        "approval_no": str(approval_no) if approval_no is not None else None,
    }


class PaymentGatewayClient(IPaymentGateway):
    """Gateway adapter over the billing API envelope client"""

    def __init__(self, client: CollectionApiClient):
        self.client = client

    async def resolve_merchant_id(self, context: MerchantContext) -> str:
        try:
            result = await self.client.post(MERCHANT_ENDPOINT, {"SO_ID": context.so_id})
        except ApiError as e:
            logger.error("merchant_lookup_failed", so_id=context.so_id, error=str(e))
            raise ConfigurationError(f"merchant lookup failed: {e.message}") from e

        data = result.data
        if isinstance(data, list):
            data = data[0] if data else None
        merchant_id = data.get("MID") if isinstance(data, dict) else None

        if not result.success or not merchant_id:
            logger.error("merchant_not_found", so_id=context.so_id, message=result.message)
            raise ConfigurationError(
                result.message or f"no payment merchant configured for branch {context.so_id or '-'}"
            )

        logger.info("merchant_resolved", so_id=context.so_id, merchant_id=merchant_id)
        return str(merchant_id)

    async def register_ledger_entry(self, request: LedgerEntryRequest) -> LedgerResult:
        params = {
            "PYM_ACNT_ID": request.pym_acnt_id,
            "CUST_ID": request.cust_id,
            "ORDER_ID": request.order_id,
            "ORDER_DT": request.order_date,
            "PAY_AMT": request.amount,
            "BILL_YM_LIST": ",".join(request.item_keys),
        }
        try:
            result = await self.client.post(LEDGER_ENDPOINT, params)
        except ApiError as e:
            logger.error("ledger_call_failed", order_id=request.order_id, error=str(e))
            return LedgerResult(success=False, message=f"ledger registration failed: {e.message}")

        if not result.success:
            logger.warning("ledger_rejected", order_id=request.order_id, error_code=result.error_code)
            return LedgerResult(success=False, message=result.message or "ledger registration was rejected")

        ledger_ref = result.data.get("DPST_ID") if isinstance(result.data, dict) else None
        return LedgerResult(
            success=True,
            message="registered",
            ledger_ref=str(ledger_ref) if ledger_ref is not None else None,
        )

    async def charge(self, request: ChargeRequest, timeout: float = None) -> ChargeOutcome:
        """
        Issue the card approval, racing it against ``timeout`` seconds.

        Only an explicit decline is a Failure. Anything else that is not a
        clear approval is returned as Timeout.
        """
        timeout = timeout if timeout is not None else settings.charge_timeout_seconds
        card = request.card
        params = {
            "MID": request.merchant_id,
            "ORDER_ID": request.order_id,
            "ORDER_DT": request.order_date,
            "PAY_AMT": request.amount,
            "CARD_NO": card.card_no,
            "EXP_MM": card.exp_mm,
            "EXP_YY": card.exp_yy,
            "ID_NO": card.identity_no,
            "INSTALLMENT": f"{card.installment:02d}",
        }
        log = logger.bind(order_id=request.order_id, amount=request.amount)

        try:
            result = await asyncio.wait_for(
                self.client.post(CHARGE_ENDPOINT, params, timeout=timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            log.warning("charge_timeout", timeout=timeout)
            return ChargeTimeout(detail=f"no answer within {timeout:g}s")
        except ApiError as e:
            log.warning("charge_transport_error", error=str(e))
            return ChargeTimeout(detail=e.message)

        if not result.success:
            if result.error_code:
                log.info("charge_declined", error_code=result.error_code)
                return ChargeFailure(reason=result.message or "card was declined", code=result.error_code)
            log.warning("charge_unrecognised_rejection", message=result.message)
            return ChargeTimeout(detail=result.message or "unrecognised gateway answer")

        status = _status_of(result.data)
        if status["stat"] == PAY_STAT_SUCCESS:
            log.info("charge_approved")
            return ChargeSuccess(approval_no=status["approval_no"])
        if status["stat"] == PAY_STAT_FAILURE:
            log.info("charge_declined", error_code=status["code"])
            return ChargeFailure(reason=status["message"] or "card was declined", code=status["code"])

        log.warning("charge_ambiguous", pay_stat=status["stat"])
        return ChargeTimeout(detail=status["message"] or "payment is still being processed")

    async def check_result(self, request: CheckRequest, timeout: float = None) -> CheckOutcome:
        timeout = timeout if timeout is not None else settings.check_timeout_seconds
        params = {
            "MID": request.merchant_id,
            "ORDER_ID": request.order_id,
            "ORDER_DT": request.order_date,
            "PAY_AMT": request.amount,
        }
        log = logger.bind(order_id=request.order_id, amount=request.amount)

        try:
            result = await asyncio.wait_for(
                self.client.post(CHECK_ENDPOINT, params, timeout=timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            log.warning("check_timeout", timeout=timeout)
            return CheckQueryTimeout(detail=f"no answer within {timeout:g}s")
        except ApiError as e:
            log.warning("check_transport_error", error=str(e))
            return CheckQueryTimeout(detail=e.message)

        if not result.success:
            # A rejected query says nothing about the charge itself
            log.warning("check_rejected", error_code=result.error_code, message=result.message)
            return CheckQueryTimeout(detail=result.message or "result check was rejected")

        status = _status_of(result.data)
        if status["stat"] == PAY_STAT_SUCCESS:
            log.info("check_success")
            return CheckSuccess(approval_no=status["approval_no"])
        if status["stat"] == PAY_STAT_FAILURE:
            log.info("check_failure", error_code=status["code"])
            return CheckFailure(reason=status["message"] or "card was declined", code=status["code"])

        log.info("check_still_pending", pay_stat=status["stat"])
        return CheckStillPending()
