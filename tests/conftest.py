"""Shared fixtures: in-memory store, scripted gateway and the three sample bills."""

from typing import Awaitable, Callable, List, Optional

import pytest

from unpaid_collection.config import CollectionSettings
from unpaid_collection.pipeline.audit import InMemoryAuditLog
from unpaid_collection.pipeline.collection_orchestrator import CollectionOrchestrator
from unpaid_collection.schemas.collection import (
    AccountContext,
    ChargeRequest,
    ChargeSuccess,
    CheckRequest,
    CheckSuccess,
    LedgerEntryRequest,
    LedgerResult,
    MerchantContext,
    UnpaidItem,
)
from unpaid_collection.services.billing_api import IBillingApi
from unpaid_collection.services.gateway_client import IPaymentGateway
from unpaid_collection.storage import InMemoryKeyValueBackend, PendingPaymentStore

VALID_CARD = {
    "card_no": "1234-5678-9012-3456",
    "exp_mm": "09",
    "exp_yy": "28",
    "identity_no": "900101",
    "installment": 0,
}


class FakeGateway(IPaymentGateway):
    """
    Scripted gateway. Set an attribute to an Exception instance to make that
    call raise it. ``on_ledger`` and ``on_charge`` run inside their calls,
    before the result is returned.
    """

    def __init__(self):
        self.merchant_id = "MID0001"
        self.ledger = LedgerResult(success=True, message="registered", ledger_ref="DPST-1")
        self.charge_outcome = ChargeSuccess(approval_no="A-100")
        self.check_outcome = CheckSuccess(approval_no="A-100")
        self.on_ledger: Optional[Callable[[LedgerEntryRequest], Awaitable[None]]] = None
        self.on_charge: Optional[Callable[[ChargeRequest], Awaitable[None]]] = None
        self.calls: List[str] = []
        self.ledger_requests: List[LedgerEntryRequest] = []
        self.charge_requests: List[ChargeRequest] = []
        self.check_requests: List[CheckRequest] = []

    async def resolve_merchant_id(self, context: MerchantContext) -> str:
        self.calls.append("merchant")
        if isinstance(self.merchant_id, Exception):
            raise self.merchant_id
        return self.merchant_id

    async def register_ledger_entry(self, request: LedgerEntryRequest) -> LedgerResult:
        self.calls.append("ledger")
        self.ledger_requests.append(request)
        if self.on_ledger is not None:
            await self.on_ledger(request)
        if isinstance(self.ledger, Exception):
            raise self.ledger
        return self.ledger

    async def charge(self, request: ChargeRequest, timeout: float):
        self.calls.append("charge")
        self.charge_requests.append(request)
        if self.on_charge is not None:
            await self.on_charge(request)
        if isinstance(self.charge_outcome, Exception):
            raise self.charge_outcome
        return self.charge_outcome

    async def check_result(self, request: CheckRequest, timeout: float):
        self.calls.append("check")
        self.check_requests.append(request)
        if isinstance(self.check_outcome, Exception):
            raise self.check_outcome
        return self.check_outcome


class FakeBillingApi(IBillingApi):
    def __init__(self, items: List[UnpaidItem]):
        self.items = list(items)
        self.calls = 0

    async def list_unpaid_items(self, cust_id: str, pym_acnt_id: Optional[str] = None) -> List[UnpaidItem]:
        self.calls += 1
        return list(self.items)


def make_items() -> List[UnpaidItem]:
    return [
        UnpaidItem(bill_ym="202401", prod_nm="Internet 500M", bill_amt=30000, unpay_amt=30000, unpay_days=75),
        UnpaidItem(bill_ym="202402", prod_nm="Internet 500M", bill_amt=25000, unpay_amt=25000, unpay_days=44),
        UnpaidItem(bill_ym="202403", prod_nm="Internet 500M", bill_amt=20000, unpay_amt=20000, unpay_days=15),
    ]


@pytest.fixture
def items() -> List[UnpaidItem]:
    return make_items()


@pytest.fixture
def backend() -> InMemoryKeyValueBackend:
    return InMemoryKeyValueBackend()


@pytest.fixture
def store(backend) -> PendingPaymentStore:
    return PendingPaymentStore(backend)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def config() -> CollectionSettings:
    return CollectionSettings(
        api_url="http://billing.test",
        charge_timeout_seconds=0.5,
        check_timeout_seconds=0.5,
        log_json=False,
    )


@pytest.fixture
def account() -> AccountContext:
    return AccountContext(pym_acnt_id="PA1000", cust_id="C1000", so_id="SO01")


@pytest.fixture
def audit_log() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def notices() -> list:
    return []


@pytest.fixture
def refreshes() -> list:
    return []


@pytest.fixture
def orchestrator(account, store, gateway, items, config, audit_log, notices, refreshes) -> CollectionOrchestrator:
    orch = CollectionOrchestrator(
        account,
        store,
        gateway,
        on_notice=notices.append,
        on_refresh=lambda: refreshes.append(True),
        audit_log=audit_log,
        config=config,
    )
    orch.load_items(items)
    return orch
