# schemas/collection.py
# ============================================================================
# UNPAID COLLECTION v1.0 — DOMAIN SCHEMAS
# ============================================================================
# Purpose: Type-safe models for unpaid items, pending payments, card input
# and the tagged gateway outcomes.
#
# The gateway outcomes are discriminated unions on ``kind``. An ambiguous
# answer (Timeout / StillPending / QueryTimeout) is its own variant and can
# never be read as a failure.
# ============================================================================

import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_currency(amount: int) -> str:
    """Thousands-separated won amount, e.g. 55000 -> '55,000'."""
    try:
        return f"{int(amount):,}"
    except (TypeError, ValueError):
        return "0"


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class ItemStatus(str, Enum):
    """Derived status of one billing-period key."""
    UNSELECTED = "unselected"
    SELECTED = "selected"
    DISPATCHING = "dispatching"
    PENDING = "pending"
    COMPLETED = "completed"


NoticeLevel = Literal["success", "error", "warning", "info"]


# ============================================================================
# SECTION 2: UNPAID ITEMS AND ACCOUNTS
# ============================================================================

class UnpaidItem(BaseModel):
    """One billable period owed by a customer, as returned by the listing API."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    bill_ym: str = Field(alias="BILL_YM")
    ctrt_id: str = Field(default="", alias="CTRT_ID")
    prod_nm: str = Field(default="", alias="PROD_NM")
    bill_amt: int = Field(default=0, alias="BILL_AMT")
    unpay_amt: int = Field(default=0, alias="UNPAY_AMT")
    unpay_days: int = Field(default=0, alias="UNPAY_DAYS")
    unpay_stat_nm: str = Field(default="", alias="UNPAY_STAT_NM")

    @field_validator("bill_amt", "unpay_amt", "unpay_days", mode="before")
    @classmethod
    def _blank_number(cls, v):
        return 0 if v is None or v == "" else v

    @field_validator("bill_ym", "ctrt_id", "prod_nm", "unpay_stat_nm", mode="before")
    @classmethod
    def _blank_text(cls, v):
        return "" if v is None else str(v).strip()

    @property
    def key(self) -> str:
        """Identity of the item: billing period plus owning contract."""
        return f"{self.bill_ym}:{self.ctrt_id}" if self.ctrt_id else self.bill_ym


class AccountContext(BaseModel):
    """The payment account a collection session works on."""
    pym_acnt_id: str = Field(min_length=1)
    cust_id: str = ""
    so_id: str = ""


class MerchantContext(BaseModel):
    """Branch/org lookup key for the processing merchant."""
    so_id: str = ""


# ============================================================================
# SECTION 3: CARD INPUT
# ============================================================================

_SEPARATORS = re.compile(r"[\s\-/]")


class CardFields(BaseModel):
    """Card entry form. Raw numbers are never persisted or logged."""
    card_no: str = Field(repr=False)
    exp_mm: str
    exp_yy: str
    identity_no: str = Field(repr=False)
    installment: int = Field(default=0, ge=0, le=36)

    @field_validator("card_no", "exp_mm", "exp_yy", "identity_no", mode="before")
    @classmethod
    def _strip_separators(cls, v):
        return _SEPARATORS.sub("", "" if v is None else str(v))

    @field_validator("card_no")
    @classmethod
    def _check_card_no(cls, v: str) -> str:
        if not re.fullmatch(r"\d{16}", v):
            raise ValueError("card number must be 16 digits")
        return v

    @field_validator("exp_mm")
    @classmethod
    def _check_month(cls, v: str) -> str:
        if not re.fullmatch(r"\d{2}", v) or not 1 <= int(v) <= 12:
            raise ValueError("expiry month must be 2 digits between 01 and 12")
        return v

    @field_validator("exp_yy")
    @classmethod
    def _check_year(cls, v: str) -> str:
        if not re.fullmatch(r"\d{2}", v):
            raise ValueError("expiry year must be 2 digits")
        return v

    @field_validator("identity_no")
    @classmethod
    def _check_identity(cls, v: str) -> str:
        if not re.fullmatch(r"\d{6}|\d{10}", v):
            raise ValueError("identity must be a 6-digit birth date or 10-digit business id")
        return v

    @property
    def last4(self) -> str:
        return self.card_no[-4:]

    @property
    def expiry_masked(self) -> str:
        return f"**/{self.exp_yy}"

    @property
    def identity_masked(self) -> str:
        return self.identity_no[:2] + "*" * (len(self.identity_no) - 2)


# ============================================================================
# SECTION 4: PENDING PAYMENTS
# ============================================================================

class PendingPayment(BaseModel):
    """A charge attempt dispatched to the gateway but not yet confirmed."""
    order_id: str
    merchant_id: str
    order_date: str
    card_last4: str
    card_expiry_masked: str
    identity_masked: str
    installment: int = 0
    amount: int
    item_keys: List[str]
    cust_id: str = ""
    ledger_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def age(self, now: Optional[datetime] = None) -> timedelta:
        now = now or utcnow()
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return now - created

    def is_stale(self, stale_after: timedelta, now: Optional[datetime] = None) -> bool:
        return self.age(now) >= stale_after


# ============================================================================
# SECTION 5: GATEWAY REQUESTS AND OUTCOMES
# ============================================================================

class LedgerEntryRequest(BaseModel):
    pym_acnt_id: str
    cust_id: str
    order_id: str
    order_date: str
    amount: int
    item_keys: List[str]


class LedgerResult(BaseModel):
    success: bool
    message: str = ""
    ledger_ref: Optional[str] = None


class ChargeRequest(BaseModel):
    merchant_id: str
    order_id: str
    order_date: str
    amount: int
    card: CardFields


class CheckRequest(BaseModel):
    """Everything here comes from the stored record, never recomputed."""
    merchant_id: str
    order_id: str
    order_date: str
    amount: int


class ChargeSuccess(BaseModel):
    kind: Literal["Success"] = "Success"
    approval_no: Optional[str] = None


class ChargeFailure(BaseModel):
    kind: Literal["Failure"] = "Failure"
    reason: str
    code: Optional[str] = None


class ChargeTimeout(BaseModel):
    kind: Literal["Timeout"] = "Timeout"
    detail: str = "no answer from the payment gateway"


ChargeOutcome = Annotated[
    Union[ChargeSuccess, ChargeFailure, ChargeTimeout],
    Field(discriminator="kind"),
]


class CheckSuccess(BaseModel):
    kind: Literal["Success"] = "Success"
    approval_no: Optional[str] = None


class CheckFailure(BaseModel):
    kind: Literal["Failure"] = "Failure"
    reason: str
    code: Optional[str] = None


class CheckStillPending(BaseModel):
    kind: Literal["StillPending"] = "StillPending"


class CheckQueryTimeout(BaseModel):
    kind: Literal["QueryTimeout"] = "QueryTimeout"
    detail: str = "no answer from the result-check call"


class CheckAlreadyResolved(BaseModel):
    kind: Literal["AlreadyResolved"] = "AlreadyResolved"


CheckOutcome = Annotated[
    Union[CheckSuccess, CheckFailure, CheckStillPending, CheckQueryTimeout, CheckAlreadyResolved],
    Field(discriminator="kind"),
]


# ============================================================================
# SECTION 6: PRESENTATION-FACING RESULTS
# ============================================================================

class Notice(BaseModel):
    """Toast-channel message for the presentation layer."""
    level: NoticeLevel
    message: str
    kind: str
    order_id: Optional[str] = None


class AttemptResult(BaseModel):
    """Result of a submit or a pending check."""
    status: Literal["completed", "failed", "pending", "rejected", "resolved"]
    message: str
    order_id: Optional[str] = None
    amount: int = 0
    item_keys: List[str] = Field(default_factory=list)
    error_kind: Optional[str] = None
    outcome: Optional[str] = None


class ItemView(BaseModel):
    key: str
    bill_ym: str
    ctrt_id: str
    prod_nm: str
    unpay_amt: int
    unpay_days: int
    status: ItemStatus


class PendingView(BaseModel):
    order_id: str
    amount: int
    item_keys: List[str]
    card_last4: str
    created_at: datetime
    stale: bool = False


class CollectionView(BaseModel):
    pym_acnt_id: str
    items: List[ItemView] = Field(default_factory=list)
    selected_keys: List[str] = Field(default_factory=list)
    selected_total: int = 0
    pending_total: int = 0
    total_owed: int = 0
    pending: List[PendingView] = Field(default_factory=list)
    dispatching: bool = False
