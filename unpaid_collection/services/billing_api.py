# services/billing_api.py
# ============================================================================
# UNPAID COLLECTION v1.0 — UNPAID ITEM LISTING
# ============================================================================

from abc import ABC, abstractmethod
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from unpaid_collection.errors import ApiError
from unpaid_collection.logging_config import get_logger
from unpaid_collection.schemas.collection import UnpaidItem
from unpaid_collection.services.api_client import CollectionApiClient

logger = get_logger("billing_api")

UNPAID_LIST_ENDPOINT = "/billing/unpayment/upreport/getUnpaymentNowList"


class IBillingApi(ABC):
    @abstractmethod
    async def list_unpaid_items(self, cust_id: str, pym_acnt_id: Optional[str] = None) -> List[UnpaidItem]:
        pass


class BillingApi(IBillingApi):
    """Current unpaid items for a customer / payment account."""

    def __init__(self, client: CollectionApiClient):
        self.client = client

    async def list_unpaid_items(self, cust_id: str, pym_acnt_id: Optional[str] = None) -> List[UnpaidItem]:
        result = await self.client.post(
            UNPAID_LIST_ENDPOINT,
            {"CUST_ID": cust_id, "PYM_ACNT_ID": pym_acnt_id},
        )
        if not result.success:
            raise ApiError(result.message or "unpaid list request was rejected")

        rows = result.data or []
        if isinstance(rows, dict):
            rows = [rows]

        items = []
        for row in rows:
            try:
                items.append(UnpaidItem.model_validate(row))
            except PydanticValidationError as e:
                logger.warning("unpaid_row_skipped", cust_id=cust_id, error=str(e))

        logger.info("unpaid_items_loaded", cust_id=cust_id, pym_acnt_id=pym_acnt_id, count=len(items))
        return items
