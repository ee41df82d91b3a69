# services/__init__.py
# ============================================================================
# UNPAID COLLECTION v1.0 — SERVICES MODULE
# ============================================================================
# Remote API clients and order identity
# ============================================================================

from unpaid_collection.services.api_client import (
    ApiResponse,
    CollectionApiClient,
    parse_envelope,
)
from unpaid_collection.services.billing_api import (
    BillingApi,
    IBillingApi,
)
from unpaid_collection.services.gateway_client import (
    IPaymentGateway,
    PaymentGatewayClient,
)
from unpaid_collection.services.order_ids import (
    OrderIdGenerator,
    next_order_id,
)

__all__ = [
    # API client
    "ApiResponse",
    "CollectionApiClient",
    "parse_envelope",
    # Billing
    "BillingApi",
    "IBillingApi",
    # Gateway
    "IPaymentGateway",
    "PaymentGatewayClient",
    # Order ids
    "OrderIdGenerator",
    "next_order_id",
]
