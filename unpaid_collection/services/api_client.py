# services/api_client.py
# ============================================================================
# UNPAID COLLECTION v1.0 — BILLING API CLIENT
# ============================================================================
# Thin httpx wrapper around the operator's billing API.
#
# Every endpoint answers with the same envelope:
#   {"resultCode": "0000", "resultMsg": "...", "data": ...}
# Some proxies answer {"success": true, "data": ...} instead.
# Transport problems are raised as ApiError / ApiTimeoutError; envelope
# rejections come back as ApiResponse(success=False).
# ============================================================================

from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from unpaid_collection.config import CollectionSettings, settings
from unpaid_collection.errors import ApiError, ApiTimeoutError
from unpaid_collection.logging_config import get_logger

logger = get_logger("api_client")

SUCCESS_CODE = "0000"


class ApiResponse(BaseModel):
    success: bool
    data: Any = None
    message: Optional[str] = None
    error_code: Optional[str] = None
    total_count: Optional[int] = None


def _text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def parse_envelope(body: Any) -> ApiResponse:
    """Normalise the two envelope styles into an ApiResponse."""
    if not isinstance(body, dict):
        return ApiResponse(success=True, data=body)

    result_code = body.get("resultCode")
    if result_code is not None:
        result_code = str(result_code)
    if result_code == SUCCESS_CODE or body.get("success") is True:
        data = body.get("data")
        if data is None:
            data = body.get("resultData")
        return ApiResponse(
            success=True,
            data=data,
            total_count=body.get("totalCount") or body.get("resultCount"),
        )

    return ApiResponse(
        success=False,
        message=_text(body.get("resultMsg") or body.get("message")) or "request was not processed",
        error_code=result_code or _text(body.get("errorCode")),
    )


class CollectionApiClient:
    """Async client for the billing API"""

    def __init__(
        self,
        config: Optional[CollectionSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or settings
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.api_url,
                timeout=self.config.api_timeout_seconds,
                headers={"Content-Type": "application/json"},
            )
            logger.info("api_client_initialized", base_url=self.config.api_url)
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "CollectionApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def post(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ApiResponse:
        """
        POST ``params`` as JSON and unwrap the envelope.

        Args:
            endpoint: Path relative to the API base url
            params: Request body; None values are dropped
            timeout: Per-request override of the client timeout

        Raises:
            ApiTimeoutError: no answer within the timeout
            ApiError: connection failure, HTTP error status or non-JSON body
        """
        body = {k: v for k, v in (params or {}).items() if v is not None}
        request_timeout = timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT

        logger.debug("api_request", endpoint=endpoint)
        try:
            response = await self._get_client().post(endpoint, json=body, timeout=request_timeout)
        except httpx.TimeoutException as e:
            logger.warning("api_timeout", endpoint=endpoint, error=str(e))
            raise ApiTimeoutError(f"timeout calling {endpoint}") from e
        except httpx.HTTPError as e:
            logger.warning("api_transport_error", endpoint=endpoint, error=str(e))
            raise ApiError(f"error calling {endpoint}: {e}") from e

        if response.status_code >= 400:
            logger.warning("api_http_error", endpoint=endpoint, status_code=response.status_code)
            raise ApiError(
                f"HTTP {response.status_code} from {endpoint}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ApiError(f"invalid JSON from {endpoint}", status_code=response.status_code) from e

        result = parse_envelope(payload)
        logger.debug("api_response", endpoint=endpoint, success=result.success, error_code=result.error_code)
        return result
