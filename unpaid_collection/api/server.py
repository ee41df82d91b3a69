# api/server.py
# ============================================================================
# UNPAID COLLECTION v1.0 — FASTAPI SERVER
# ============================================================================
# HTTP adapter for the collection screen: one orchestrator session per
# payment account, kept in process memory. Pending payments themselves are
# durable in the store, so a restarted server resumes them on "open".
# ============================================================================

import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from unpaid_collection.config import CollectionSettings, settings
from unpaid_collection.errors import ApiError
from unpaid_collection.logging_config import get_logger
from unpaid_collection.pipeline.audit import IAuditLog, InMemoryAuditLog
from unpaid_collection.pipeline.collection_orchestrator import CollectionOrchestrator
from unpaid_collection.schemas.collection import AccountContext, AttemptResult, CollectionView, Notice
from unpaid_collection.services.api_client import CollectionApiClient
from unpaid_collection.services.billing_api import BillingApi, IBillingApi
from unpaid_collection.services.gateway_client import IPaymentGateway, PaymentGatewayClient
from unpaid_collection.storage import IPendingPaymentStore, JsonFileKeyValueBackend, PendingPaymentStore

logger = get_logger("server")

VERSION = "1.0.0"


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class OpenRequest(BaseModel):
    """Start or resume a collection session."""
    cust_id: str = ""
    so_id: str = ""


class ToggleRequest(BaseModel):
    key: str = Field(..., min_length=1)


class CardRequest(BaseModel):
    """Raw card form. Validated by the orchestrator, not here."""
    card_no: Optional[str] = None
    exp_mm: Optional[str] = None
    exp_yy: Optional[str] = None
    identity_no: Optional[str] = None
    installment: Optional[int] = None


class ToggleResponse(BaseModel):
    accepted: bool
    view: CollectionView


class AttemptResponse(BaseModel):
    """Submit / check response with the notices raised along the way."""
    result: AttemptResult
    notices: List[Notice]
    view: CollectionView


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    active_sessions: int


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    store: Optional[IPendingPaymentStore] = None,
    gateway: Optional[IPaymentGateway] = None,
    billing_api: Optional[IBillingApi] = None,
    config: Optional[CollectionSettings] = None,
    audit_log: Optional[IAuditLog] = None,
) -> FastAPI:
    """
    Build the app. Collaborators that are not injected are created at
    startup from settings and the API client is closed on shutdown.
    """
    config = config or settings
    session_states: Dict[str, CollectionOrchestrator] = {}
    start_time = datetime.now(timezone.utc)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("server_starting", version=VERSION, api_url=config.api_url)
        client: Optional[CollectionApiClient] = None

        app.state.store = store or PendingPaymentStore(JsonFileKeyValueBackend(config.pending_dir))
        if gateway is None or billing_api is None:
            client = CollectionApiClient(config)
        app.state.gateway = gateway or PaymentGatewayClient(client)
        app.state.billing_api = billing_api or BillingApi(client)
        app.state.audit_log = audit_log or InMemoryAuditLog()

        yield

        logger.info("server_stopping", active_sessions=len(session_states))
        session_states.clear()
        if client is not None:
            await client.close()

    app = FastAPI(
        title="Unpaid Collection",
        description="Deferred card payment for unpaid balances",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.session_states = session_states

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header."""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    def _session(pym_acnt_id: str) -> CollectionOrchestrator:
        orchestrator = session_states.get(pym_acnt_id)
        if orchestrator is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return orchestrator

    async def _attempt_response(orchestrator: CollectionOrchestrator, result: AttemptResult) -> AttemptResponse:
        view = await orchestrator.current_view()
        return AttemptResponse(result=result, notices=orchestrator.drain_notices(), view=view)

    # ========================================================================
    # ENDPOINTS
    # ========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        uptime = (datetime.now(timezone.utc) - start_time).total_seconds()
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=uptime,
            active_sessions=len(session_states),
        )

    @app.post("/api/v1/collection/{pym_acnt_id}/open", response_model=CollectionView)
    async def open_session(pym_acnt_id: str, request: OpenRequest, http_request: Request):
        """
        Open (or reopen) the collection screen for an account.

        Pending payments are read back from the store, so a session opened
        after a restart shows the attempts that are still unconfirmed. A
        session whose charge is still being dispatched is kept as is.
        """
        existing = session_states.get(pym_acnt_id)
        if existing is not None and existing.dispatching:
            logger.info("open_reused_dispatching_session", pym_acnt_id=pym_acnt_id)
            return existing.view()

        state = http_request.app.state
        orchestrator = CollectionOrchestrator(
            AccountContext(pym_acnt_id=pym_acnt_id, cust_id=request.cust_id, so_id=request.so_id),
            store=state.store,
            gateway=state.gateway,
            billing_api=state.billing_api,
            audit_log=state.audit_log,
            config=config,
        )
        try:
            view = await orchestrator.open()
        except ApiError as e:
            logger.error("open_failed", pym_acnt_id=pym_acnt_id, error=e.message)
            raise HTTPException(status_code=502, detail=e.message)

        session_states[pym_acnt_id] = orchestrator
        return view

    @app.get("/api/v1/collection/{pym_acnt_id}", response_model=CollectionView)
    async def get_view(pym_acnt_id: str):
        return await _session(pym_acnt_id).current_view()

    @app.post("/api/v1/collection/{pym_acnt_id}/toggle", response_model=ToggleResponse)
    async def toggle(pym_acnt_id: str, request: ToggleRequest):
        orchestrator = _session(pym_acnt_id)
        accepted = await orchestrator.toggle_selection(request.key)
        return ToggleResponse(accepted=accepted, view=orchestrator.view())

    @app.post("/api/v1/collection/{pym_acnt_id}/select-all", response_model=CollectionView)
    async def select_all(pym_acnt_id: str):
        orchestrator = _session(pym_acnt_id)
        await orchestrator.select_all()
        return orchestrator.view()

    @app.post("/api/v1/collection/{pym_acnt_id}/clear", response_model=CollectionView)
    async def clear(pym_acnt_id: str):
        orchestrator = _session(pym_acnt_id)
        orchestrator.clear_all()
        return orchestrator.view()

    @app.post("/api/v1/collection/{pym_acnt_id}/submit", response_model=AttemptResponse)
    async def submit(pym_acnt_id: str, request: CardRequest):
        orchestrator = _session(pym_acnt_id)
        card: Dict[str, Any] = request.model_dump(exclude_none=True)
        result = await orchestrator.submit_payment(card)
        return await _attempt_response(orchestrator, result)

    @app.post("/api/v1/collection/{pym_acnt_id}/pending/{order_id}/check", response_model=AttemptResponse)
    async def check(pym_acnt_id: str, order_id: str):
        orchestrator = _session(pym_acnt_id)
        result = await orchestrator.check_pending(order_id)
        return await _attempt_response(orchestrator, result)

    @app.delete("/api/v1/collection/{pym_acnt_id}")
    async def close_session(pym_acnt_id: str):
        """Forget the in-memory session. Pending records stay in the store."""
        if session_states.pop(pym_acnt_id, None) is not None:
            return {"status": "closed", "pym_acnt_id": pym_acnt_id}
        raise HTTPException(status_code=404, detail="Session not found")

    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

def main():
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(
        "unpaid_collection.api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV", "production") == "development",
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
