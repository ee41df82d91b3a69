"""Tests for the HTTP surface."""

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import VALID_CARD, FakeBillingApi, make_items
from unpaid_collection.api.server import create_app
from unpaid_collection.errors import ApiError
from unpaid_collection.schemas.collection import ChargeTimeout

ACCOUNT = "PA1000"
BASE = f"/api/v1/collection/{ACCOUNT}"


@pytest.fixture
def billing():
    return FakeBillingApi(make_items())


@pytest.fixture
def client(store, gateway, billing, config):
    app = create_app(store=store, gateway=gateway, billing_api=billing, config=config)
    with TestClient(app) as test_client:
        yield test_client


def _open(client):
    response = client.post(f"{BASE}/open", json={"cust_id": "C1000", "so_id": "SO01"})
    assert response.status_code == 200
    return response.json()


class TestServer:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "X-Response-Time-Ms" in response.headers

    def test_unknown_session_is_404(self, client):
        assert client.get(BASE).status_code == 404
        assert client.post(f"{BASE}/toggle", json={"key": "202401"}).status_code == 404
        assert client.post(f"{BASE}/submit", json=VALID_CARD).status_code == 404

    def test_open_returns_items(self, client):
        view = _open(client)

        assert view["pym_acnt_id"] == ACCOUNT
        assert [i["key"] for i in view["items"]] == ["202401", "202402", "202403"]
        assert view["total_owed"] == 75000
        assert view["pending"] == []

    def test_toggle_and_select_all(self, client):
        _open(client)

        toggled = client.post(f"{BASE}/toggle", json={"key": "202401"}).json()
        assert toggled["accepted"] is True
        assert toggled["view"]["selected_total"] == 30000

        unknown = client.post(f"{BASE}/toggle", json={"key": "209901"}).json()
        assert unknown["accepted"] is False

        view = client.post(f"{BASE}/select-all").json()
        assert view["selected_keys"] == ["202401", "202402", "202403"]

        view = client.post(f"{BASE}/clear").json()
        assert view["selected_keys"] == []

    def test_submit_success(self, client):
        _open(client)
        client.post(f"{BASE}/toggle", json={"key": "202401"})
        client.post(f"{BASE}/toggle", json={"key": "202402"})

        body = client.post(f"{BASE}/submit", json=VALID_CARD).json()

        assert body["result"]["status"] == "completed"
        assert body["result"]["amount"] == 55000
        assert [n["level"] for n in body["notices"]] == ["success"]
        statuses = {i["key"]: i["status"] for i in body["view"]["items"]}
        assert statuses == {"202401": "completed", "202402": "completed", "202403": "unselected"}
        assert body["view"]["total_owed"] == 20000

    def test_invalid_card_is_a_rejected_result(self, client, gateway):
        _open(client)
        client.post(f"{BASE}/toggle", json={"key": "202401"})

        response = client.post(f"{BASE}/submit", json={**VALID_CARD, "exp_mm": "13"})

        assert response.status_code == 200
        body = response.json()
        assert body["result"]["status"] == "rejected"
        assert body["result"]["error_kind"] == "ValidationError"
        assert gateway.calls == []

    def test_timeout_then_check(self, client, gateway, store):
        gateway.charge_outcome = ChargeTimeout()
        _open(client)
        client.post(f"{BASE}/select-all")

        submitted = client.post(f"{BASE}/submit", json=VALID_CARD).json()
        order_id = submitted["result"]["order_id"]
        assert submitted["result"]["status"] == "pending"
        assert submitted["view"]["pending_total"] == 75000
        assert submitted["view"]["pending"][0]["card_last4"] == "3456"

        checked = client.post(f"{BASE}/pending/{order_id}/check").json()
        assert checked["result"]["status"] == "completed"
        assert checked["view"]["pending"] == []

        again = client.post(f"{BASE}/pending/{order_id}/check").json()
        assert again["result"]["status"] == "resolved"

    def test_reopen_resumes_pending(self, client, gateway):
        gateway.charge_outcome = ChargeTimeout()
        _open(client)
        client.post(f"{BASE}/toggle", json={"key": "202401"})
        client.post(f"{BASE}/submit", json=VALID_CARD)

        assert client.delete(BASE).status_code == 200
        view = _open(client)

        assert view["pending_total"] == 30000
        assert view["items"][0]["status"] == "pending"

    def test_listing_failure_is_bad_gateway(self, store, gateway, config):
        class BrokenBilling(FakeBillingApi):
            async def list_unpaid_items(self, cust_id, pym_acnt_id=None):
                raise ApiError("billing API unavailable")

        app = create_app(store=store, gateway=gateway, billing_api=BrokenBilling([]), config=config)
        with TestClient(app) as client:
            response = client.post(f"{BASE}/open", json={"cust_id": "C1000"})

        assert response.status_code == 502


class TestReopenDuringDispatch:
    @pytest.mark.asyncio
    async def test_reopen_keeps_the_dispatching_session(self, store, gateway, billing, config):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def hold_ledger(request):
            entered.set()
            await release.wait()

        gateway.on_ledger = hold_ledger
        app = create_app(store=store, gateway=gateway, billing_api=billing, config=config)
        transport = httpx.ASGITransport(app=app)

        async with app.router.lifespan_context(app):
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                await client.post(f"{BASE}/open", json={"cust_id": "C1000", "so_id": "SO01"})
                await client.post(f"{BASE}/toggle", json={"key": "202401"})
                submit = asyncio.create_task(client.post(f"{BASE}/submit", json=VALID_CARD))
                await entered.wait()

                reopened = await client.post(f"{BASE}/open", json={"cust_id": "C1000", "so_id": "SO01"})
                assert reopened.status_code == 200
                assert reopened.json()["dispatching"] is True

                toggled = (await client.post(f"{BASE}/toggle", json={"key": "202401"})).json()
                assert toggled["accepted"] is False

                second = (await client.post(f"{BASE}/submit", json=VALID_CARD)).json()
                assert second["result"]["error_kind"] == "PaymentInProgressError"

                release.set()
                first = (await submit).json()

        assert first["result"]["status"] == "completed"
        assert len(gateway.charge_requests) == 1
        assert store.reserved_keys(ACCOUNT) == set()
