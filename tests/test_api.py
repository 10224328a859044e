"""
API tests over the ASGI app with the services wired to the test database.
"""
import json
from datetime import datetime
from typing import Any, AsyncGenerator

import httpx
import pytest
import pytest_asyncio

from boxoffice.api.main import create_app
from boxoffice.config import Settings
from boxoffice.integrations.base import ResultStatus
from boxoffice.services import ServiceContainer, build_container

from conftest import FakeGateway, minutes_ago, ticket


@pytest.fixture
def container(
    test_settings: Settings, session_factory: Any, dispatcher: Any, email_sender: Any
) -> ServiceContainer:
    return build_container(test_settings, session_factory, dispatcher, email_sender)


@pytest_asyncio.fixture
async def client(container: ServiceContainer) -> AsyncGenerator[httpx.AsyncClient, Any]:
    app = create_app(container.settings, container)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def checkout_payload(**overrides: Any) -> dict:
    payload = {
        "event_id": 1,
        "gateway": "fakepay",
        "attendees": [{"email": "awa@example.com", "first_name": "Awa", "seat": "A1"}],
        "selected_tickets": [{"ticket_id": 7, "quantity": 1, "price": 5000}],
        "total_amount": 5000,
        "currency": "xof",
        "session_id": "s1",
    }
    payload.update(overrides)
    return payload


class TestPaymentEndpoints:
    """Test suite for the payment routes."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_then_status(
        self, client: httpx.AsyncClient, create_event: Any, create_catalogue: Any
    ) -> None:
        await create_event()
        await create_catalogue(ticket(7, price=5000))

        response = await client.post("/api/v1/payments/checkout", json=checkout_payload())

        assert response.status_code == 201
        body = response.json()
        assert body["session_id"] == "s1"
        assert body["status"] == "pending"
        assert body["currency"] == "XOF"
        assert body["payment_url"] == "https://pay.test/s1"

        status_response = await client.get("/api/v1/payments/status/s1")
        assert status_response.status_code == 200
        assert status_response.json()["status"] == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_validation(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/payments/checkout", json=checkout_payload(attendees=[])
        )
        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_rejects_client_priced_free_cart(
        self,
        client: httpx.AsyncClient,
        create_event: Any,
        create_catalogue: Any,
        count_orders: Any,
    ) -> None:
        await create_event()
        await create_catalogue(ticket(7, price=5000))

        response = await client.post(
            "/api/v1/payments/checkout",
            json=checkout_payload(
                selected_tickets=[{"ticket_id": 7, "quantity": 1, "price": 0}], total_amount=0
            ),
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_checkout"
        assert await count_orders() == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_touch_session(self, client: httpx.AsyncClient, create_draft: Any) -> None:
        draft = await create_draft("s1")

        response = await client.post("/api/v1/payments/sessions/s1/touch")
        missing = await client.post("/api/v1/payments/sessions/ghost/touch")

        assert response.status_code == 200
        assert response.json()["session_id"] == "s1"
        assert datetime.fromisoformat(response.json()["expires_at"]) == draft.expires_at
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "session_not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_unknown_gateway(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/payments/checkout", json=checkout_payload(gateway="paypal")
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "unsupported_gateway"
        assert response.headers["X-Request-ID"] == response.json()["request_id"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_finalizes_and_always_acknowledges(
        self, client: httpx.AsyncClient, create_draft: Any, count_orders: Any
    ) -> None:
        await create_draft("s1")
        body = json.dumps(
            {"tx": "tx_s1", "token": "nt_s1", "status": "paid", "amount": 5000, "session_id": "s1"}
        )

        first = await client.post("/api/v1/payments/webhook/fakepay", content=body)
        replay = await client.post("/api/v1/payments/webhook/fakepay", content=body)
        garbage = await client.post("/api/v1/payments/webhook/fakepay", content=b"not json")
        unknown = await client.post("/api/v1/payments/webhook/paypal", content=b"{}")

        assert [r.status_code for r in (first, replay, garbage, unknown)] == [200] * 4
        assert first.json()["outcome"] == "finalized"
        assert first.json()["received"] is True
        assert replay.json()["outcome"] == "already_processed"
        assert unknown.json()["outcome"] == "unsupported_gateway"
        assert await count_orders() == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verify_session(
        self,
        client: httpx.AsyncClient,
        fake_gateway: FakeGateway,
        create_draft: Any,
        create_event: Any,
    ) -> None:
        await create_event()
        await create_draft("s1")
        fake_gateway.verify_results["tx_s1"] = ResultStatus.PAID

        response = await client.post("/api/v1/payments/verify-session/s1")
        again = await client.post("/api/v1/payments/verify-session/s1")

        assert response.status_code == 200
        assert response.json()["status"] == "paid"
        assert response.json()["event_slug"] == "jazz-night"
        assert again.json()["already_finalized"] is True
        assert again.json()["order_id"] == response.json()["order_id"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verify_session_not_found(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/payments/verify-session/ghost")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "session_not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verify_session_timeout_is_retryable(
        self, client: httpx.AsyncClient, fake_gateway: FakeGateway, create_draft: Any
    ) -> None:
        await create_draft("s1")
        fake_gateway.verify_delay = 5

        response = await client.post("/api/v1/payments/verify-session/s1")

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["retryable"] is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verify_by_transaction(
        self, client: httpx.AsyncClient, fake_gateway: FakeGateway, create_draft: Any
    ) -> None:
        await create_draft("s1")
        fake_gateway.verify_results["tx_s1"] = ResultStatus.PAID

        response = await client.get("/api/v1/payments/verify/fakepay/tx_s1")

        assert response.status_code == 200
        assert response.json()["session_id"] == "s1"
        assert response.json()["status"] == "paid"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_status_of_unknown_session(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/payments/status/ghost")

        assert response.status_code == 200
        assert response.json()["status"] == "not_found"


class TestAdminEndpoints:
    """Test suite for the admin routes."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_scheduler_status(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/admin/scheduler/status")

        assert response.status_code == 200
        body = response.json()
        assert body["enabled"] is False
        assert body["total_jobs"] == 3
        assert {job["name"] for job in body["jobs"]} == {
            "abandoned_cart_reminders",
            "cleanup_expired_carts",
            "pending_payment_check",
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_run_job(
        self,
        client: httpx.AsyncClient,
        fake_gateway: FakeGateway,
        create_draft: Any,
        count_orders: Any,
    ) -> None:
        await create_draft("s1", now=minutes_ago(15))
        fake_gateway.verify_results["tx_s1"] = ResultStatus.PAID

        response = await client.post("/api/v1/admin/scheduler/jobs/pending_payment_check/run")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["result"]["paid"] == 1
        assert response.json()["job"]["run_count"] == 1
        assert await count_orders() == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_run_unknown_job(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/admin/scheduler/jobs/nope/run")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "job_not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_abandoned_cart_endpoints(
        self,
        client: httpx.AsyncClient,
        create_draft: Any,
        create_event: Any,
    ) -> None:
        await create_event()
        await create_draft("s1", now=minutes_ago(61))
        await create_draft("old", now=minutes_ago(8 * 24 * 60))

        stats = await client.get("/api/v1/admin/abandoned-carts/stats")
        dry_run = await client.post(
            "/api/v1/admin/abandoned-carts/process", json={"dry_run": True}
        )
        cleanup = await client.post("/api/v1/admin/abandoned-carts/cleanup")
        processed = await client.post("/api/v1/admin/abandoned-carts/process")

        assert stats.json()["pending_reminders"] == 2
        assert stats.json()["expired_carts"] == 1
        assert dry_run.json()["processed"] == 2
        assert dry_run.json()["emails_sent"] == 0
        assert cleanup.json() == {"deleted": 1, "attendees_cleared": 0}
        assert processed.json()["emails_sent"] == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_key_enforced(
        self,
        test_settings: Settings,
        session_factory: Any,
        dispatcher: Any,
        email_sender: Any,
    ) -> None:
        settings = test_settings.model_copy(update={"admin_api_key": "s3cret"})
        container = build_container(settings, session_factory, dispatcher, email_sender)
        transport = httpx.ASGITransport(app=create_app(settings, container))

        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            missing = await client.get("/api/v1/admin/scheduler/status")
            wrong = await client.get(
                "/api/v1/admin/scheduler/status", headers={"X-API-Key": "nope"}
            )
            right = await client.get(
                "/api/v1/admin/scheduler/status", headers={"X-API-Key": "s3cret"}
            )

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert right.status_code == 200


class TestCashSessionEndpoints:
    """Test suite for the counter routes."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cash_drawer_flow(self, client: httpx.AsyncClient) -> None:
        opened = await client.post(
            "/api/v1/cash-sessions",
            json={"cashier_id": "c1", "ticket_counter_id": "north", "opening_cash": 10000},
        )
        assert opened.status_code == 201
        session_id = opened.json()["id"]

        conflict = await client.post(
            "/api/v1/cash-sessions", json={"cashier_id": "c1", "ticket_counter_id": "south"}
        )
        assert conflict.status_code == 409
        assert conflict.json()["error"]["code"] == "cash_session_conflict"

        active = await client.get("/api/v1/cash-sessions/active/c1")
        assert active.json()["id"] == session_id

        sale = await client.post(
            f"/api/v1/cash-sessions/{session_id}/sales",
            json={
                "total_amount": 5000,
                "payment_method": "cash",
                "items_ticket": [{"ticket_id": 1, "quantity": 2}],
            },
        )
        assert sale.status_code == 201
        assert sale.json()["payment_status"] == "paid"

        stats = await client.get(f"/api/v1/cash-sessions/{session_id}/stats")
        assert stats.json()["expected_cash"] == 15000

        closed = await client.post(
            f"/api/v1/cash-sessions/{session_id}/close", json={"closing_cash": 15200}
        )
        assert closed.json()["status"] == "closed"

        report = await client.get(f"/api/v1/cash-sessions/{session_id}/report")
        assert report.json()["discrepancy"] == 200
        assert report.json()["tickets_sold"] == 2

        gone = await client.get("/api/v1/cash-sessions/active/c1")
        assert gone.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_and_get_sessions(self, client: httpx.AsyncClient) -> None:
        north = await client.post(
            "/api/v1/cash-sessions", json={"cashier_id": "c1", "ticket_counter_id": "north"}
        )
        south = await client.post(
            "/api/v1/cash-sessions", json={"cashier_id": "c2", "ticket_counter_id": "south"}
        )
        await client.post(
            f"/api/v1/cash-sessions/{south.json()['id']}/close", json={"closing_cash": 0}
        )

        everything = await client.get("/api/v1/cash-sessions")
        open_only = await client.get("/api/v1/cash-sessions", params={"status": "open"})
        by_cashier = await client.get("/api/v1/cash-sessions", params={"cashier_id": "c2"})
        one = await client.get(f"/api/v1/cash-sessions/{north.json()['id']}")
        unknown = await client.get(
            "/api/v1/cash-sessions/00000000-0000-0000-0000-000000000000"
        )

        assert {s["id"] for s in everything.json()} == {north.json()["id"], south.json()["id"]}
        assert [s["id"] for s in open_only.json()] == [north.json()["id"]]
        assert [s["status"] for s in by_cashier.json()] == ["closed"]
        assert one.json()["ticket_counter_id"] == "north"
        assert unknown.status_code == 404
        assert unknown.json()["error"]["code"] == "cash_session_not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_session_id(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/cash-sessions/not-a-uuid/stats")
        assert response.status_code == 422


class TestMonitoringEndpoints:
    """Test suite for health and metrics."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["gateways"]["configured"]["stripe"] is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health/live")
        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "webhook_events_processed_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_root(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/")
        assert response.json()["service"] == "boxoffice-test"
