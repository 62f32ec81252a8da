"""
Integration tests for the webhook audit API.
"""
import uuid

import pytest
import pytest_asyncio

from core.events import EventFields
from tests.conftest import ADMIN_HEADERS


@pytest_asyncio.fixture
async def seeded(services):
    """A handful of deliveries with mixed outcomes."""
    store = services.event_store
    ids = {}
    ids["captured"] = await store.append(
        event_id="payment.captured:pay_A1",
        event_type="payment.captured",
        payload={"event": "payment.captured"},
        signature="sig",
        status="processed",
        fields=EventFields(payment_id="pay_A1", order_id="order_A1", email="Asha@Example.com"),
    )
    ids["duplicate"] = await store.append(
        event_id="payment.captured:pay_A1",
        event_type="payment.captured",
        payload={"event": "payment.captured"},
        signature="sig",
        status="duplicate",
        fields=EventFields(payment_id="pay_A1", order_id="order_A1"),
    )
    ids["failed"] = await store.append(
        event_id="payment.failed:pay_B2",
        event_type="payment.failed",
        payload={"event": "payment.failed"},
        signature="sig",
        status="failed",
        error_message="order not found: order_B2",
        fields=EventFields(payment_id="pay_B2", order_id="order_B2"),
    )
    ids["refund"] = await store.append(
        event_id="refund.created:rfnd_C3",
        event_type="refund.created",
        payload={"event": "refund.created"},
        signature="sig",
        status="processed",
        fields=EventFields(payment_id="pay_A1", refund_id="rfnd_C3"),
    )
    return ids


class TestAdminAuth:
    """API key enforcement."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_key_rejected(self, client) -> None:
        response = await client.get("/admin/webhook-events")
        assert response.status_code == 401

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_wrong_key_rejected(self, client) -> None:
        response = await client.get("/admin/webhook-events", headers={"X-API-Key": "guess"})
        assert response.status_code == 401

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unconfigured_key_disables_admin(self, client, mocker) -> None:
        settings = mocker.MagicMock(admin_api_key=None)
        mocker.patch("api.dependencies.get_settings", return_value=settings)

        response = await client.get("/admin/webhook-events", headers=ADMIN_HEADERS)
        assert response.status_code == 503


class TestWebhookEventListing:
    """GET /admin/webhook-events."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_lists_newest_first(self, client, seeded) -> None:
        response = await client.get("/admin/webhook-events", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["pagination"] == {"page": 1, "limit": 20, "total": 4, "pages": 1}
        assert [event["id"] for event in data["events"]] == [
            str(seeded["refund"]),
            str(seeded["failed"]),
            str(seeded["duplicate"]),
            str(seeded["captured"]),
        ]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_filters_by_status_and_type(self, client, seeded) -> None:
        response = await client.get(
            "/admin/webhook-events",
            params={"status": "processed", "event_type": "payment.captured"},
            headers=ADMIN_HEADERS,
        )

        events = response.json()["events"]
        assert [event["id"] for event in events] == [str(seeded["captured"])]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_status_filter(self, client) -> None:
        response = await client.get(
            "/admin/webhook-events", params={"status": "weird"}, headers=ADMIN_HEADERS
        )
        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "term,expected",
        [
            ("pay_b2", {"failed"}),
            ("RFND_C3", {"refund"}),
            ("asha@example", {"captured"}),
            ("order_A1", {"captured", "duplicate"}),
            ("100%", set()),
        ],
    )
    async def test_search(self, client, seeded, term, expected) -> None:
        response = await client.get(
            "/admin/webhook-events", params={"search": term}, headers=ADMIN_HEADERS
        )

        found = {event["id"] for event in response.json()["events"]}
        assert found == {str(seeded[name]) for name in expected}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pagination(self, client, seeded) -> None:
        response = await client.get(
            "/admin/webhook-events", params={"page": 2, "limit": 3}, headers=ADMIN_HEADERS
        )

        data = response.json()
        assert data["pagination"] == {"page": 2, "limit": 3, "total": 4, "pages": 2}
        assert [event["id"] for event in data["events"]] == [str(seeded["captured"])]


class TestWebhookEventDetail:
    """Single-row and per-payment lookups."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_by_id(self, client, seeded) -> None:
        response = await client.get(
            f"/admin/webhook-events/{seeded['failed']}", headers=ADMIN_HEADERS
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "failed"
        assert data["error_message"] == "order not found: order_B2"
        assert data["payment_id"] == "pay_B2"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_id(self, client) -> None:
        response = await client.get(
            f"/admin/webhook-events/{uuid.uuid4()}", headers=ADMIN_HEADERS
        )
        assert response.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_by_payment(self, client, seeded) -> None:
        response = await client.get(
            "/admin/webhook-events/payment/pay_A1", headers=ADMIN_HEADERS
        )

        assert response.status_code == 200
        assert {event["id"] for event in response.json()} == {
            str(seeded["captured"]),
            str(seeded["duplicate"]),
            str(seeded["refund"]),
        }


class TestWebhookEventStats:
    """GET /admin/webhook-events/stats."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stats(self, client, seeded) -> None:
        response = await client.get("/admin/webhook-events/stats", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["overall"]["total"] == 4
        assert data["overall"]["successful"] == 2
        assert data["overall"]["failed"] == 1
        assert data["overall"]["duplicate"] == 1
        assert data["overall"]["success_rate"] == 50.0
        assert data["recent_24h"]["total"] == 4
        assert data["event_type_distribution"][0] == {
            "event_type": "payment.captured",
            "count": 2,
        }
        assert len(data["recent_events"]) == 4

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stats_empty(self, client) -> None:
        response = await client.get("/admin/webhook-events/stats", headers=ADMIN_HEADERS)

        data = response.json()
        assert data["overall"]["total"] == 0
        assert data["overall"]["success_rate"] == 0.0
        assert data["recent_events"] == []
