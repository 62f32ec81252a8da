"""
Integration tests for checkout, payment verification and downloads.
"""
import uuid

import pytest
from sqlalchemy import select

from database.models import Order, Product
from integrations.gateway_client import GatewayError, GatewayErrorType
from tests.conftest import PAYER_EMAIL, encode, payment_event, reload, sign, sign_payment


class TestCreateOrder:
    """Test suite for POST /orders."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_guest_checkout_creates_pending_order(
        self, client, session_factory, product, second_product
    ) -> None:
        response = await client.post(
            "/orders",
            json={
                "items": [
                    {"product_id": str(product.id), "quantity": 2},
                    {"product_id": str(second_product.id)},
                ],
                "guest_email": "  Buyer@Example.com ",
                "guest_name": "Asha Verma",
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["amount"] == 2 * 49900 + 29900
        assert data["currency"] == "INR"
        assert data["gateway_order_id"].startswith("order_test")
        assert data["key_id"] == "rzp_test_fake_key_id"
        assert data["order_number"].startswith("ORD-")

        order = await reload(session_factory, Order, uuid.UUID(data["order_id"]))
        assert order.payment_status == "pending"
        assert order.guest_email == "buyer@example.com"
        assert order.items[0]["price"] == 49900
        assert order.items[0]["quantity"] == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_prices_are_snapshotted(self, client, session_factory, product) -> None:
        response = await client.post(
            "/orders",
            json={"items": [{"product_id": str(product.id)}], "user_id": str(uuid.uuid4())},
        )
        async with session_factory() as session:
            stored = await session.get(Product, product.id)
            stored.price = 99900
            await session.commit()

        order = await reload(session_factory, Order, uuid.UUID(response.json()["order_id"]))
        assert order.total_amount == 49900
        assert order.guest_email is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_inactive_product_rejected(self, client, session_factory, product) -> None:
        async with session_factory() as session:
            stored = await session.get(Product, product.id)
            stored.is_active = False
            await session.commit()

        response = await client.post(
            "/orders",
            json={
                "items": [{"product_id": str(product.id)}],
                "guest_email": "buyer@example.com",
                "guest_name": "Asha",
            },
        )

        assert response.status_code == 400
        async with session_factory() as session:
            assert (await session.execute(select(Order))).first() is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"items": []},
            {"items": [{"product_id": str(uuid.uuid4()), "quantity": 0}], "user_id": str(uuid.uuid4())},
            {"items": [{"product_id": str(uuid.uuid4())}], "guest_email": "buyer@example.com"},
            {"items": [{"product_id": str(uuid.uuid4())}], "guest_email": "nope", "guest_name": "A"},
        ],
    )
    async def test_invalid_requests_rejected(self, client, payload) -> None:
        response = await client.post("/orders", json=payload)
        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_product_rejected(self, client) -> None:
        response = await client.post(
            "/orders",
            json={"items": [{"product_id": str(uuid.uuid4())}], "user_id": str(uuid.uuid4())},
        )
        assert response.status_code == 400


class TestVerifyPayment:
    """Test suite for POST /orders/verify-payment."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_valid_signature_completes_order(
        self, client, session_factory, email_sender, product, make_order
    ) -> None:
        order = await make_order([product])

        response = await client.post(
            "/orders/verify-payment",
            json={
                "razorpay_order_id": order.gateway_order_id,
                "razorpay_payment_id": "pay_1",
                "razorpay_signature": sign_payment(order.gateway_order_id, "pay_1"),
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["payment_status"] == "completed"
        stored = await reload(session_factory, Order, order.id)
        assert stored.gateway_signature == sign_payment(order.gateway_order_id, "pay_1")
        assert stored.email_sent is True
        assert (await reload(session_factory, Product, product.id)).sales_count == 1
        assert len(email_sender.sent) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verify_then_webhook_counts_once(
        self, client, session_factory, product, make_order
    ) -> None:
        order = await make_order([product])
        await client.post(
            "/orders/verify-payment",
            json={
                "razorpay_order_id": order.gateway_order_id,
                "razorpay_payment_id": "pay_1",
                "razorpay_signature": sign_payment(order.gateway_order_id, "pay_1"),
            },
        )
        body = encode(payment_event("payment.captured", order.gateway_order_id, "pay_1"))
        await client.post(
            "/webhooks/razorpay", content=body, headers={"X-Razorpay-Signature": sign(body)}
        )

        assert (await reload(session_factory, Product, product.id)).sales_count == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_registered_buyer_confirmed_at_payer_email(
        self, client, session_factory, email_sender, product, make_order
    ) -> None:
        order = await make_order([product], user_id=uuid.uuid4())

        response = await client.post(
            "/orders/verify-payment",
            json={
                "razorpay_order_id": order.gateway_order_id,
                "razorpay_payment_id": "pay_1",
                "razorpay_signature": sign_payment(order.gateway_order_id, "pay_1"),
            },
        )
        body = encode(payment_event("payment.captured", order.gateway_order_id, "pay_1"))
        await client.post(
            "/webhooks/razorpay", content=body, headers={"X-Razorpay-Signature": sign(body)}
        )

        assert response.status_code == 200
        assert [sent["to"] for sent in email_sender.sent] == [PAYER_EMAIL]
        stored = await reload(session_factory, Order, order.id)
        assert stored.email_sent is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payer_lookup_failure_does_not_fail_confirmation(
        self, client, services, session_factory, email_sender, product, make_order, mocker
    ) -> None:
        mocker.patch.object(
            services.gateway,
            "fetch_payment",
            side_effect=GatewayError("unavailable", GatewayErrorType.TRANSIENT),
        )
        order = await make_order([product], user_id=uuid.uuid4())

        response = await client.post(
            "/orders/verify-payment",
            json={
                "razorpay_order_id": order.gateway_order_id,
                "razorpay_payment_id": "pay_1",
                "razorpay_signature": sign_payment(order.gateway_order_id, "pay_1"),
            },
        )

        assert response.status_code == 200
        assert response.json()["payment_status"] == "completed"
        assert email_sender.sent == []
        stored = await reload(session_factory, Order, order.id)
        assert stored.email_sent is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature_leaves_order_untouched(
        self, client, session_factory, product, make_order
    ) -> None:
        order = await make_order([product])

        response = await client.post(
            "/orders/verify-payment",
            json={
                "razorpay_order_id": order.gateway_order_id,
                "razorpay_payment_id": "pay_1",
                "razorpay_signature": "f" * 64,
            },
        )

        assert response.status_code == 400
        stored = await reload(session_factory, Order, order.id)
        assert stored.payment_status == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order(self, client) -> None:
        response = await client.post(
            "/orders/verify-payment",
            json={
                "razorpay_order_id": "order_missing",
                "razorpay_payment_id": "pay_1",
                "razorpay_signature": sign_payment("order_missing", "pay_1"),
            },
        )
        assert response.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refunded_order_conflict(self, client, product, make_order) -> None:
        order = await make_order([product], payment_status="refunded")

        response = await client.post(
            "/orders/verify-payment",
            json={
                "razorpay_order_id": order.gateway_order_id,
                "razorpay_payment_id": "pay_2",
                "razorpay_signature": sign_payment(order.gateway_order_id, "pay_2"),
            },
        )
        assert response.status_code == 409


class TestDownload:
    """Test suite for GET /orders/{order_id}/download/{product_id}."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_guest_download(self, client, product, make_order) -> None:
        order = await make_order([product], payment_status="completed")

        response = await client.get(
            f"/orders/{order.id}/download/{product.id}",
            params={"guest_email": "Buyer@Example.com"},
        )

        assert response.status_code == 200
        data = response.json()
        assert "pdfs/marketing.pdf" in data["download_url"]
        assert data["password"] == "MKT-2024"
        assert data["expires_in_seconds"] == 1800

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_registered_user_download(self, client, product, make_order) -> None:
        user_id = uuid.uuid4()
        order = await make_order([product], payment_status="completed", user_id=user_id)

        response = await client.get(
            f"/orders/{order.id}/download/{product.id}", params={"user_id": str(user_id)}
        )
        assert response.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_wrong_buyer_forbidden(self, client, product, make_order) -> None:
        order = await make_order([product], payment_status="completed")

        response = await client.get(
            f"/orders/{order.id}/download/{product.id}",
            params={"guest_email": "someone@else.com"},
        )
        assert response.status_code == 403

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unpaid_order_not_downloadable(self, client, product, make_order) -> None:
        order = await make_order([product])

        response = await client.get(
            f"/orders/{order.id}/download/{product.id}",
            params={"guest_email": "buyer@example.com"},
        )
        assert response.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_product_not_in_order(self, client, product, second_product, make_order) -> None:
        order = await make_order([product], payment_status="completed")

        response = await client.get(
            f"/orders/{order.id}/download/{second_product.id}",
            params={"guest_email": "buyer@example.com"},
        )
        assert response.status_code == 404


class TestGetOrder:
    """Test suite for GET /orders/{order_id}."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_guest_sees_own_order(self, client, product, make_order) -> None:
        order = await make_order([product], quantities=[2])

        response = await client.get(
            f"/orders/{order.id}", params={"guest_email": " BUYER@example.com"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["order_number"] == order.order_number
        assert data["payment_status"] == "pending"
        assert data["total_amount"] == 2 * 49900
        assert data["items"][0]["product_id"] == str(product.id)
        assert data["items"][0]["quantity"] == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_registered_buyer_sees_own_order(self, client, product, make_order) -> None:
        user_id = uuid.uuid4()
        order = await make_order([product], payment_status="completed", user_id=user_id)

        response = await client.get(f"/orders/{order.id}", params={"user_id": str(user_id)})

        assert response.status_code == 200
        assert response.json()["payment_status"] == "completed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "params",
        [{}, {"guest_email": "someone@else.com"}, {"user_id": str(uuid.uuid4())}],
    )
    async def test_other_callers_forbidden(self, client, product, make_order, params) -> None:
        order = await make_order([product])

        response = await client.get(f"/orders/{order.id}", params=params)
        assert response.status_code == 403

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order(self, client) -> None:
        response = await client.get(
            f"/orders/{uuid.uuid4()}", params={"guest_email": "buyer@example.com"}
        )
        assert response.status_code == 404
