"""
Pytest configuration and fixtures.
"""
import asyncio
import hashlib
import hmac
import json
import os
import uuid
from typing import Any, AsyncGenerator, Dict, List, Optional

# Settings are read once and cached, so the environment must be in place
# before anything from the application is imported.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_fake_key_id"
os.environ["RAZORPAY_KEY_SECRET"] = "test_key_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "test_webhook_secret"
os.environ["RAZORPAY_API_BASE_URL"] = "https://api.razorpay.test/v1"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["IDEMPOTENCY_BACKEND"] = "memory"
os.environ["APP_ENV"] = "test"
os.environ["S3_BUCKET_NAME"] = "test-bucket"

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from api.dependencies import Services, get_services
from api.main import app
from core.idempotency import InMemoryIdempotencyStore
from database.connection import get_db
from database.models import Base, Order, Product
from integrations.gateway_client import RazorpayClient

WEBHOOK_SECRET = "test_webhook_secret"
KEY_SECRET = "test_key_secret"
ADMIN_HEADERS = {"X-API-Key": "test-admin-key"}
PAYER_EMAIL = "member@example.com"


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O beyond SQLite")
    config.addinivalue_line("markers", "integration: tests through the HTTP API")
    config.addinivalue_line("markers", "race: concurrent delivery tests")


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Webhook signature over raw bytes."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def sign_payment(gateway_order_id: str, gateway_payment_id: str) -> str:
    """Checkout widget signature."""
    message = f"{gateway_order_id}|{gateway_payment_id}".encode()
    return hmac.new(KEY_SECRET.encode(), message, hashlib.sha256).hexdigest()


def payment_event(
    event: str,
    gateway_order_id: Optional[str],
    payment_id: str,
    amount: int = 49900,
    email: str = "buyer@example.com",
) -> Dict[str, Any]:
    entity: Dict[str, Any] = {
        "id": payment_id,
        "amount": amount,
        "currency": "INR",
        "status": event.split(".")[-1],
        "method": "upi",
        "email": email,
        "contact": "+919999999999",
    }
    if gateway_order_id is not None:
        entity["order_id"] = gateway_order_id
    return {"entity": "event", "event": event, "payload": {"payment": {"entity": entity}}}


def refund_event(refund_id: str, payment_id: str, amount: int = 49900) -> Dict[str, Any]:
    return {
        "entity": "event",
        "event": "refund.created",
        "payload": {
            "refund": {
                "entity": {
                    "id": refund_id,
                    "payment_id": payment_id,
                    "amount": amount,
                    "currency": "INR",
                }
            }
        },
    }


def encode(event: Dict[str, Any]) -> bytes:
    return json.dumps(event).encode()


class FakeEmailSender:
    """Records sends; can be told to fail or to hang."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, str]] = []
        self.error: Optional[Exception] = None
        self.delay: float = 0

    async def send(self, to: str, subject: str, html: str) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.sent.append({"to": to, "subject": subject, "html": html})
        return f"msg_{len(self.sent)}"


class FakeLinkSigner:
    async def signed_url(self, key_or_url: str, expires_in_seconds: int = 1800) -> str:
        if key_or_url.startswith("http"):
            return key_or_url
        return f"https://test-bucket.s3.test/{key_or_url}?X-Amz-Expires={expires_in_seconds}"


def gateway_transport() -> httpx.MockTransport:
    """Mock Razorpay API: creates orders (echoing amount and currency) and returns payments."""
    counter = {"orders": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path.endswith("/orders"):
            counter["orders"] += 1
            data = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "id": f"order_test{counter['orders']:04d}",
                    "entity": "order",
                    "amount": data["amount"],
                    "currency": data["currency"],
                    "receipt": data["receipt"],
                    "status": "created",
                },
            )
        if request.method == "GET" and "/payments/" in request.url.path:
            payment_id = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(
                200,
                json={
                    "id": payment_id,
                    "entity": "payment",
                    "status": "captured",
                    "email": PAYER_EMAIL,
                },
            )
        return httpx.Response(404, json={"error": {"description": "not found"}})

    return httpx.MockTransport(handler)


@pytest_asyncio.fixture
async def session_factory(tmp_path: Any) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Isolated file-backed SQLite database per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def link_signer() -> FakeLinkSigner:
    return FakeLinkSigner()


@pytest_asyncio.fixture
async def services(
    session_factory: async_sessionmaker[AsyncSession],
    email_sender: FakeEmailSender,
    link_signer: FakeLinkSigner,
) -> AsyncGenerator[Services, Any]:
    gateway = RazorpayClient(
        http_client=httpx.AsyncClient(
            transport=gateway_transport(), base_url="https://api.razorpay.test/v1"
        )
    )
    wired = Services(
        session_factory=session_factory,
        idempotency_store=InMemoryIdempotencyStore(),
        email_sender=email_sender,
        link_signer=link_signer,
        gateway=gateway,
    )
    yield wired
    await wired.sweeper.stop()
    await gateway.http_client.aclose()


@pytest_asyncio.fixture
async def client(
    services: Services, session_factory: async_sessionmaker[AsyncSession]
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client against the app with test services wired in."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_services] = lambda: services
    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def product(session_factory: async_sessionmaker[AsyncSession]) -> Product:
    async with session_factory() as session:
        item = Product(
            name="Desi Marketing Prompts",
            slug="desi-marketing-prompts",
            price=49900,
            pdf_key="pdfs/marketing.pdf",
            pdf_password="MKT-2024",
        )
        session.add(item)
        await session.commit()
        return item


@pytest_asyncio.fixture
async def second_product(session_factory: async_sessionmaker[AsyncSession]) -> Product:
    async with session_factory() as session:
        item = Product(
            name="Startup Founder Prompts",
            slug="startup-founder-prompts",
            price=29900,
            pdf_key="https://cdn.example.com/founder.pdf",
            pdf_password="FND-2024",
        )
        session.add(item)
        await session.commit()
        return item


@pytest.fixture
def make_order(session_factory: async_sessionmaker[AsyncSession]):
    """Factory for persisted orders."""

    async def _make(
        products: List[Product],
        quantities: Optional[List[int]] = None,
        gateway_order_id: Optional[str] = None,
        payment_status: str = "pending",
        is_synthetic: bool = False,
        guest_email: Optional[str] = "buyer@example.com",
        user_id: Optional[uuid.UUID] = None,
        gateway_payment_id: Optional[str] = None,
    ) -> Order:
        quantities = quantities or [1] * len(products)
        items = [
            {"product_id": str(p.id), "name": p.name, "price": p.price, "quantity": q}
            for p, q in zip(products, quantities)
        ]
        order = Order(
            user_id=user_id,
            guest_email=guest_email if user_id is None else None,
            guest_name="Asha Verma" if user_id is None else None,
            items=items,
            total_amount=sum(i["price"] * i["quantity"] for i in items),
            payment_status=payment_status,
            gateway_order_id=gateway_order_id or f"order_{uuid.uuid4().hex[:14]}",
            gateway_payment_id=gateway_payment_id,
            is_synthetic=is_synthetic,
        )
        async with session_factory() as session:
            session.add(order)
            await session.commit()
        return order

    return _make


async def reload(session_factory: async_sessionmaker[AsyncSession], model: Any, pk: Any) -> Any:
    async with session_factory() as session:
        return await session.get(model, pk)
