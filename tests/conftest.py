import os
import tempfile
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Set test environment variables before the settings module is imported
os.environ.setdefault("DATABASE_PATH", os.path.join(tempfile.gettempdir(), "marketplace-test.db"))
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("DEMO_MODE", "true")

from marketplace.config import PayPalConfig, UniPayConfig, WalletConfig  # noqa: E402
from marketplace.db.init_db import build_engine, create_tables, get_db  # noqa: E402
from marketplace.db.models import AgentModel  # noqa: E402
from marketplace.exceptions import EmailDeliveryError  # noqa: E402
from marketplace.models.payments import CustomerInfo, PaymentMetadata, PaymentSucceededEvent  # noqa: E402
from marketplace.providers import PayPalProvider, UniPayProvider, WalletProvider  # noqa: E402
from marketplace.services.order_processor import OrderProcessor  # noqa: E402
from marketplace.services.webhook_router import WebhookRouter  # noqa: E402

API_URL = "http://api.test"
ADMIN_KEY = "test-admin-key"


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(str(tmp_path / "marketplace.db"))
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def agents(db):
    """Two catalog agents: one with an embedded JSON template, one without."""
    db.add_all([
        AgentModel(
            id="agent_1",
            title="Sales Agent",
            description="Qualifies leads",
            category="Sales",
            tags=["crm"],
            features=["Lead scoring"],
            template='{"nodes": [{"name": "start"}]}',
            price=Decimal("25.99"),
        ),
        AgentModel(
            id="agent_2",
            title="Support Agent",
            description="Answers tickets",
            category="Support",
            tags=[],
            features=[],
            price=Decimal("10.00"),
        ),
    ])
    await db.commit()


# ============================================================================
# Email
# ============================================================================

class FakeEmailSender:
    """Records deliveries; raises for agent names listed in fail_for."""

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.sent: List[Dict[str, Any]] = []

    async def send_agent_purchase_email(
        self,
        to_email: str,
        agent_name: str,
        download_url: str,
        order_id: str,
        customer_name: Optional[str] = None,
        price: Optional[str] = None,
        template_content: Optional[str] = None,
        valid_days: int = 30
    ) -> str:
        if agent_name in self.fail_for:
            raise EmailDeliveryError(f"Email send failed for {agent_name}")
        self.sent.append({
            "to_email": to_email,
            "agent_name": agent_name,
            "download_url": download_url,
            "order_id": order_id,
            "template_content": template_content,
            "valid_days": valid_days,
        })
        return f"msg_{len(self.sent)}"


@pytest.fixture
def email_sender():
    return FakeEmailSender()


# ============================================================================
# Provider stubs
# ============================================================================

class UniPayStub:
    """httpx.MockTransport handler emulating the UniPay v3 API."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.auth_calls = 0
        self.order_count = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/auth":
            self.auth_calls += 1
            return httpx.Response(200, json={"access_token": f"unipay-token-{self.auth_calls}", "expires_in": 3600})
        if path == "/api/order/create":
            self.order_count += 1
            return httpx.Response(200, json={
                "OrderHashID": f"hash_{self.order_count}",
                "PaymentUrl": f"https://pay.unipay.test/checkout/{self.order_count}",
            })
        if path in ("/api/order/confirm", "/api/order/refund"):
            return httpx.Response(200, json={"Status": "OK"})
        return httpx.Response(404, json={"message": "not found"})

    def last(self, path: str) -> httpx.Request:
        return [r for r in self.requests if r.url.path == path][-1]


class PayPalStub:
    """httpx.MockTransport handler emulating PayPal OAuth, Orders v2 and refunds."""

    def __init__(self, capture_status: str = "COMPLETED"):
        self.requests: List[httpx.Request] = []
        self.capture_status = capture_status
        self.capture_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "paypal-token", "expires_in": 32400})
        if path == "/v2/checkout/orders":
            return httpx.Response(201, json={
                "id": "PP-ORDER-1",
                "status": "CREATED",
                "links": [{"rel": "approve", "href": "https://paypal.test/checkoutnow?token=PP-ORDER-1"}],
            })
        if path.endswith("/capture"):
            self.capture_calls += 1
            return httpx.Response(201, json={
                "id": "PP-ORDER-1",
                "status": self.capture_status,
                "purchase_units": [{
                    "payments": {"captures": [{"id": "CAPTURE-1", "status": self.capture_status}]}
                }],
            })
        if path.startswith("/v2/payments/captures/"):
            return httpx.Response(201, json={
                "id": "REFUND-1",
                "status": "COMPLETED",
                "amount": {"value": "25.99", "currency_code": "USD"},
            })
        return httpx.Response(404, json={"message": "not found"})


def unipay_config(webhook_secret: Optional[str] = None) -> UniPayConfig:
    return UniPayConfig(
        merchant_id="merchant_test",
        api_key="key_test",
        base_url="https://unipay.test",
        environment="test",
        webhook_secret=webhook_secret,
        success_url=f"{API_URL}/api/payments/unipay/success",
        cancel_url=f"{API_URL}/api/payments/unipay/cancel",
        callback_url=f"{API_URL}/api/payments/unipay/webhook",
        timeout_seconds=5.0,
    )


def paypal_config() -> PayPalConfig:
    return PayPalConfig(
        client_id="client_test",
        client_secret="secret_test",
        base_url="https://paypal.test",
        environment="sandbox",
        webhook_id=None,
        brand_name="Test Marketplace",
        return_url=f"{API_URL}/api/payments/paypal/success",
        cancel_url=f"{API_URL}/api/payments/paypal/cancel",
        timeout_seconds=5.0,
    )


@pytest.fixture
def unipay_stub():
    return UniPayStub()


@pytest.fixture
def paypal_stub():
    return PayPalStub()


@pytest.fixture
async def unipay(unipay_stub):
    client = httpx.AsyncClient(base_url="https://unipay.test", transport=httpx.MockTransport(unipay_stub))
    yield UniPayProvider(unipay_config(), client=client)
    await client.aclose()


@pytest.fixture
async def paypal(paypal_stub):
    client = httpx.AsyncClient(base_url="https://paypal.test", transport=httpx.MockTransport(paypal_stub))
    yield PayPalProvider(paypal_config(), client=client)
    await client.aclose()


@pytest.fixture
async def providers(unipay, paypal):
    wallet_config = WalletConfig(environment="test", webhook_secret=None)
    google = WalletProvider("google", wallet_config)
    apple = WalletProvider("apple", wallet_config)
    yield {p.name: p for p in (unipay, paypal, google, apple)}
    await google.close()
    await apple.close()


@pytest.fixture
def processor(email_sender, session_factory):
    return OrderProcessor(email_sender, api_url=API_URL, session_factory=session_factory)


@pytest.fixture
def webhook_router(providers, processor):
    return WebhookRouter(providers, processor)


# ============================================================================
# Application
# ============================================================================

@pytest.fixture
async def app(session_factory, providers, processor, webhook_router, monkeypatch):
    from marketplace.config import settings
    from marketplace.main import create_app

    monkeypatch.setattr(settings, "admin_key", ADMIN_KEY)

    app = create_app()
    for provider in app.state.providers.values():
        await provider.close()
    await app.state.email_service.close()

    app.state.providers = providers
    app.state.processor = processor
    app.state.webhook_router = webhook_router

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


# ============================================================================
# Helpers
# ============================================================================

def make_event(
    order_id: str = "order_test_1",
    email: Optional[str] = "buyer@example.com",
    items: Optional[List[Dict[str, Any]]] = None,
    user_id: Optional[str] = "user_1",
    skip_email_sending: bool = False,
    vat_info: Optional[Dict[str, Any]] = None,
    provider: str = "unipay"
) -> PaymentSucceededEvent:
    items = items if items is not None else [{"id": "agent_1", "title": "Sales Agent", "price": "25.99"}]
    total = sum(Decimal(str(item.get("price", "0"))) for item in items)
    return PaymentSucceededEvent(
        external_payment_id="pay_test_1",
        amount=total,
        currency="USD",
        items=items,
        customer=CustomerInfo(email=email, user_id=user_id, name="Test Buyer"),
        metadata=PaymentMetadata(
            order_id=order_id,
            skip_email_sending=skip_email_sending,
            provider_session_id="hash_test_1",
        ),
        provider=provider,
        payment_method="card",
        vat_info=vat_info,
    )
