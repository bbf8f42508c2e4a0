import asyncio
import base64
import hashlib
import hmac
import json
import time
from decimal import Decimal

import httpx
import pytest

from marketplace.exceptions import InvalidRequestError, ProviderError
from marketplace.models import CustomerInfo, OrderItem, PaymentMetadata
from marketplace.providers import UniPayProvider
from marketplace.services import session_registry

from conftest import unipay_config

ITEMS = [OrderItem(item_id="agent_1", title="Sales Agent", unit_price=Decimal("25.99"))]


class TestBearerToken:

    async def test_concurrent_callers_share_one_authentication(self, unipay, unipay_stub):
        tokens = await asyncio.gather(*(unipay.get_access_token() for _ in range(5)))

        assert unipay_stub.auth_calls == 1
        assert set(tokens) == {"unipay-token-1"}

    async def test_token_reused_until_refresh_margin(self, unipay, unipay_stub):
        await unipay.get_access_token()
        await unipay.get_access_token()
        assert unipay_stub.auth_calls == 1

        # Within five minutes of expiry the token is refreshed
        unipay._token_expires_at = time.monotonic() + 60
        assert await unipay.get_access_token() == "unipay-token-2"
        assert unipay_stub.auth_calls == 2

    async def test_failed_authentication_raises_provider_error(self):
        def handler(request):
            return httpx.Response(401, json={"message": "bad credentials"})

        async with httpx.AsyncClient(base_url="https://unipay.test", transport=httpx.MockTransport(handler)) as client:
            provider = UniPayProvider(unipay_config(), client=client)
            with pytest.raises(ProviderError) as exc:
                await provider.get_access_token()

        assert exc.value.status_code == 502
        assert exc.value.details["upstream_status"] == 401
        assert provider._access_token is None

    async def test_transport_error_raises_provider_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(base_url="https://unipay.test", transport=httpx.MockTransport(handler)) as client:
            provider = UniPayProvider(unipay_config(), client=client)
            with pytest.raises(ProviderError):
                await provider.get_access_token()


class TestUniPay:

    async def test_create_session_converts_to_gel(self, db, unipay, unipay_stub):
        result = await unipay.create_session(
            db,
            Decimal("25.99"),
            "usd",
            ITEMS,
            CustomerInfo(email="buyer@example.com", country="US"),
            PaymentMetadata()
        )

        assert result.provider_session_id == "hash_1"
        assert result.normalized_amount == Decimal("68.87")
        assert result.normalized_currency == "GEL"
        assert result.original_amount == Decimal("25.99")
        assert result.payment_url == "https://pay.unipay.test/checkout/1"
        assert result.internal_order_id.startswith("order_")

        payload = json.loads(unipay_stub.last("/api/order/create").content)
        assert payload["OrderCurrency"] == "GEL"
        assert payload["OrderPrice"] == 68.87
        assert payload["MerchantUser"] == "buyer@example.com"
        success_url = base64.b64decode(payload["SuccessRedirectUrl"]).decode()
        assert f"order_id={result.internal_order_id}" in success_url

        entry = await session_registry.require_session(db, "hash_1")
        assert entry.internal_order_id == result.internal_order_id
        assert entry.session_metadata["provider_session_id"] == "hash_1"

    async def test_create_session_applies_vat_before_conversion(self, db, unipay):
        result = await unipay.create_session(
            db,
            Decimal("25.99"),
            "USD",
            ITEMS,
            CustomerInfo(email="buyer@example.com", country="DE"),
            PaymentMetadata(order_id="order_de")
        )

        # 25.99 + 4.94 VAT = 30.93 USD -> 81.96 GEL
        assert result.internal_order_id == "order_de"
        assert result.vat_info["vat_amount"] == "4.94"
        assert result.normalized_amount == Decimal("81.96")

    async def test_confirm_moves_session_to_confirmed(self, db, unipay):
        await unipay.create_session(db, Decimal("10"), "USD", ITEMS, CustomerInfo(), PaymentMetadata())

        result = await unipay.confirm_or_capture(db, "hash_1", amount=Decimal("26.50"))
        entry = await session_registry.require_session(db, "hash_1")

        assert result.status == "confirmed"
        assert entry.status == "confirmed"

    async def test_refund(self, db, unipay, unipay_stub):
        await unipay.create_session(db, Decimal("10"), "USD", ITEMS, CustomerInfo(), PaymentMetadata())

        refund = await unipay.create_refund(db, "hash_1", reason="customer_request")

        assert refund.refund_id == "unipay_hash_1"
        assert refund.amount == Decimal("26.50")
        assert refund.currency == "GEL"
        payload = json.loads(unipay_stub.last("/api/order/refund").content)
        assert payload["Reason"] == "customer_request"

    async def test_signature_verification(self):
        provider = UniPayProvider(unipay_config(webhook_secret="whsec_test"))
        body = b'{"OrderHashID": "hash_1", "Status": "Success"}'
        signature = hmac.new(b"whsec_test", body, hashlib.sha256).hexdigest()

        assert await provider.verify_webhook_signature(body, {"x-unipay-signature": signature}) is True
        assert await provider.verify_webhook_signature(body, {"X-UniPay-Signature": "0" * 64}) is False
        assert await provider.verify_webhook_signature(body, {}) is False
        await provider.close()

    async def test_unsigned_webhook_accepted_without_secret(self, unipay):
        assert await unipay.verify_webhook_signature(b"{}", {}) is True


class TestPayPal:

    async def test_create_order_with_item_breakdown(self, db, paypal, paypal_stub):
        result = await paypal.create_session(
            db, Decimal("25.99"), "USD", ITEMS, CustomerInfo(), PaymentMetadata(order_id="order_pp")
        )

        assert result.provider_session_id == "PP-ORDER-1"
        assert result.payment_url == "https://paypal.test/checkoutnow?token=PP-ORDER-1"

        create = [r for r in paypal_stub.requests if r.url.path == "/v2/checkout/orders"][0]
        unit = json.loads(create.content)["purchase_units"][0]
        assert create.headers["PayPal-Request-Id"] == "order_pp"
        assert unit["amount"] == {
            "currency_code": "USD",
            "value": "25.99",
            "breakdown": {"item_total": {"currency_code": "USD", "value": "25.99"}},
        }
        assert unit["items"][0]["sku"] == "agent_1"

    async def test_unsupported_currency(self, db, paypal):
        with pytest.raises(InvalidRequestError):
            await paypal.create_session(db, Decimal("10"), "GEL", ITEMS, CustomerInfo(), PaymentMetadata())

    async def test_capture_once(self, db, paypal, paypal_stub):
        await paypal.create_session(db, Decimal("25.99"), "USD", ITEMS, CustomerInfo(), PaymentMetadata())

        first = await paypal.confirm_or_capture(db, "PP-ORDER-1")
        second = await paypal.confirm_or_capture(db, "PP-ORDER-1")
        entry = await session_registry.require_session(db, "PP-ORDER-1")

        assert first.status == "success"
        assert first.provider_reference == "CAPTURE-1"
        assert second.status == "success"
        assert paypal_stub.capture_calls == 1
        assert entry.provider_reference == "CAPTURE-1"

    async def test_pending_capture_is_confirmed(self, db, paypal, paypal_stub):
        paypal_stub.capture_status = "PENDING"
        await paypal.create_session(db, Decimal("25.99"), "USD", ITEMS, CustomerInfo(), PaymentMetadata())

        result = await paypal.confirm_or_capture(db, "PP-ORDER-1")

        assert result.success is False
        assert result.status == "confirmed"

    @pytest.mark.parametrize("capture_status,expected", [
        ("DECLINED_BY_RISK", "confirmed"),
        ("DENIED", "failed"),
    ])
    async def test_capture_status_mapping(self, db, paypal, paypal_stub, capture_status, expected):
        paypal_stub.capture_status = capture_status
        await paypal.create_session(db, Decimal("25.99"), "USD", ITEMS, CustomerInfo(), PaymentMetadata())

        result = await paypal.confirm_or_capture(db, "PP-ORDER-1")
        entry = await session_registry.require_session(db, "PP-ORDER-1")

        assert result.status == expected
        assert entry.status == expected
        assert entry.provider_status == capture_status

    async def test_refund_uses_capture_id(self, db, paypal, paypal_stub):
        await paypal.create_session(db, Decimal("25.99"), "USD", ITEMS, CustomerInfo(), PaymentMetadata())
        await paypal.confirm_or_capture(db, "PP-ORDER-1")

        refund = await paypal.create_refund(db, "PP-ORDER-1", reason="customer_request")

        assert refund.refund_id == "REFUND-1"
        assert refund.amount == Decimal("25.99")
        assert paypal_stub.requests[-1].url.path == "/v2/payments/captures/CAPTURE-1/refund"

    async def test_refund_without_capture(self, db, paypal):
        await paypal.create_session(db, Decimal("25.99"), "USD", ITEMS, CustomerInfo(), PaymentMetadata())

        with pytest.raises(InvalidRequestError):
            await paypal.create_refund(db, "PP-ORDER-1")


class TestWallets:

    async def test_google_pay_requires_payment_method_data(self, db, providers):
        google = providers["google_direct"]

        with pytest.raises(InvalidRequestError):
            google.validate_payment_data({"token": "x"})

    async def test_apple_pay_uses_transaction_identifier(self, db, providers):
        apple = providers["apple_direct"]
        session = await apple.create_session(
            db, Decimal("10"), "USD", ITEMS, CustomerInfo(), PaymentMetadata(order_id="order_ap")
        )

        result = await apple.confirm_or_capture(
            db, session.provider_session_id, payment_data={"token": {"transactionIdentifier": "APPLE-TX-1"}}
        )
        entry = await session_registry.require_session(db, "apay_order_ap")

        assert session.provider_session_id == "apay_order_ap"
        assert result.provider_reference == "APPLE-TX-1"
        assert entry.status == "success"
        assert entry.provider_status == "validated_client_side"

    async def test_wallet_refund_is_manual(self, db, providers):
        google = providers["google_direct"]
        await google.create_session(db, Decimal("10"), "USD", ITEMS, CustomerInfo(), PaymentMetadata(order_id="o1"))

        refund = await google.create_refund(db, "gpay_o1")

        assert refund.status == "MANUAL_REFUND_REQUIRED"
        assert refund.refund_id == "manual_gpay_o1"

    async def test_settled_wallet_session_cannot_be_confirmed(self, db, providers):
        google = providers["google_direct"]
        await google.create_session(db, Decimal("10"), "USD", ITEMS, CustomerInfo(), PaymentMetadata(order_id="o1"))
        await session_registry.update_session_status(db, "gpay_o1", "cancelled")

        with pytest.raises(InvalidRequestError):
            await google.confirm_or_capture(db, "gpay_o1", payment_data={"paymentMethodData": {"type": "CARD"}})

        entry = await session_registry.require_session(db, "gpay_o1")
        assert entry.status == "cancelled"
