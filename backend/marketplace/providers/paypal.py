"""
PayPal Adapter

OAuth2 client-credentials, Orders v2 (intent CAPTURE), capture refunds and
webhook signature verification through the PayPal API.
"""
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import PayPalConfig
from ..exceptions import InvalidRequestError, ProviderError
from ..models.orders import OrderItem
from ..models.payments import ConfirmResult, CustomerInfo, PaymentMetadata, RefundResult, SessionResult
from ..models.webhooks import PayPalWebhook
from ..services import session_registry
from .base import PaymentProvider, _header, normalize_provider_status
from .pricing import quantize_money

logger = logging.getLogger(__name__)

VERIFICATION_HEADERS = {
    "auth_algo": "PAYPAL-AUTH-ALGO",
    "cert_url": "PAYPAL-CERT-URL",
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
}


def _money(value: Decimal, currency: str) -> Dict[str, str]:
    return {"currency_code": currency, "value": f"{quantize_money(value):.2f}"}


class PayPalProvider(PaymentProvider):
    """PayPal Orders v2 adapter."""

    name = "paypal"
    display_name = "PayPal"
    supported_currencies = ("USD", "EUR", "GBP")

    def __init__(self, config: PayPalConfig, client: Optional[httpx.AsyncClient] = None):
        super().__init__(base_url=config.base_url, timeout_seconds=config.timeout_seconds, client=client)
        self.config = config

    @property
    def configured(self) -> bool:
        return self.config.configured

    async def _authenticate(self) -> Tuple[str, Optional[int]]:
        if not self.configured:
            raise ProviderError(self.name, "PayPal credentials not configured")

        body = await self._request(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            bearer=False,
            auth=(self.config.client_id, self.config.client_secret)
        )
        token = body.get("access_token")
        if not token:
            raise ProviderError(self.name, "Invalid PayPal authentication response")
        return token, body.get("expires_in")

    # ========================================================================
    # Orders
    # ========================================================================

    async def _create_provider_session(
        self,
        internal_order_id: str,
        amount: Decimal,
        currency: str,
        items: Sequence[OrderItem],
        customer_info: CustomerInfo,
        metadata: PaymentMetadata
    ) -> SessionResult:
        if currency not in self.supported_currencies:
            raise InvalidRequestError(
                f"Currency {currency} is not supported by PayPal",
                details={"currency": currency, "supported": list(self.supported_currencies)}
            )

        total = quantize_money(amount)
        purchase_unit: Dict[str, Any] = {
            "reference_id": internal_order_id,
            "custom_id": internal_order_id,
            "description": ", ".join(item.title for item in items)[:127] or "AI Agent Template Purchase",
            "amount": _money(total, currency),
        }

        # PayPal rejects orders whose item breakdown does not add up to the total
        item_total = sum((quantize_money(item.line_total) for item in items), Decimal("0"))
        if items and item_total == total:
            purchase_unit["amount"]["breakdown"] = {"item_total": _money(item_total, currency)}
            purchase_unit["items"] = [
                {
                    "name": item.title[:127],
                    "sku": item.item_id,
                    "quantity": str(item.quantity),
                    "unit_amount": _money(item.unit_price, currency),
                    "category": "DIGITAL_GOODS",
                }
                for item in items
            ]

        payload = {
            "intent": "CAPTURE",
            "purchase_units": [purchase_unit],
            "application_context": {
                "brand_name": self.config.brand_name,
                "landing_page": "NO_PREFERENCE",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "PAY_NOW",
                "return_url": self.config.return_url,
                "cancel_url": self.config.cancel_url,
            },
        }

        body = await self._request(
            "POST",
            "/v2/checkout/orders",
            json=payload,
            headers={"PayPal-Request-Id": internal_order_id, "Prefer": "return=representation"}
        )
        paypal_order_id = body.get("id")
        if not paypal_order_id:
            raise ProviderError(self.name, "Invalid PayPal order creation response")

        approve_url = next(
            (link["href"] for link in body.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None
        )

        logger.info(f"Created PayPal order {paypal_order_id} for {internal_order_id} ({total} {currency})")

        return SessionResult(
            provider=self.name,
            provider_session_id=paypal_order_id,
            internal_order_id=internal_order_id,
            provider_order_id=paypal_order_id,
            payment_url=approve_url,
            normalized_amount=total,
            normalized_currency=currency,
            original_amount=amount,
            original_currency=currency,
            redirect=approve_url is not None,
        )

    async def confirm_or_capture(
        self,
        db: AsyncSession,
        provider_session_id: str,
        amount: Optional[Decimal] = None,
        payment_data: Optional[Dict[str, Any]] = None
    ) -> ConfirmResult:
        """
        Capture an approved PayPal order.

        An order already captured through this service is returned as-is
        without calling PayPal again.
        """
        entry = await session_registry.require_session(db, provider_session_id)
        if entry.status == "success":
            return ConfirmResult(success=True, status="success", provider_reference=entry.provider_reference)

        body = await self._request(
            "POST",
            f"/v2/checkout/orders/{provider_session_id}/capture",
            json={},
            headers={"PayPal-Request-Id": f"capture-{provider_session_id}", "Prefer": "return=representation"}
        )

        capture = self._first_capture(body)
        raw_status = (capture or {}).get("status") or body.get("status")
        mapped = normalize_provider_status(raw_status)
        capture_id = (capture or {}).get("id")

        if mapped == "success":
            status = "success"
        elif mapped in ("failed", "cancelled"):
            status = "failed"
        else:
            # Pending or unrecognized capture: completion arrives by webhook
            status = "confirmed"

        await session_registry.update_session_status(
            db,
            provider_session_id,
            status,
            provider_status=raw_status,
            provider_reference=capture_id,
            failure_reason=None if status != "failed" else f"Capture status {raw_status}"
        )

        logger.info(f"PayPal order {provider_session_id} capture status={raw_status}, capture={capture_id}")
        return ConfirmResult(success=status == "success", status=status, provider_reference=capture_id, raw=body)

    @staticmethod
    def _first_capture(body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for unit in body.get("purchase_units", []):
            captures = (unit.get("payments") or {}).get("captures") or []
            if captures:
                return captures[0]
        return None

    async def create_refund(
        self,
        db: AsyncSession,
        provider_session_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None
    ) -> RefundResult:
        entry = await session_registry.require_session(db, provider_session_id)
        if not entry.provider_reference:
            raise InvalidRequestError(
                "PayPal order has no capture to refund",
                details={"provider_session_id": provider_session_id}
            )

        payload: Dict[str, Any] = {}
        if amount is not None:
            payload["amount"] = _money(amount, entry.currency)
        if reason:
            payload["note_to_payer"] = reason[:255]

        body = await self._request(
            "POST",
            f"/v2/payments/captures/{entry.provider_reference}/refund",
            json=payload
        )

        refund_id = body.get("id") or f"paypal_{provider_session_id}"
        refunded = Decimal((body.get("amount") or {}).get("value") or (amount if amount is not None else entry.amount))
        logger.info(f"PayPal refund {refund_id} for order {provider_session_id}: {refunded} {entry.currency}")
        return RefundResult(
            success=body.get("status") in ("COMPLETED", "PENDING"),
            refund_id=refund_id,
            amount=refunded,
            currency=(body.get("amount") or {}).get("currency_code") or entry.currency,
            status=body.get("status", "UNKNOWN"),
            raw=body,
        )

    async def get_status(self, provider_session_id: str) -> Dict[str, Any]:
        body = await self._request("GET", f"/v2/checkout/orders/{provider_session_id}")
        return {
            "success": True,
            "provider_session_id": provider_session_id,
            "status": body.get("status"),
            "normalized_status": normalize_provider_status(body.get("status")),
            "raw": body,
        }

    # ========================================================================
    # Webhooks
    # ========================================================================

    def parse_webhook(self, payload: Dict[str, Any]) -> PayPalWebhook:
        return PayPalWebhook.model_validate(payload)

    async def verify_webhook_signature(self, raw_payload: bytes, headers: Mapping[str, str]) -> bool:
        """
        Verify a notification with PayPal's verify-webhook-signature API.

        Without a configured webhook id the notification is accepted with a
        warning.
        """
        if not self.config.webhook_id:
            logger.warning("PayPal webhook id not configured; accepting unverified webhook")
            return True

        verification: Dict[str, Any] = {}
        for field, header in VERIFICATION_HEADERS.items():
            value = _header(headers, header)
            if not value:
                logger.warning(f"PayPal webhook missing {header} header")
                return False
            verification[field] = value

        try:
            verification["webhook_event"] = json.loads(raw_payload)
        except ValueError:
            return False
        verification["webhook_id"] = self.config.webhook_id

        try:
            body = await self._request("POST", "/v1/notifications/verify-webhook-signature", json=verification)
        except ProviderError as e:
            logger.error(f"PayPal webhook verification call failed: {e.message}")
            return False

        return body.get("verification_status") == "SUCCESS"

    async def health_check(self) -> Dict[str, Any]:
        result = await super().health_check()
        result["environment"] = self.config.environment
        return result
