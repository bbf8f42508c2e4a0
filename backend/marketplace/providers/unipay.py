"""
UniPay Adapter

Regional gateway (Georgia). Settles in GEL: VAT is applied to the original
amount for EU customers, then the gross amount is converted to GEL. Redirect
and callback URLs are sent base64-encoded.
"""
import base64
import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Sequence, Tuple
from urllib.parse import urlencode

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import UniPayConfig
from ..exceptions import InvalidRequestError, ProviderError
from ..models.orders import OrderItem
from ..models.payments import ConfirmResult, CustomerInfo, PaymentMetadata, RefundResult, SessionResult
from ..models.webhooks import UniPayWebhook
from ..services import session_registry
from .base import PaymentProvider
from .pricing import calculate_vat, convert_currency_to_gel, generate_merchant_order_id, to_json_safe

logger = logging.getLogger(__name__)


def encode_url(url: str) -> str:
    return base64.b64encode(url.encode()).decode()


class UniPayProvider(PaymentProvider):
    """UniPay API v3 adapter."""

    name = "unipay"
    display_name = "UniPay"
    signature_header = "X-UniPay-Signature"
    settlement_currency = "GEL"

    def __init__(self, config: UniPayConfig, client: Optional[httpx.AsyncClient] = None):
        super().__init__(
            base_url=config.base_url,
            timeout_seconds=config.timeout_seconds,
            client=client,
            webhook_secret=config.webhook_secret
        )
        self.config = config

    @property
    def configured(self) -> bool:
        return self.config.configured

    async def _authenticate(self) -> Tuple[str, Optional[int]]:
        if not self.configured:
            raise ProviderError(self.name, "UniPay credentials not configured")

        body = await self._request(
            "POST",
            "/auth",
            json={"merchant_id": self.config.merchant_id, "api_key": self.config.api_key},
            bearer=False
        )
        token = body.get("access_token")
        if not token:
            raise ProviderError(self.name, "Invalid UniPay authentication response")
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
        merchant_order_id = generate_merchant_order_id()

        vat_info = calculate_vat(amount, customer_info.country)
        conversion = convert_currency_to_gel(vat_info["gross_amount"], currency)
        converted = conversion["converted_amount"]

        order_name = items[0].title if items else "AI Agent Purchase"
        order_description = ", ".join(item.title for item in items) or "AI Agent Template Purchase"

        success_query = urlencode({"order_id": internal_order_id, "status": "success"})
        cancel_query = urlencode({"order_id": internal_order_id})

        payload = {
            "MerchantUser": customer_info.email or metadata.email or customer_info.user_id or merchant_order_id,
            "MerchantOrderID": merchant_order_id,
            "OrderPrice": float(converted),
            "OrderCurrency": "GEL",
            "OrderName": order_name,
            "OrderDescription": order_description,
            "SuccessRedirectUrl": encode_url(f"{self.config.success_url}?{success_query}"),
            "CancelRedirectUrl": encode_url(f"{self.config.cancel_url}?{cancel_query}"),
            "CallBackUrl": encode_url(self.config.callback_url),
            "InApp": 0,
            "Language": "EN",
        }

        body = await self._request("POST", "/api/order/create", json=payload)
        order_hash_id = body.get("OrderHashID")
        if not order_hash_id:
            raise ProviderError(self.name, "Invalid UniPay order creation response")

        logger.info(
            f"Created UniPay order {order_hash_id} ({merchant_order_id}): "
            f"{amount} {currency} -> {converted} GEL, vat_rate={vat_info['vat_rate']}"
        )

        return SessionResult(
            provider=self.name,
            provider_session_id=order_hash_id,
            internal_order_id=internal_order_id,
            provider_order_id=order_hash_id,
            merchant_order_id=merchant_order_id,
            payment_url=body.get("PaymentUrl"),
            normalized_amount=converted,
            normalized_currency="GEL",
            original_amount=amount,
            original_currency=currency,
            vat_info=to_json_safe(vat_info),
            conversion_info=to_json_safe(conversion),
            redirect=bool(body.get("PaymentUrl")),
        )

    async def confirm_or_capture(
        self,
        db: AsyncSession,
        provider_session_id: str,
        amount: Optional[Decimal] = None,
        payment_data: Optional[Dict[str, Any]] = None
    ) -> ConfirmResult:
        """
        Confirm a pre-authorized order.

        Settlement is reported later by webhook, so the session only moves to
        confirmed here.
        """
        await session_registry.require_session(db, provider_session_id)

        body = await self._request(
            "POST",
            "/api/order/confirm",
            json={"OrderHashID": provider_session_id, "Amount": float(amount or 0)}
        )
        await session_registry.update_session_status(db, provider_session_id, "confirmed")

        logger.info(f"Confirmed UniPay order {provider_session_id} (amount={amount or 0})")
        return ConfirmResult(success=True, status="confirmed", raw=body)

    async def create_refund(
        self,
        db: AsyncSession,
        provider_session_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None
    ) -> RefundResult:
        entry = await session_registry.require_session(db, provider_session_id)
        refund_amount = amount if amount is not None else entry.amount
        if refund_amount is None or refund_amount <= 0:
            raise InvalidRequestError("Refund amount is required", details={"provider_session_id": provider_session_id})

        body = await self._request(
            "POST",
            "/api/order/refund",
            json={
                "OrderHashID": provider_session_id,
                "Amount": str(refund_amount),
                "Reason": reason or "Customer request",
                "Note": "",
            }
        )

        logger.info(f"Created UniPay refund for {provider_session_id}: {refund_amount} ({reason})")
        return RefundResult(
            success=True,
            refund_id=f"unipay_{provider_session_id}",
            amount=Decimal(refund_amount),
            currency=entry.currency,
            status="COMPLETED",
            raw=body,
        )

    async def get_status(self, provider_session_id: str) -> Dict[str, Any]:
        logger.info(f"Status check requested for UniPay order: {provider_session_id}")
        return {
            "success": True,
            "provider_session_id": provider_session_id,
            "message": "Status updates are handled via webhooks",
        }

    async def get_error_list(self) -> Dict[str, Any]:
        return {"success": True, "errors": await self._request("GET", "/info/error-list")}

    async def get_status_list(self) -> Dict[str, Any]:
        return {"success": True, "statuses": await self._request("GET", "/info/status-list")}

    # ========================================================================
    # Webhooks
    # ========================================================================

    def parse_webhook(self, payload: Dict[str, Any]) -> UniPayWebhook:
        return UniPayWebhook.model_validate(payload)

    async def health_check(self) -> Dict[str, Any]:
        result = await super().health_check()
        result["environment"] = self.config.environment
        result["settlement_currency"] = self.settlement_currency
        return result
