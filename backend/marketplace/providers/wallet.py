"""
Direct Wallet Adapter

Google Pay and Apple Pay payments validated client-side by the wallet SDK.
There is no provider API: the adapter only checks the shape of the wallet
payment data and records the session. Refunds must be issued manually.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Literal, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import WalletConfig
from ..exceptions import InvalidRequestError
from ..models.orders import OrderItem
from ..models.payments import ConfirmResult, CustomerInfo, PaymentMetadata, RefundResult, SessionResult
from ..services import session_registry
from .base import PaymentProvider
from .pricing import quantize_money

logger = logging.getLogger(__name__)

WALLETS = {
    "google": {"name": "google_direct", "display_name": "Google Pay", "prefix": "gpay", "required": "paymentMethodData"},
    "apple": {"name": "apple_direct", "display_name": "Apple Pay", "prefix": "apay", "required": "token"},
}


class WalletProvider(PaymentProvider):
    """One instance per wallet (google or apple)."""

    supports_webhooks = False

    def __init__(self, wallet: Literal["google", "apple"], config: WalletConfig):
        super().__init__()
        spec = WALLETS[wallet]
        self.wallet = wallet
        self.name = spec["name"]
        self.display_name = spec["display_name"]
        self.prefix = spec["prefix"]
        self.required_field = spec["required"]
        self.config = config

    @property
    def payment_method(self) -> str:
        return f"{self.wallet}_pay"

    def validate_payment_data(self, payment_data: Optional[Dict[str, Any]]) -> None:
        """
        Raises:
            InvalidRequestError: If the wallet payload lacks its required field
        """
        if not payment_data or not payment_data.get(self.required_field):
            raise InvalidRequestError(
                f"Invalid {self.display_name} payment data",
                details={"required": self.required_field}
            )

    async def _create_provider_session(
        self,
        internal_order_id: str,
        amount: Decimal,
        currency: str,
        items: Sequence[OrderItem],
        customer_info: CustomerInfo,
        metadata: PaymentMetadata
    ) -> SessionResult:
        session_id = f"{self.prefix}_{internal_order_id}"
        total = quantize_money(amount)
        return SessionResult(
            provider=self.name,
            provider_session_id=session_id,
            internal_order_id=internal_order_id,
            provider_order_id=session_id,
            normalized_amount=total,
            normalized_currency=currency,
            original_amount=amount,
            original_currency=currency,
        )

    async def confirm_or_capture(
        self,
        db: AsyncSession,
        provider_session_id: str,
        amount: Optional[Decimal] = None,
        payment_data: Optional[Dict[str, Any]] = None
    ) -> ConfirmResult:
        self.validate_payment_data(payment_data)
        entry = await session_registry.require_session(db, provider_session_id)
        if entry.status not in ("created", "confirmed", "success"):
            raise InvalidRequestError(
                f"{self.display_name} session {provider_session_id} is {entry.status}",
                details={"provider_session_id": provider_session_id, "status": entry.status}
            )

        reference = provider_session_id
        token = payment_data.get("token")
        if self.wallet == "apple" and isinstance(token, dict):
            reference = token.get("transactionIdentifier") or provider_session_id

        await session_registry.update_session_status(
            db,
            provider_session_id,
            "success",
            provider_status="validated_client_side",
            provider_reference=reference
        )
        logger.info(f"{self.display_name} payment {provider_session_id} accepted")
        return ConfirmResult(success=True, status="success", provider_reference=reference)

    async def create_refund(
        self,
        db: AsyncSession,
        provider_session_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None
    ) -> RefundResult:
        entry = await session_registry.require_session(db, provider_session_id)
        logger.warning(
            f"{self.display_name} refund for {provider_session_id} must be issued manually "
            f"({amount if amount is not None else entry.amount} {entry.currency})"
        )
        return RefundResult(
            success=True,
            refund_id=f"manual_{provider_session_id}",
            amount=amount if amount is not None else entry.amount,
            currency=entry.currency,
            status="MANUAL_REFUND_REQUIRED",
        )

    async def get_status(self, provider_session_id: str) -> Dict[str, Any]:
        return {
            "success": True,
            "provider_session_id": provider_session_id,
            "message": f"{self.display_name} payments are confirmed when processed",
        }

    async def health_check(self) -> Dict[str, Any]:
        return {
            "success": True,
            "authenticated": True,
            "status": "ready",
            "environment": self.config.environment,
        }
