"""
Payment Provider Base

Shared contract for every provider adapter plus the HTTP plumbing they have in
common: a cached bearer token with single-flight refresh, request logging with
redaction, and conversion of transport failures into ProviderError.
"""
import asyncio
import hashlib
import hmac
import logging
import time
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import ProviderError
from ..models.orders import OrderItem
from ..models.payments import (
    ConfirmResult,
    CustomerInfo,
    PaymentMetadata,
    RefundResult,
    SessionResult,
)
from ..services import session_registry

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = frozenset({"api_key", "access_token", "merchant_id", "client_secret", "authorization"})

# Refresh bearer tokens this long before they expire
TOKEN_REFRESH_MARGIN_SECONDS = 5 * 60

# Provider status vocabulary -> internal status ("pending" means no transition)
STATUS_VOCABULARY: Dict[str, str] = {
    "Success": "success",
    "Succeeded": "success",
    "success": "success",
    "COMPLETED": "success",
    "Failed": "failed",
    "failed": "failed",
    "Error": "failed",
    "DENIED": "failed",
    "Cancelled": "cancelled",
    "Canceled": "cancelled",
    "VOIDED": "cancelled",
    "Pending": "pending",
    "Processing": "pending",
    "Created": "pending",
    "APPROVED": "pending",
    "PENDING": "pending",
    "REFUNDED": "refunded",
}


def normalize_provider_status(raw_status: Optional[str]) -> Optional[str]:
    """Map a provider status string to success/failed/cancelled/pending/refunded, or None if unknown."""
    if not raw_status:
        return None
    return STATUS_VOCABULARY.get(raw_status.strip())


def redact(data: Any) -> Any:
    """Copy of a payload with credential fields masked, for logging."""
    if not isinstance(data, Mapping):
        return data
    return {
        key: "***REDACTED***" if key.lower() in SENSITIVE_FIELDS and value else redact(value)
        for key, value in data.items()
    }


def generate_order_id() -> str:
    return f"order_{uuid.uuid4().hex[:16]}"


class PaymentProvider(ABC):
    """
    Base class for payment provider adapters.

    Subclasses implement the provider-specific calls; create_session persists
    the Session Registry entry for every provider the same way.
    """

    name: str = "provider"
    display_name: str = "Provider"
    supports_webhooks: bool = True
    supported_currencies: Optional[Tuple[str, ...]] = None
    default_token_ttl_seconds: int = 55 * 60
    signature_header: str = "X-Webhook-Signature"

    def __init__(
        self,
        base_url: str = "",
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        webhook_secret: Optional[str] = None
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Content-Type": "application/json", "Accept": "application/json"}
        )
        self.webhook_secret = webhook_secret

        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[float] = None
        self._auth_lock = asyncio.Lock()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ========================================================================
    # Authentication
    # ========================================================================

    @property
    def configured(self) -> bool:
        return True

    async def _authenticate(self) -> Tuple[str, Optional[int]]:
        """
        Obtain a fresh bearer token.

        Returns:
            (access_token, expires_in_seconds or None)
        """
        raise NotImplementedError(f"{self.name} does not use bearer authentication")

    def _token_is_fresh(self) -> bool:
        if not self._access_token or self._token_expires_at is None:
            return False
        return time.monotonic() < self._token_expires_at - TOKEN_REFRESH_MARGIN_SECONDS

    def invalidate_token(self) -> None:
        self._access_token = None
        self._token_expires_at = None

    async def get_access_token(self) -> str:
        """
        Return a cached bearer token, re-authenticating when it is missing or
        within the refresh margin of expiry.

        Concurrent callers share one re-authentication: whoever acquires the
        lock second finds the fresh token and reuses it.
        """
        if self._token_is_fresh():
            return self._access_token

        async with self._auth_lock:
            if self._token_is_fresh():
                return self._access_token

            try:
                token, expires_in = await self._authenticate()
            except ProviderError:
                self.invalidate_token()
                raise

            self._access_token = token
            self._token_expires_at = time.monotonic() + (expires_in or self.default_token_ttl_seconds)
            logger.info(f"{self.display_name} authentication successful")
            return token

    # ========================================================================
    # HTTP
    # ========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        bearer: bool = True,
        auth: Optional[Tuple[str, str]] = None
    ) -> Dict[str, Any]:
        """
        Send a request to the provider API and return the decoded JSON body.

        Raises:
            ProviderError: On transport failure, non-2xx status or a non-JSON body
        """
        request_headers = dict(headers or {})
        if bearer:
            request_headers["Authorization"] = f"Bearer {await self.get_access_token()}"

        logger.info(f"{self.display_name} API request: {method} {path}", extra={"payload": redact(json or data)})

        try:
            response = await self._client.request(
                method, path, json=json, data=data, headers=request_headers, auth=auth
            )
        except httpx.HTTPError as e:
            logger.error(f"{self.display_name} API transport error on {path}: {e}")
            raise ProviderError(self.name, f"{self.display_name} request failed: {e}", details={"path": path}) from e

        if response.status_code >= 400:
            message = self._error_message(response)
            logger.error(f"{self.display_name} API error {response.status_code} on {path}: {message}")
            raise ProviderError(
                self.name,
                message,
                details={"path": path},
                upstream_status=response.status_code
            )

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError(self.name, f"{self.display_name} returned a non-JSON response", details={"path": path}) from e

        logger.debug(f"{self.display_name} API response {response.status_code}", extra={"payload": redact(body)})
        return body if isinstance(body, dict) else {"data": body}

    def _error_message(self, response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(body, dict):
            for key in ("message", "error_description", "error", "Message"):
                if body.get(key):
                    return str(body[key])
        return f"HTTP {response.status_code}"

    # ========================================================================
    # Adapter contract
    # ========================================================================

    async def create_session(
        self,
        db: AsyncSession,
        amount: Decimal,
        currency: str,
        items: Sequence[OrderItem],
        customer_info: CustomerInfo,
        metadata: PaymentMetadata
    ) -> SessionResult:
        """
        Create a provider checkout session and register it.

        Args:
            db: Database session
            amount: Amount in major units of currency
            currency: ISO 4217 code
            items: Cart items
            customer_info: Allow-listed customer snapshot
            metadata: Allow-listed checkout metadata (order_id reused if present)

        Returns:
            SessionResult with the provider session id and normalized amount
        """
        internal_order_id = metadata.order_id or generate_order_id()
        result = await self._create_provider_session(
            internal_order_id, Decimal(amount), currency.upper(), list(items), customer_info, metadata
        )

        session_metadata = metadata.model_copy(update={
            "order_id": internal_order_id,
            "provider_session_id": result.provider_session_id,
            "merchant_order_id": result.merchant_order_id,
        })
        await session_registry.put_session(db, result, items, customer_info, session_metadata)
        return result

    @abstractmethod
    async def _create_provider_session(
        self,
        internal_order_id: str,
        amount: Decimal,
        currency: str,
        items: Sequence[OrderItem],
        customer_info: CustomerInfo,
        metadata: PaymentMetadata
    ) -> SessionResult:
        ...

    @abstractmethod
    async def confirm_or_capture(
        self,
        db: AsyncSession,
        provider_session_id: str,
        amount: Optional[Decimal] = None,
        payment_data: Optional[Dict[str, Any]] = None
    ) -> ConfirmResult:
        ...

    @abstractmethod
    async def create_refund(
        self,
        db: AsyncSession,
        provider_session_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None
    ) -> RefundResult:
        ...

    @abstractmethod
    async def get_status(self, provider_session_id: str) -> Dict[str, Any]:
        ...

    def parse_webhook(self, payload: Dict[str, Any]):
        """Convert a decoded webhook body into this provider's ProviderWebhook variant."""
        raise NotImplementedError(f"{self.name} has no webhook channel")

    async def verify_webhook_signature(self, raw_payload: bytes, headers: Mapping[str, str]) -> bool:
        """
        Default verification: hex HMAC-SHA256 of the raw body.

        Without a configured secret the webhook is accepted with a warning.
        """
        if not self.webhook_secret:
            logger.warning(f"{self.display_name} webhook secret not configured; accepting unsigned webhook")
            return True

        signature = _header(headers, self.signature_header)
        if not signature:
            logger.warning(f"{self.display_name} webhook missing {self.signature_header} header")
            return False

        expected = hmac.new(self.webhook_secret.encode(), raw_payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    async def health_check(self) -> Dict[str, Any]:
        """Try to authenticate and report the outcome."""
        if not self.configured:
            return {"success": False, "authenticated": False, "status": "not_configured"}
        try:
            await self.get_access_token()
        except ProviderError as e:
            return {"success": False, "authenticated": False, "status": "error", "error": e.message}
        return {"success": True, "authenticated": True, "status": "connected"}


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None
