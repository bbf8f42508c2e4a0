"""
Marketplace Exception Hierarchy

Every error raised across the payment pipeline carries a stable error code,
a human readable message and the HTTP status the API layer answers with.
"""
from typing import Optional, Dict, Any


class MarketplaceError(Exception):
    """
    Base exception for all marketplace pipeline errors.

    Rendered by the FastAPI exception handler in main.py using to_dict().
    """

    status_code: int = 400

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


class InvalidRequestError(MarketplaceError):
    """
    Request is missing or has malformed required fields.

    Examples:
    - Session creation without amount or items
    - Unsupported currency for a provider
    - Unknown provider name
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("request:invalid", message, details, status_code=400)


class NotFoundError(MarketplaceError):
    """Requested order, session, invoice or token does not exist."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("resource:not_found", message, details, status_code=404)


class TokenAccessError(MarketplaceError):
    """
    Template access token cannot be used.

    Examples:
    - Token unknown
    - Token expired
    - Token revoked (reason in details)
    - Token issued for another order or agent
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("template:access_denied", message, details, status_code=403)


class SignatureInvalidError(MarketplaceError):
    """Webhook signature verification failed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("webhook:signature_invalid", message, details, status_code=401)


class ProviderError(MarketplaceError):
    """
    Upstream payment provider failed.

    Wraps transport errors and non-2xx responses with the provider's own
    message. Never retried automatically.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        upstream_status: Optional[int] = None
    ):
        details = dict(details or {})
        details["provider"] = provider
        if upstream_status is not None:
            details["upstream_status"] = upstream_status
        self.provider = provider
        self.upstream_status = upstream_status
        super().__init__("provider:error", message, details, status_code=502)


class InvalidStatusError(MarketplaceError):
    """Status value outside the enumerated set for the record type."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("status:invalid", message, details, status_code=400)


class UnauthorizedError(MarketplaceError):
    """Admin-only operation called without a valid admin key."""

    def __init__(self, message: str = "Unauthorized", details: Optional[Dict[str, Any]] = None):
        super().__init__("auth:unauthorized", message, details, status_code=401)


class EmailDeliveryError(MarketplaceError):
    """Email provider rejected or failed to send a message."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("email:delivery_failed", message, details, status_code=502)
