"""
Provider Webhook Models

Each provider's inbound webhook is parsed into its own variant at the adapter
boundary. All variants expose the same normalized fields so the webhook router
only ever reads event_id, provider_session_id, raw_status, failure_reason and
provider_reference.
"""
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


class UniPayWebhook(BaseModel):
    """UniPay callback body: {id?, type?, OrderHashID, Status, FailureReason?}."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    kind: Literal["unipay"] = "unipay"
    event_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("event_id", "id"))
    event_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("event_type", "type"))
    provider_session_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("provider_session_id", "OrderHashID", "orderHashId")
    )
    raw_status: Optional[str] = Field(default=None, validation_alias=AliasChoices("raw_status", "Status", "status"))
    failure_reason: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("failure_reason", "FailureReason", "ErrorMessage")
    )
    provider_reference: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("provider_reference", "PaymentID", "TransactionID")
    )


class PayPalWebhook(BaseModel):
    """
    PayPal webhook notification.

    The order id lives in resource.id for CHECKOUT.ORDER.* events and in
    resource.supplementary_data.related_ids.order_id for PAYMENT.CAPTURE.*
    events; the status is the last segment of the event type.
    """
    model_config = ConfigDict(extra="ignore")

    kind: Literal["paypal"] = "paypal"
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    provider_session_id: Optional[str] = None
    raw_status: Optional[str] = None
    failure_reason: Optional[str] = None
    provider_reference: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def from_notification(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "resource" not in data:
            return data

        event_type = data.get("event_type") or ""
        resource: Dict[str, Any] = data.get("resource") or {}
        normalized: Dict[str, Any] = {
            "event_id": data.get("id"),
            "event_type": event_type or None,
            "raw_status": event_type.rsplit(".", 1)[-1] if event_type else resource.get("status"),
        }

        if event_type.startswith("PAYMENT.CAPTURE."):
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            normalized["provider_session_id"] = related.get("order_id")
            normalized["provider_reference"] = resource.get("id")
            details = resource.get("status_details") or {}
            normalized["failure_reason"] = details.get("reason")
        else:
            normalized["provider_session_id"] = resource.get("id")

        return normalized


ProviderWebhook = Annotated[Union[UniPayWebhook, PayPalWebhook], Field(discriminator="kind")]
