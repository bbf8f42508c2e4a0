"""
Email Service

Sends purchase delivery emails through the SendGrid v3 HTTP API.
"""
import base64
import html
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config import EmailConfig
from ..exceptions import EmailDeliveryError
from .template_service import DEFAULT_TOKEN_TTL_DAYS, agent_slug

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


class EmailService:
    """Minimal SendGrid client; one instance per application."""

    def __init__(self, config: EmailConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(config.timeout_seconds))

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
        attachments: Optional[List[Dict[str, str]]] = None
    ) -> str:
        """
        Send one email.

        Args:
            attachments: SendGrid attachment objects (base64 content, type, filename)

        Returns:
            SendGrid message id (X-Message-Id header), or "" if none was returned

        Raises:
            EmailDeliveryError: If no API key is configured or SendGrid rejects the request
        """
        if not self.config.api_key:
            raise EmailDeliveryError("SendGrid API key not configured")

        payload: Dict[str, Any] = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {"email": self.config.from_email, "name": self.config.from_name},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text_body},
                {"type": "text/html", "value": html_body},
            ],
        }
        if attachments:
            payload["attachments"] = attachments
        if self.config.sandbox:
            payload["mail_settings"] = {"sandbox_mode": {"enable": True}}

        try:
            response = await self._client.post(
                SENDGRID_SEND_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.config.api_key}"}
            )
        except httpx.HTTPError as e:
            logger.error(f"SendGrid transport error sending to {to_email}: {e}")
            raise EmailDeliveryError(f"Email send failed: {e}") from e

        if not 200 <= response.status_code < 300:
            logger.error(f"SendGrid error {response.status_code}: {response.text}")
            raise EmailDeliveryError(
                f"Email send failed with status {response.status_code}",
                details={"upstream_status": response.status_code}
            )

        return response.headers.get("X-Message-Id", "")

    async def send_agent_purchase_email(
        self,
        to_email: str,
        agent_name: str,
        download_url: str,
        order_id: str,
        customer_name: Optional[str] = None,
        price: Optional[str] = None,
        template_content: Optional[str] = None,
        valid_days: int = DEFAULT_TOKEN_TTL_DAYS
    ) -> str:
        """
        Send the delivery email for one purchased agent template.

        The resolved template document, when given, is attached as JSON next
        to the download link.

        Returns:
            SendGrid message id
        """
        greeting = f"Hi {customer_name}," if customer_name else "Hi,"
        subject = f"Your AI agent template: {agent_name}"
        price_line = f"Price: {price}\n" if price else ""

        text_body = (
            f"{greeting}\n\n"
            f"Thank you for your purchase of {agent_name}.\n"
            f"Order: {order_id}\n{price_line}\n"
            f"Download your template (link valid for {valid_days} days):\n{download_url}\n\n"
            f"{self.config.website_url}\n"
        )
        html_body = (
            f"<p>{html.escape(greeting)}</p>"
            f"<p>Thank you for your purchase of <strong>{html.escape(agent_name)}</strong>.</p>"
            f"<p>Order: {html.escape(order_id)}</p>"
            + (f"<p>Price: {html.escape(price)}</p>" if price else "")
            + f'<p><a href="{html.escape(download_url)}">Download your template</a> (link valid for {valid_days} days)</p>'
            f'<p><a href="{html.escape(self.config.website_url)}">{html.escape(self.config.from_name)}</a></p>'
        )

        attachments = None
        if template_content:
            attachments = [{
                "content": base64.b64encode(template_content.encode("utf-8")).decode("ascii"),
                "type": "application/json",
                "filename": f"{agent_slug(agent_name)}-template.json",
                "disposition": "attachment",
            }]

        message_id = await self.send_email(to_email, subject, html_body, text_body, attachments)
        logger.info(f"Sent purchase email for {agent_name} (order {order_id}), message_id={message_id or 'n/a'}")
        return message_id
