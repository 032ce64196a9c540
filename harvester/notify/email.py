"""Email dispatch through the Resend HTTP API."""

import logging
from typing import Optional

import httpx

from harvester import metrics
from harvester.config import settings
from harvester.notify.formatters import EmailMessage

logger = logging.getLogger(__name__)


class EmailSender:
    """Fire-and-forget email client; failures are logged and counted, never raised."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        sender: Optional[str] = None,
    ):
        self.client = client
        self.api_key = api_key if api_key is not None else settings.resend_api_key
        self.api_url = api_url or settings.resend_api_url
        self.sender = sender or settings.email_from

    async def send(self, to: str, message: EmailMessage) -> bool:
        """
        Send one email.

        Returns:
            True if the API accepted the message
        """
        if not self.api_key:
            logger.info(f"Email disabled (no API key); not sending '{message.subject}' to {to}")
            metrics.email_dispatch_total.labels(status="disabled").inc()
            return False

        payload = {
            "from": self.sender,
            "to": [to],
            "subject": message.subject,
            "text": message.text,
            "html": message.html,
        }
        try:
            response = await self.client.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=10.0,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send email to {to}: {e}")
            metrics.email_dispatch_total.labels(status="failed").inc()
            return False

        logger.info(f"Sent '{message.subject}' to {to}")
        metrics.email_dispatch_total.labels(status="sent").inc()
        return True
