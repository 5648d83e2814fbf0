"""Outbound email through the Resend REST API"""

import logging
from typing import Optional

import httpx

from revenue_agent.config import settings
from revenue_agent.services.retry import RetryPolicy, execute

logger = logging.getLogger(__name__)


class EmailService:
    """Sends one message to one recipient. Disabled when no API key is set."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.resend_api_key
        self.http_client = http_client
        self.retry_policy = retry_policy or RetryPolicy.from_settings()

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def send(self, to: str, subject: str, html: str, text: Optional[str] = None) -> Optional[str]:
        """
        Send a message.

        Returns:
            Provider message id, or None when sending is disabled

        Raises:
            httpx.HTTPError once the retry budget is exhausted or on a permanent 4xx
        """
        if not self.enabled:
            logger.warning(f"[EMAIL] RESEND_API_KEY not set, not sending '{subject}' to {to}")
            return None

        body = {"from": settings.email_from, "to": [to], "subject": subject, "html": html}
        if text:
            body["text"] = text

        client = self.http_client or httpx.AsyncClient()

        async def _call():
            response = await client.post(
                settings.resend_api_url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.retry_policy.timeout,
            )
            response.raise_for_status()
            return response

        try:
            response = await execute(_call, self.retry_policy, label=f"email to {to}")
        finally:
            if self.http_client is None:
                await client.aclose()

        message_id = response.json().get("id")
        logger.info(f"[EMAIL] Sent '{subject}' to {to} ({message_id})")
        return message_id


_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service
