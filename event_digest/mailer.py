"""Transactional email over the Resend HTTP API."""
import logging
from typing import Optional, Protocol

import httpx

from event_digest.config import EmailConfig
from event_digest.errors import UpstreamError

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    async def send(self, to: str, subject: str, html: str) -> Optional[str]: ...


class ResendMailer:
    """Sends through Resend, or only logs the message when the config is in dev mode."""

    def __init__(
        self,
        config: EmailConfig,
        api_key: Optional[str],
        api_url: str = "https://api.resend.com/emails",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.config = config
        self.api_key = api_key
        self.api_url = api_url
        self.timeout = timeout
        self._client = client

    async def send(self, to: str, subject: str, html: str) -> Optional[str]:
        """Send one email, returning the provider message id (None in dev mode)."""
        if self.config.dev_mode:
            logger.info(f"[dev] Email to {to} from {self.config.sender}: {subject} ({len(html)} chars of HTML)")
            return None
        if not self.api_key:
            raise UpstreamError("RESEND_API_KEY is not configured")

        payload = {"from": self.config.sender, "to": [to], "subject": subject, "html": html}
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            if self._client is not None:
                response = await self._client.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Email send failed: {type(e).__name__}") from e

        if not response.is_success:
            raise UpstreamError(
                f"Email send failed: {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
            )
        message_id = response.json().get("id")
        logger.info(f"Sent email to {to}: {subject} (id {message_id})")
        return message_id
