"""Resend email API client used for alert delivery."""

from typing import Optional

import aiohttp

from ..config.logging import get_logger

logger = get_logger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class EmailDeliveryError(Exception):
    """Raised when an email cannot be handed to the provider."""


class ResendEmailClient:
    """Minimal client for the Resend transactional email API."""

    def __init__(
        self,
        api_key: Optional[str],
        sender: str = "noreply@pulse.app",
        timeout_seconds: float = 10.0,
    ):
        self.api_key = api_key
        self.sender = sender
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def send_email(self, to: str, subject: str, html: str) -> Optional[str]:
        """
        Send one HTML email.

        Returns:
            Provider message ID

        Raises:
            EmailDeliveryError: If the service is not configured or rejects the email
        """
        if not self.api_key:
            raise EmailDeliveryError("Email service not configured")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        body = {"from": self.sender, "to": [to], "subject": subject, "html": html}

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(RESEND_API_URL, json=body, headers=headers) as response:
                    if 200 <= response.status < 300:
                        payload = await response.json(content_type=None)
                        logger.debug("Email accepted by provider", status=response.status)
                        return (payload or {}).get("id")

                    error_text = await response.text()
                    raise EmailDeliveryError(f"HTTP {response.status}: {error_text[:200]}")
        except aiohttp.ClientError as e:
            raise EmailDeliveryError(f"Network error: {e}") from e
