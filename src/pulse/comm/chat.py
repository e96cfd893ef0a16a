"""Slack and Microsoft Teams incoming-webhook clients."""

from typing import Any, Dict, Optional

import aiohttp

from ..config.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TITLE = "Pulse Notification"
TEAMS_THEME_COLOR = "0078D4"


class ChatWebhookError(Exception):
    """Raised when a chat webhook does not accept a message."""


def slack_payload(text: str, title: Optional[str] = None) -> Dict[str, Any]:
    """Slack message with the text as one mrkdwn section block."""
    return {
        "text": title or DEFAULT_TITLE,
        "blocks": [{"type": "section", "text": {"type": "mrkdwn", "text": text}}],
    }


def teams_payload(text: str, title: Optional[str] = None) -> Dict[str, Any]:
    """Teams legacy MessageCard."""
    return {
        "@type": "MessageCard",
        "@context": "https://schema.org/extensions",
        "summary": title or DEFAULT_TITLE,
        "themeColor": TEAMS_THEME_COLOR,
        "title": title or DEFAULT_TITLE,
        "text": text,
    }


class ChatWebhookClient:
    """Posts messages to Slack or Teams incoming webhooks."""

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def post_slack(self, webhook_url: str, text: str, title: Optional[str] = None) -> int:
        """Post a message to a Slack incoming webhook."""
        return await self._post(webhook_url, slack_payload(text, title))

    async def post_teams(self, webhook_url: str, text: str, title: Optional[str] = None) -> int:
        """Post a message to a Teams incoming webhook."""
        return await self._post(webhook_url, teams_payload(text, title))

    async def _post(self, webhook_url: str, payload: Dict[str, Any]) -> int:
        """
        Returns:
            HTTP status code of the acknowledgement

        Raises:
            ChatWebhookError: On a non-2xx response or a network failure
        """
        if not webhook_url:
            raise ChatWebhookError("No webhook URL provided")

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(webhook_url, json=payload) as response:
                    if 200 <= response.status < 300:
                        logger.debug("Chat webhook accepted message", status=response.status)
                        return response.status

                    error_text = await response.text()
                    raise ChatWebhookError(error_text[:200] or f"HTTP {response.status}")
        except aiohttp.ClientError as e:
            raise ChatWebhookError(f"Network error: {e}") from e
