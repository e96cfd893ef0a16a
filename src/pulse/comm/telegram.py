"""Telegram Bot API client used for alert delivery."""

from typing import Any, Dict, Optional

import aiohttp

from ..config.logging import get_logger

logger = get_logger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


class TelegramApiError(Exception):
    """Raised when the Bot API rejects a request or cannot be reached."""


class TelegramBot:
    """Telegram Bot client bound to one organization's bot token."""

    def __init__(self, bot_token: str, timeout_seconds: float = 10.0):
        if not bot_token:
            raise ValueError("Telegram bot token is required")

        self.bot_token = bot_token
        self.base_url = f"{TELEGRAM_API_URL}/bot{self.bot_token}"
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def send_message(self, text: str, chat_id: str) -> Optional[str]:
        """
        Send a message to a Telegram chat.

        Args:
            text: Message text, HTML formatted
            chat_id: Target chat ID

        Returns:
            Telegram message ID of the sent message

        Raises:
            TelegramApiError: If the API reports a failure
        """
        if not chat_id:
            raise TelegramApiError("No chat ID provided")

        url = f"{self.base_url}/sendMessage"
        data = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",  # Allow HTML formatting
            "disable_web_page_preview": True,
        }

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, json=data) as response:
                    payload = await self._read_json(response)
                    if response.status == 200 and payload.get("ok"):
                        message_id = payload.get("result", {}).get("message_id")
                        logger.debug("Telegram message sent", chat_id=chat_id)
                        return str(message_id) if message_id is not None else None

                    description = payload.get("description") or f"HTTP {response.status}"
                    raise TelegramApiError(description)
        except aiohttp.ClientError as e:
            raise TelegramApiError(f"Network error: {e}") from e

    async def get_me(self) -> Dict[str, Any]:
        """
        Get the bot's own user, which also validates the token.

        Raises:
            TelegramApiError: If the token is rejected or the API is unreachable
        """
        url = f"{self.base_url}/getMe"

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url) as response:
                    payload = await self._read_json(response)
                    if response.status == 200 and payload.get("ok"):
                        return payload.get("result") or {}

                    description = payload.get("description") or f"HTTP {response.status}"
                    raise TelegramApiError(description)
        except aiohttp.ClientError as e:
            raise TelegramApiError(f"Network error: {e}") from e

    @staticmethod
    async def _read_json(response) -> Dict[str, Any]:
        try:
            payload = await response.json(content_type=None)
        except (aiohttp.ContentTypeError, ValueError):
            return {}
        return payload if isinstance(payload, dict) else {}
