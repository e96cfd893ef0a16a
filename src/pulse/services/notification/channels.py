"""Notification channel implementations."""

import asyncio
import time
from typing import Awaitable, Callable, Optional, Protocol

from ...comm.chat import ChatWebhookClient
from ...comm.email import ResendEmailClient
from ...comm.telegram import TelegramBot
from ...comm.webhooks import ALERT_EVENT_TRIGGERED, WebhookPoster
from ...config.logging import get_logger
from .formatting import (
    chat_title,
    format_email,
    format_slack,
    format_teams,
    format_telegram,
    webhook_data,
)
from .models import AlertNotice, NotificationChannel, NotificationResult

logger = get_logger(__name__)


class NotificationChannelProtocol(Protocol):
    """Protocol for notification channel implementations."""

    channel: NotificationChannel

    async def send_notification(
        self, notice: AlertNotice, recipient: str, **kwargs
    ) -> NotificationResult:
        """Send notification through this channel."""
        ...


class TimedChannel:
    """Shared timeout and result bookkeeping for external channels."""

    channel: NotificationChannel

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        self.logger = logger.bind(channel=self.channel.value)

    async def _attempt(
        self,
        notice: AlertNotice,
        recipient: str,
        send: Callable[[], Awaitable[Optional[str]]],
    ) -> NotificationResult:
        start_time = time.monotonic()
        error = None
        message_id = None

        try:
            message_id = await asyncio.wait_for(send(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            error = f"timed out after {self.timeout_seconds:g}s"
        except Exception as e:
            error = str(e) or type(e).__name__

        delivery_time = (time.monotonic() - start_time) * 1000

        if error is None:
            self.logger.info(
                "Notification sent",
                org_id=notice.org_id,
                event_id=notice.event_id,
                delivery_time_ms=delivery_time,
            )
        else:
            self.logger.warning(
                "Notification failed",
                org_id=notice.org_id,
                event_id=notice.event_id,
                error=error,
                delivery_time_ms=delivery_time,
            )

        return NotificationResult(
            channel=self.channel,
            success=error is None,
            recipient=recipient,
            error=error,
            delivery_time_ms=delivery_time,
            message_id=message_id if error is None else None,
        )


class EmailNotificationChannel(TimedChannel):
    """Email notification channel backed by the Resend API."""

    channel = NotificationChannel.EMAIL

    def __init__(
        self,
        client: ResendEmailClient,
        dashboard_url: str,
        timeout_seconds: float = 10.0,
    ):
        super().__init__(timeout_seconds)
        self.client = client
        self.dashboard_url = dashboard_url

    async def send_notification(
        self, notice: AlertNotice, recipient: str, **kwargs
    ) -> NotificationResult:
        """
        Send alert notification via email.

        Args:
            notice: Alert to send
            recipient: Email address
        """
        subject, html = format_email(notice, self.dashboard_url)
        result = await self._attempt(
            notice, recipient, lambda: self.client.send_email(recipient, subject, html)
        )
        result.retryable = self.client.configured
        return result


class TelegramNotificationChannel(TimedChannel):
    """Telegram notification channel using the organization's own bot."""

    channel = NotificationChannel.TELEGRAM

    def __init__(
        self,
        dashboard_url: str,
        timeout_seconds: float = 10.0,
        bot_factory: Callable[..., TelegramBot] = TelegramBot,
    ):
        super().__init__(timeout_seconds)
        self.dashboard_url = dashboard_url
        self.bot_factory = bot_factory

    async def send_notification(
        self, notice: AlertNotice, recipient: str, bot_token: Optional[str] = None, **kwargs
    ) -> NotificationResult:
        """
        Send alert notification via Telegram.

        Args:
            notice: Alert to send
            recipient: Telegram chat ID
            bot_token: The organization's bot token
        """
        text = format_telegram(notice, self.dashboard_url)

        async def send() -> Optional[str]:
            bot = self.bot_factory(bot_token, timeout_seconds=self.timeout_seconds)
            return await bot.send_message(text, chat_id=recipient)

        return await self._attempt(notice, recipient, send)


class WebhookNotificationChannel(TimedChannel):
    """Signed webhook notification channel."""

    channel = NotificationChannel.WEBHOOK

    def __init__(self, poster: WebhookPoster, timeout_seconds: float = 10.0):
        super().__init__(timeout_seconds)
        self.poster = poster

    async def send_notification(
        self, notice: AlertNotice, recipient: str, secret: str = "", **kwargs
    ) -> NotificationResult:
        """
        Send alert notification to a webhook endpoint.

        Args:
            notice: Alert to send
            recipient: Endpoint URL
            secret: Signing secret of the endpoint
        """

        async def send() -> Optional[str]:
            status = await self.poster.post(
                recipient,
                secret,
                ALERT_EVENT_TRIGGERED,
                notice.org_id,
                webhook_data(notice),
            )
            return str(status)

        return await self._attempt(notice, recipient, send)


class SlackNotificationChannel(TimedChannel):
    """Slack incoming-webhook channel."""

    channel = NotificationChannel.SLACK

    def __init__(
        self, client: ChatWebhookClient, dashboard_url: str, timeout_seconds: float = 10.0
    ):
        super().__init__(timeout_seconds)
        self.client = client
        self.dashboard_url = dashboard_url

    async def send_notification(
        self, notice: AlertNotice, recipient: str, **kwargs
    ) -> NotificationResult:
        """Post the alert to the Slack webhook URL given as recipient."""
        text = format_slack(notice, self.dashboard_url)

        async def send() -> Optional[str]:
            await self.client.post_slack(recipient, text, chat_title(notice))
            return None

        return await self._attempt(notice, recipient, send)


class TeamsNotificationChannel(TimedChannel):
    """Microsoft Teams incoming-webhook channel."""

    channel = NotificationChannel.TEAMS

    def __init__(
        self, client: ChatWebhookClient, dashboard_url: str, timeout_seconds: float = 10.0
    ):
        super().__init__(timeout_seconds)
        self.client = client
        self.dashboard_url = dashboard_url

    async def send_notification(
        self, notice: AlertNotice, recipient: str, **kwargs
    ) -> NotificationResult:
        """Post the alert to the Teams webhook URL given as recipient."""
        text = format_teams(notice, self.dashboard_url)

        async def send() -> Optional[str]:
            await self.client.post_teams(recipient, text, chat_title(notice))
            return None

        return await self._attempt(notice, recipient, send)
