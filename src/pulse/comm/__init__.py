"""Transport clients for outbound notification channels."""

from .chat import ChatWebhookClient, ChatWebhookError
from .email import EmailDeliveryError, ResendEmailClient
from .telegram import TelegramApiError, TelegramBot
from .webhooks import WebhookDeliveryError, WebhookPoster, sign_payload

__all__ = [
    "ChatWebhookClient",
    "ChatWebhookError",
    "EmailDeliveryError",
    "ResendEmailClient",
    "TelegramApiError",
    "TelegramBot",
    "WebhookDeliveryError",
    "WebhookPoster",
    "sign_payload",
]
