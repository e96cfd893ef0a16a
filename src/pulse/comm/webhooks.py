"""Signed outbound webhook delivery."""

import hashlib
import hmac
import json
import uuid
from typing import Any, Dict, Optional

import aiohttp

from ..config.logging import get_logger
from ..utils.clock import isoformat_z, utcnow

logger = get_logger(__name__)

USER_AGENT = "Pulse-Webhooks/1.0"

ALERT_EVENT_TRIGGERED = "alert_event.triggered"


class WebhookDeliveryError(Exception):
    """Raised when an endpoint does not acknowledge a delivery."""


def sign_payload(secret: str, timestamp: str, body: str) -> str:
    """HMAC-SHA256 hex digest of ``"{timestamp}.{body}"``."""
    message = f"{timestamp}.{body}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def build_delivery(
    secret: str,
    event_type: str,
    org_id: int,
    data: Dict[str, Any],
    timestamp: Optional[str] = None,
    delivery_id: Optional[str] = None,
) -> tuple[str, Dict[str, str]]:
    """
    Serialize a webhook payload and compute its headers.

    Returns:
        Tuple of (body, headers)
    """
    timestamp = timestamp or isoformat_z(utcnow())
    delivery_id = delivery_id or str(uuid.uuid4())
    body = json.dumps(
        {"event": event_type, "timestamp": timestamp, "orgId": org_id, "data": data},
        separators=(",", ":"),
        default=str,
    )
    headers = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        "X-Pulse-Event": event_type,
        "X-Pulse-Id": delivery_id,
        "X-Pulse-Timestamp": timestamp,
        "X-Pulse-Signature": f"sha256={sign_payload(secret, timestamp, body)}",
    }
    return body, headers


class WebhookPoster:
    """Posts signed JSON payloads to organization endpoints."""

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def post(
        self,
        url: str,
        secret: str,
        event_type: str,
        org_id: int,
        data: Dict[str, Any],
    ) -> int:
        """
        Deliver one event to one endpoint.

        Returns:
            HTTP status code of the acknowledgement

        Raises:
            WebhookDeliveryError: On a non-2xx response or a network failure
        """
        body, headers = build_delivery(secret, event_type, org_id, data)

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, data=body, headers=headers) as response:
                    if 200 <= response.status < 300:
                        logger.debug("Webhook acknowledged", url=url, status=response.status)
                        return response.status

                    error_text = await response.text()
                    raise WebhookDeliveryError(f"HTTP {response.status}: {error_text[:200]}")
        except aiohttp.ClientError as e:
            raise WebhookDeliveryError(f"Network error: {e}") from e
