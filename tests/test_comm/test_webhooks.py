"""Tests for signed webhook delivery."""

import hashlib
import hmac
import json
import sys

import pytest

sys.path.append("src")
from pulse.comm.webhooks import (
    ALERT_EVENT_TRIGGERED,
    USER_AGENT,
    WebhookDeliveryError,
    WebhookPoster,
    build_delivery,
    sign_payload,
)


class TestSigning:
    def test_signature_covers_timestamp_and_body(self):
        expected = hmac.new(
            b"whsec", b'2026-03-15T12:00:00.000Z.{"a":1}', hashlib.sha256
        ).hexdigest()

        assert sign_payload("whsec", "2026-03-15T12:00:00.000Z", '{"a":1}') == expected

    def test_build_delivery_headers_and_body(self):
        body, headers = build_delivery(
            "whsec",
            ALERT_EVENT_TRIGGERED,
            7,
            {"ruleId": 1},
            timestamp="2026-03-15T12:00:00.000Z",
            delivery_id="d-1",
        )

        payload = json.loads(body)
        assert payload == {
            "event": "alert_event.triggered",
            "timestamp": "2026-03-15T12:00:00.000Z",
            "orgId": 7,
            "data": {"ruleId": 1},
        }
        assert headers["User-Agent"] == USER_AGENT
        assert headers["X-Pulse-Event"] == ALERT_EVENT_TRIGGERED
        assert headers["X-Pulse-Id"] == "d-1"
        assert headers["X-Pulse-Timestamp"] == "2026-03-15T12:00:00.000Z"
        assert headers["X-Pulse-Signature"] == "sha256=" + sign_payload(
            "whsec", "2026-03-15T12:00:00.000Z", body
        )


class TestWebhookPoster:
    @pytest.mark.asyncio
    async def test_post_returns_status(self, patch_client_session):
        mocks = patch_client_session("pulse.comm.webhooks")
        mocks["response"].status = 204

        status = await WebhookPoster().post(
            "https://hooks.example.test/pulse", "whsec", ALERT_EVENT_TRIGGERED, 7, {}
        )

        assert status == 204
        call = mocks["session"].post.call_args
        assert call[0][0] == "https://hooks.example.test/pulse"
        assert call[1]["headers"]["X-Pulse-Signature"].startswith("sha256=")

    @pytest.mark.asyncio
    async def test_non_2xx_is_failure(self, patch_client_session):
        mocks = patch_client_session("pulse.comm.webhooks")
        mocks["response"].status = 500
        mocks["response"].text.return_value = "upstream down"

        with pytest.raises(WebhookDeliveryError, match="HTTP 500: upstream down"):
            await WebhookPoster().post(
                "https://hooks.example.test/pulse", "whsec", ALERT_EVENT_TRIGGERED, 7, {}
            )
