"""Notification dispatch for triggered alert events."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...comm.chat import ChatWebhookClient
from ...comm.email import ResendEmailClient
from ...comm.webhooks import ALERT_EVENT_TRIGGERED, WebhookPoster
from ...config.logging import get_logger
from ...config.settings import Settings, get_settings
from ...ormdb.database import SessionFactory, get_session_factory, session_scope
from ...ormdb.repositories import (
    AlertEventRepository,
    InAppNotificationRepository,
    NotificationDeliveryRepository,
    NotificationPreferenceRepository,
    OrganizationRepository,
)
from ...utils.clock import Clock, utcnow
from ...webapi.exceptions import NotFoundError
from ..rule_evaluator import describe_window
from .channels import (
    EmailNotificationChannel,
    NotificationChannelProtocol,
    SlackNotificationChannel,
    TeamsNotificationChannel,
    TelegramNotificationChannel,
    WebhookNotificationChannel,
)
from .formatting import format_in_app
from .models import (
    AlertNotice,
    DispatchResult,
    NotificationChannel,
    NotificationResult,
    retry_delay,
)

logger = get_logger(__name__)


@dataclass
class OrgChannelConfig:
    """Where an organization's alerts go, loaded once per dispatch."""

    org_id: int
    org_name: str
    email_recipients: List[str] = field(default_factory=list)
    telegram_bot_token: Optional[str] = None
    telegram_chat_ids: List[str] = field(default_factory=list)
    webhooks: List[Dict[str, str]] = field(default_factory=list)
    slack_webhook_url: Optional[str] = None
    teams_webhook_url: Optional[str] = None

    def send_options(
        self, channel: NotificationChannel, recipient: Optional[str]
    ) -> Optional[Dict[str, Any]]:
        """
        Keyword arguments a channel needs to reach a recipient.

        Returns:
            The options, or None if the recipient is no longer configured
        """
        if channel == NotificationChannel.EMAIL:
            return {} if recipient in self.email_recipients else None
        if channel == NotificationChannel.TELEGRAM:
            if self.telegram_bot_token and recipient in self.telegram_chat_ids:
                return {"bot_token": self.telegram_bot_token}
            return None
        if channel == NotificationChannel.WEBHOOK:
            for webhook in self.webhooks:
                if webhook["url"] == recipient:
                    return {"secret": webhook["secret"]}
            return None
        if channel == NotificationChannel.SLACK:
            return {} if recipient and recipient == self.slack_webhook_url else None
        if channel == NotificationChannel.TEAMS:
            return {} if recipient and recipient == self.teams_webhook_url else None
        return None


@dataclass
class PlannedDelivery:
    """One external send, tracked by its NotificationDelivery row."""

    channel: NotificationChannel
    recipient: str
    options: Dict[str, Any] = field(default_factory=dict)
    delivery_id: Optional[int] = None
    attempt: int = 1


@dataclass
class ClaimedAlert:
    """An alert event this process owns, with its deliveries already recorded."""

    notice: AlertNotice
    planned: List[PlannedDelivery]
    in_app_error: Optional[str] = None


def _unique(values: List[str]) -> List[str]:
    seen = set()
    ordered = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


class NotificationDispatcher:
    """
    Delivers triggered alerts on every channel an organization configured.

    Dispatch of one alert event happens in two steps. First, one
    transaction claims the event, writes the in-app notification and opens
    a pending delivery row per external send. If that transaction fails
    nothing is kept, so the event stays undispatched and the next run picks
    it up again. Then the external sends run concurrently, each with its
    own timeout, and a second transaction records their outcomes and
    queues retries for the ones that failed.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        email_channel: Optional[NotificationChannelProtocol] = None,
        telegram_channel: Optional[NotificationChannelProtocol] = None,
        webhook_channel: Optional[NotificationChannelProtocol] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        slack_channel: Optional[NotificationChannelProtocol] = None,
        teams_channel: Optional[NotificationChannelProtocol] = None,
    ):
        settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.clock = clock
        self.logger = logger.bind(service="notification_dispatcher")

        dashboard_url = settings.dashboard_url()
        chat_client = ChatWebhookClient(timeout_seconds=settings.chat_timeout_seconds)
        self.channels: Dict[NotificationChannel, NotificationChannelProtocol] = {
            NotificationChannel.EMAIL: email_channel
            or EmailNotificationChannel(
                ResendEmailClient(
                    settings.resend_api_key,
                    sender=settings.email_from,
                    timeout_seconds=settings.email_timeout_seconds,
                ),
                dashboard_url,
                timeout_seconds=settings.email_timeout_seconds,
            ),
            NotificationChannel.TELEGRAM: telegram_channel
            or TelegramNotificationChannel(
                dashboard_url, timeout_seconds=settings.telegram_timeout_seconds
            ),
            NotificationChannel.WEBHOOK: webhook_channel
            or WebhookNotificationChannel(
                WebhookPoster(timeout_seconds=settings.webhook_timeout_seconds),
                timeout_seconds=settings.webhook_timeout_seconds,
            ),
            NotificationChannel.SLACK: slack_channel
            or SlackNotificationChannel(
                chat_client, dashboard_url, timeout_seconds=settings.chat_timeout_seconds
            ),
            NotificationChannel.TEAMS: teams_channel
            or TeamsNotificationChannel(
                chat_client, dashboard_url, timeout_seconds=settings.chat_timeout_seconds
            ),
        }

    async def dispatch(self, org_id: int, event_ids: List[int]) -> DispatchResult:
        """
        Notify about alert events of an organization.

        Events already claimed by an earlier or concurrent dispatch are
        skipped, so passing an event twice never notifies twice. Failures
        are reported in the result and never raised.

        Args:
            org_id: Organization ID
            event_ids: Alert events to deliver

        Returns:
            DispatchResult with per-channel success counts and errors
        """
        result = DispatchResult()
        if not event_ids:
            return result

        try:
            config = self.load_channel_config(org_id)
        except Exception as e:
            self.logger.error(
                "Failed to load channel configuration",
                org_id=org_id,
                error=str(e),
                exc_info=True,
            )
            result.errors.append(f"Failed to load channel configuration for org {org_id}: {e}")
            return result

        for event_id in event_ids:
            try:
                claimed = self.claim_event(config, event_id)
            except IntegrityError:
                self.logger.info("Alert event claimed concurrently", event_id=event_id)
                continue
            except Exception as e:
                self.logger.error(
                    "Failed to claim alert event",
                    org_id=org_id,
                    event_id=event_id,
                    error=str(e),
                    exc_info=True,
                )
                result.errors.append(f"Failed to dispatch alert event {event_id}: {e}")
                continue

            if claimed is None:
                self.logger.debug("Alert event already dispatched", event_id=event_id)
                continue

            await self.deliver(claimed, result)

        self.logger.info(
            "Alert dispatch completed",
            org_id=org_id,
            alerts=len(event_ids),
            sent_email=result.sent_email,
            sent_telegram=result.sent_telegram,
            sent_webhook=result.sent_webhook,
            sent_slack=result.sent_slack,
            sent_teams=result.sent_teams,
            sent_in_app=result.sent_in_app,
            failed=result.failed,
        )
        return result

    def load_channel_config(self, org_id: int) -> OrgChannelConfig:
        """
        Resolve recipients, Telegram chats and webhooks of an organization.

        Raises:
            NotFoundError: If the organization does not exist
        """
        with session_scope(self.session_factory) as session:
            organizations = OrganizationRepository(session)
            org = organizations.get_organization(org_id)
            if org is None:
                raise NotFoundError("Organization", str(org_id))

            preferences = NotificationPreferenceRepository(session)
            emails = []
            chat_ids = [org.telegram_chat_id] if org.telegram_chat_id else []

            for user, _membership in organizations.get_alert_recipients(org_id):
                preference = preferences.get_or_create_preference(org_id, user.id)
                if preference.email_enabled:
                    emails.append(user.email)
                if preference.telegram_enabled and preference.telegram_chat_id:
                    chat_ids.append(preference.telegram_chat_id)

            webhooks = [
                {"url": webhook.url, "secret": webhook.secret}
                for webhook in organizations.get_webhooks_for_event(
                    org_id, ALERT_EVENT_TRIGGERED
                )
            ]

            return OrgChannelConfig(
                org_id=org.id,
                org_name=org.name,
                email_recipients=_unique(emails),
                telegram_bot_token=org.telegram_bot_token,
                telegram_chat_ids=_unique(chat_ids),
                webhooks=webhooks,
                slack_webhook_url=org.slack_webhook_url or None,
                teams_webhook_url=org.teams_webhook_url or None,
            )

    def load_notice(self, config: OrgChannelConfig, event_id: int) -> AlertNotice:
        """
        Build the notice describing one alert event.

        Raises:
            NotFoundError: If the event does not exist in the organization
        """
        with session_scope(self.session_factory) as session:
            return self._build_notice(session, config, event_id)

    def claim_event(self, config: OrgChannelConfig, event_id: int) -> Optional[ClaimedAlert]:
        """
        Claim an event and record its in-app notification and pending deliveries.

        Everything happens in one transaction: either the event ends up
        claimed with all its delivery rows, or nothing is written.

        Returns:
            The claimed alert, or None if the event was already dispatched

        Raises:
            IntegrityError: If another dispatcher claimed the event first
        """
        now = self.clock()
        with session_scope(self.session_factory) as session:
            events = AlertEventRepository(session)
            if events.is_dispatched(event_id):
                return None

            notice = self._build_notice(session, config, event_id)
            events.claim_dispatch(event_id, config.org_id, now)
            in_app_error = self._add_in_app(session, notice)

            deliveries = NotificationDeliveryRepository(session)
            in_app = deliveries.start_delivery(
                notice.org_id,
                NotificationChannel.IN_APP.value,
                recipient=None,
                alert_event_id=event_id,
                now=now,
            )
            deliveries.finish_delivery(in_app.id, in_app_error is None, in_app_error, now)

            planned = self._plan_deliveries(config)
            for delivery in planned:
                row = deliveries.start_delivery(
                    notice.org_id,
                    delivery.channel.value,
                    recipient=delivery.recipient,
                    alert_event_id=event_id,
                    now=now,
                )
                delivery.delivery_id = row.id

        return ClaimedAlert(notice=notice, planned=planned, in_app_error=in_app_error)

    async def deliver(self, claimed: ClaimedAlert, result: DispatchResult) -> None:
        """Run the external sends of a claimed alert and record their outcomes."""
        notice = claimed.notice
        if claimed.in_app_error is None:
            result.count_success(NotificationChannel.IN_APP)
        else:
            result.failed += 1
            result.errors.append(
                f"In-app notification failed for event {notice.event_id}: {claimed.in_app_error}"
            )

        if not claimed.planned:
            return

        outcomes = await self.send_planned(notice, claimed.planned)
        self.record_outcomes(notice.event_id, claimed.planned, outcomes, result)
        self.tally(claimed.planned, outcomes, result)

    async def send_planned(
        self, notice: AlertNotice, planned: List[PlannedDelivery]
    ) -> List[NotificationResult]:
        """Send every planned delivery concurrently, one result per delivery."""
        outcomes = await asyncio.gather(
            *[
                self.channels[delivery.channel].send_notification(
                    notice, delivery.recipient, **delivery.options
                )
                for delivery in planned
            ],
            return_exceptions=True,
        )

        results = []
        for delivery, outcome in zip(planned, outcomes):
            if isinstance(outcome, Exception):
                # Channels report failures as results; this is a bug in one
                self.logger.error(
                    "Channel delivery raised exception",
                    channel=delivery.channel.value,
                    error=str(outcome),
                    exc_info=outcome,
                )
                outcome = NotificationResult(
                    channel=delivery.channel,
                    success=False,
                    recipient=delivery.recipient,
                    error=str(outcome) or type(outcome).__name__,
                    delivery_time_ms=0,
                )
            results.append(outcome)
        return results

    def record_outcomes(
        self,
        event_id: Optional[int],
        planned: List[PlannedDelivery],
        results: List[NotificationResult],
        result: DispatchResult,
    ) -> None:
        """
        Close the pending rows of sent deliveries and queue retries.

        A failure here leaves the rows pending; the retry job re-queues
        pending rows once they are stale.
        """
        try:
            self._finish_deliveries(planned, results)
        except Exception as e:
            self.logger.error(
                "Failed to record delivery outcomes",
                event_id=event_id,
                error=str(e),
                exc_info=True,
            )
            result.errors.append(f"Failed to record deliveries for event {event_id}: {e}")

    def tally(
        self,
        planned: List[PlannedDelivery],
        results: List[NotificationResult],
        result: DispatchResult,
    ) -> None:
        """Add delivery outcomes to the per-channel counts."""
        for delivery, outcome in zip(planned, results):
            if outcome.success:
                result.count_success(delivery.channel)
            else:
                result.failed += 1
                result.errors.append(self._describe_failure(delivery, outcome.error))

    def _build_notice(
        self, session: Session, config: OrgChannelConfig, event_id: int
    ) -> AlertNotice:
        event = AlertEventRepository(session).get_event(event_id)
        if event is None or event.org_id != config.org_id:
            raise NotFoundError("AlertEvent", str(event_id))

        rule = event.rule
        extra = event.extra_data or {}
        threshold = extra.get("threshold_eur")
        if threshold is not None:
            threshold = Decimal(threshold)
        elif rule.threshold_eur is not None:
            threshold = Decimal(str(rule.threshold_eur))

        return AlertNotice(
            org_id=config.org_id,
            org_name=config.org_name,
            rule_id=rule.id,
            rule_name=rule.name,
            event_id=event.id,
            amount_eur=Decimal(str(event.amount_eur)),
            threshold_eur=threshold,
            window_label=extra.get("window")
            or describe_window(rule.rule_type, rule.window_days),
            message=event.message,
            triggered_at=event.triggered_at,
        )

    def _add_in_app(self, session: Session, notice: AlertNotice) -> Optional[str]:
        title, body = format_in_app(notice)
        try:
            # Savepoint, so a failed write leaves the claim and delivery rows intact
            with session.begin_nested():
                InAppNotificationRepository(session).add_notification(
                    org_id=notice.org_id,
                    title=title,
                    body=body,
                    alert_event_id=notice.event_id,
                )
        except Exception as e:
            self.logger.error(
                "In-app notification failed",
                org_id=notice.org_id,
                event_id=notice.event_id,
                error=str(e),
                exc_info=True,
            )
            return str(e) or type(e).__name__
        return None

    def _plan_deliveries(self, config: OrgChannelConfig) -> List[PlannedDelivery]:
        planned = [
            PlannedDelivery(NotificationChannel.EMAIL, email)
            for email in config.email_recipients
        ]

        if config.telegram_bot_token:
            planned.extend(
                PlannedDelivery(
                    NotificationChannel.TELEGRAM,
                    chat_id,
                    {"bot_token": config.telegram_bot_token},
                )
                for chat_id in config.telegram_chat_ids
            )
        elif config.telegram_chat_ids:
            self.logger.debug(
                "Telegram chats configured without bot token, skipping",
                org_id=config.org_id,
            )

        planned.extend(
            PlannedDelivery(
                NotificationChannel.WEBHOOK,
                webhook["url"],
                {"secret": webhook["secret"]},
            )
            for webhook in config.webhooks
        )

        if config.slack_webhook_url:
            planned.append(PlannedDelivery(NotificationChannel.SLACK, config.slack_webhook_url))
        if config.teams_webhook_url:
            planned.append(PlannedDelivery(NotificationChannel.TEAMS, config.teams_webhook_url))
        return planned

    def _finish_deliveries(
        self, planned: List[PlannedDelivery], results: List[NotificationResult]
    ) -> None:
        now = self.clock()
        with session_scope(self.session_factory) as session:
            deliveries = NotificationDeliveryRepository(session)
            for delivery, outcome in zip(planned, results):
                deliveries.finish_delivery(
                    delivery.delivery_id, outcome.success, outcome.error, now
                )
                if outcome.success or not outcome.retryable:
                    continue

                next_retry_at = self.next_retry_at(delivery.attempt, now)
                if next_retry_at is not None:
                    deliveries.schedule_retry(delivery.delivery_id, next_retry_at, now)

    @staticmethod
    def next_retry_at(attempt: int, now: datetime) -> Optional[datetime]:
        """When to try again after a failed attempt, None once attempts run out."""
        delay = retry_delay(attempt)
        return now + delay if delay is not None else None

    @staticmethod
    def _describe_failure(delivery: PlannedDelivery, error: Optional[str]) -> str:
        if delivery.channel == NotificationChannel.EMAIL:
            return f"Email failed for {delivery.recipient}: {error}"
        if delivery.channel == NotificationChannel.TELEGRAM:
            return f"Telegram failed for chat {delivery.recipient}: {error}"
        # Chat webhook URLs carry their credentials, keep them out of errors
        if delivery.channel == NotificationChannel.SLACK:
            return f"Slack failed: {error}"
        if delivery.channel == NotificationChannel.TEAMS:
            return f"Teams failed: {error}"
        return f"Webhook failed for {delivery.recipient}: {error}"
