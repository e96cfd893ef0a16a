"""Channel-specific rendering of triggered alerts."""

from html import escape
from typing import Any, Dict, Tuple

from ...utils.clock import isoformat_z
from .models import AlertNotice, AlertSeverity

SEVERITY_EMOJIS = {
    AlertSeverity.WARNING: "⚠️",
    AlertSeverity.CRITICAL: "🔴",
}

SEVERITY_COLORS = {
    AlertSeverity.WARNING: "#f59e0b",
    AlertSeverity.CRITICAL: "#dc2626",
}

RECOMMENDATION = (
    "Review your spending and consider adjusting your alert threshold "
    "or optimizing costs."
)


def eur(amount) -> str:
    """Render an amount as euros with two decimals."""
    if amount is None:
        return "n/a"
    return f"€{amount:.2f}"


def _usage(notice: AlertNotice) -> str:
    usage = notice.usage_percent
    return "n/a" if usage is None else f"{usage:.1f}%"


def format_email(notice: AlertNotice, dashboard_url: str) -> Tuple[str, str]:
    """
    Format an alert as an HTML email.

    Returns:
        Tuple of (subject, html)
    """
    severity = notice.severity
    emoji = SEVERITY_EMOJIS[severity]
    status = severity.name
    color = SEVERITY_COLORS[severity]

    subject = f"{emoji} {status}: {notice.rule_name} - {notice.org_name}"

    html = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
  <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
    <div style="background: {color}; color: white; padding: 20px; border-radius: 8px 8px 0 0;">
      <h1 style="margin: 0;">{emoji} {status} Alert</h1>
    </div>
    <div style="background: #f9fafb; padding: 20px; border-radius: 0 0 8px 8px;">
      <h2>{escape(notice.rule_name)}</h2>
      <p><strong>Organization:</strong> {escape(notice.org_name)}</p>
      <p><strong>Window:</strong> {escape(notice.window_label)}</p>
      <p><strong>Current Spend:</strong> {eur(notice.amount_eur)}</p>
      <p><strong>Threshold:</strong> {eur(notice.threshold_eur)}</p>
      <p><strong>Usage:</strong> {_usage(notice)}</p>
      <p>{escape(notice.message)}</p>
      <p><strong>Recommendation:</strong> {RECOMMENDATION}</p>
      <a href="{escape(dashboard_url)}" style="display: inline-block; padding: 12px 24px; background: #6366f1; color: white; text-decoration: none; border-radius: 6px;">View Dashboard</a>
    </div>
    <p style="font-size: 12px; color: #6b7280;">This is an automated alert from Pulse. You can manage your notification preferences in your account settings.</p>
  </div>
</body>
</html>"""

    return subject, html


def format_telegram(notice: AlertNotice, dashboard_url: str) -> str:
    """Format an alert as a Telegram message using HTML parse mode."""
    severity = notice.severity
    emoji = SEVERITY_EMOJIS[severity]

    lines = [
        f"{emoji} <b>{severity.name} Alert</b>",
        "",
        f"<b>Alert:</b> {escape(notice.rule_name)}",
        f"<b>Organization:</b> {escape(notice.org_name)}",
        f"<b>Window:</b> {escape(notice.window_label)}",
        "",
        f"<b>Current Spend:</b> {eur(notice.amount_eur)}",
        f"<b>Threshold:</b> {eur(notice.threshold_eur)}",
        f"<b>Usage:</b> {_usage(notice)}",
        "",
        f'<a href="{escape(dashboard_url)}">View Dashboard</a>',
    ]
    return "\n".join(lines)


def format_in_app(notice: AlertNotice) -> Tuple[str, str]:
    """
    Format an alert for the dashboard notification feed.

    Returns:
        Tuple of (title, body)
    """
    emoji = SEVERITY_EMOJIS[notice.severity]
    title = f"{emoji} {notice.rule_name}"
    body = (
        f"{eur(notice.amount_eur)} spent over the {notice.window_label} "
        f"(threshold {eur(notice.threshold_eur)})"
    )
    return title, body


def webhook_data(notice: AlertNotice) -> Dict[str, Any]:
    """Payload ``data`` section for an ``alert_event.triggered`` webhook."""
    return {
        "alertEventId": notice.event_id,
        "ruleId": notice.rule_id,
        "ruleName": notice.rule_name,
        "amountEUR": str(notice.amount_eur),
        "thresholdEUR": str(notice.threshold_eur) if notice.threshold_eur is not None else None,
        "window": notice.window_label,
        "severity": notice.severity.value,
        "message": notice.message,
        "triggeredAt": isoformat_z(notice.triggered_at),
    }


def chat_title(notice: AlertNotice) -> str:
    """Headline shared by the Slack and Teams messages."""
    emoji = SEVERITY_EMOJIS[notice.severity]
    return f"{emoji} {notice.severity.name}: {notice.rule_name} - {notice.org_name}"


def format_slack(notice: AlertNotice, dashboard_url: str) -> str:
    """Format an alert as Slack mrkdwn."""
    lines = [
        f"*{chat_title(notice)}*",
        f"*Window:* {notice.window_label}",
        f"*Current Spend:* {eur(notice.amount_eur)}",
        f"*Threshold:* {eur(notice.threshold_eur)}",
        f"*Usage:* {_usage(notice)}",
        f"<{dashboard_url}|View Dashboard>",
    ]
    return "\n".join(lines)


def format_teams(notice: AlertNotice, dashboard_url: str) -> str:
    """Format an alert as MessageCard markdown; the title is sent separately."""
    lines = [
        f"**Window:** {notice.window_label}",
        f"**Current Spend:** {eur(notice.amount_eur)}",
        f"**Threshold:** {eur(notice.threshold_eur)}",
        f"**Usage:** {_usage(notice)}",
        f"[View Dashboard]({dashboard_url})",
    ]
    # MessageCard text needs a blank line for a line break
    return "\n\n".join(lines)
