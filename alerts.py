"""Team alerts rendered for the console, Slack and email.

Every format is built from the same Alert, including its timestamp, so the
three renderings always carry the same facts.
"""

import logging
from dataclasses import dataclass, field

import slack_notifier
from models import LogEntry, Severity, utc_now

logger = logging.getLogger(__name__)

RULE = "═" * 80
MAX_SAMPLE_LOGS = 3

SEVERITY_EMOJI = {
    "low": ":blue_circle:",
    "medium": ":yellow_circle:",
    "high": ":red_circle:",
    "critical": ":rotating_light:",
}

SEVERITY_LOG_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}


@dataclass
class Alert:
    severity: Severity
    affected_services: list[str]
    issue_summary: str
    relevant_logs: list[LogEntry] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now)

    @property
    def services(self) -> str:
        return ", ".join(self.affected_services)

    @property
    def sample_logs(self) -> list[LogEntry]:
        return self.relevant_logs[:MAX_SAMPLE_LOGS]


def _log_line(log: LogEntry) -> str:
    return f"[{log.get('time')}] {log.get('service')}: {log.get('message')}"


def format_alert_for_console(alert: Alert) -> str:
    lines = [
        RULE,
        f"ALERT: {alert.severity.upper()} SEVERITY ISSUE",
        RULE,
        f"Services Affected: {alert.services}",
        f"Summary: {alert.issue_summary}",
    ]
    if alert.relevant_logs:
        lines.append("Sample Logs:")
        lines.extend(f"  {_log_line(log)}" for log in alert.sample_logs)
    lines.append(f"Timestamp: {alert.timestamp}")
    lines.append(RULE)
    return "\n".join(lines)


def format_alert_for_slack(alert: Alert) -> str:
    emoji = SEVERITY_EMOJI.get(alert.severity, ":grey_circle:")
    return (
        f"{emoji} *{alert.severity.upper()} ALERT*\n"
        f"*Services:* {alert.services}\n"
        f"*Issue:* {alert.issue_summary}\n"
        f"*Time:* {alert.timestamp}"
    )


def build_alert_blocks(alert: Alert) -> list:
    blocks = [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": format_alert_for_slack(alert)},
        }
    ]
    if alert.relevant_logs:
        sample = "\n".join(_log_line(log) for log in alert.sample_logs)
        blocks.append({
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": f"```{sample}```"}],
        })
    return blocks


def format_alert_for_email(alert: Alert) -> dict[str, str]:
    severity = alert.severity.upper()
    subject = f"[{severity}] Production Alert: {alert.services}"

    body = [
        f"<h2>Production Alert - {severity} Severity</h2>",
        f"<p><strong>Affected Services:</strong> {alert.services}</p>",
        "<p><strong>Issue Summary:</strong></p>",
        f"<p>{alert.issue_summary}</p>",
    ]
    if alert.relevant_logs:
        body.append("<h3>Sample Logs</h3>\n<ul>")
        for log in alert.sample_logs:
            body.append(
                f"<li>[{log.get('time')}] <strong>{log.get('service')}</strong>: {log.get('message')}</li>"
            )
        body.append("</ul>")
    body.append(f"<p><small>Alert generated at {alert.timestamp}</small></p>")
    return {"subject": subject, "body": "\n".join(body)}


def generate_alert_suggestion(severity: str) -> str:
    if severity == "critical":
        return "CRITICAL alert detected. Immediate action required. Page on-call engineer and initiate incident response."
    if severity == "high":
        return "High severity issue detected. Notify team lead and prioritize investigation."
    if severity == "medium":
        return "Medium severity issue detected. Plan investigation and fix within business hours."
    return "Low severity alert. Monitor trend and address during next sprint."


class TeamAlerter:
    """Emits alerts to the log and, when a channel is configured, to Slack."""

    def __init__(self, slack_channel: str | None = None):
        self.slack_channel = slack_channel

    async def alert_team(self, alert: Alert) -> dict:
        logger.log(
            SEVERITY_LOG_LEVELS.get(alert.severity, logging.WARNING),
            "\n%s", format_alert_for_console(alert),
        )

        if self.slack_channel:
            await slack_notifier.send_message(
                self.slack_channel,
                format_alert_for_slack(alert),
                blocks=build_alert_blocks(alert),
            )

        return {
            "success": True,
            "message": f"Alert sent for {alert.severity} severity issue in {alert.services}",
        }
