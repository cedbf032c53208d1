"""
Failure alerts by email.

The sink is chosen from configuration: SendGrid when SENDGRID_API_KEY is
set, MailChannels otherwise, and a log-only sink when the from/to
addresses are missing. ``alert_on_error`` never raises, so a broken sink
cannot hide the failure being reported.
"""

import html
from datetime import datetime, UTC
from typing import Any, Dict, Optional

import requests

from storefront_ingest.config import Config
from storefront_ingest.utils.logging_utils import log_error, log_event

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
MAILCHANNELS_URL = "https://api.mailchannels.net/tx/v1/send"
SENDER_NAME = "Storefront Ingest"
MAX_MESSAGE_CHARS = 4000


class AlertSink:
    """Delivers one alert message."""

    name = "base"

    def send(self, subject: str, body_html: str) -> None:
        raise NotImplementedError


class LogOnlySink(AlertSink):
    """Used when no addresses are configured: the alert is only logged."""

    name = "log"

    def send(self, subject: str, body_html: str) -> None:
        log_event("Alerts", "alert:skipped", reason="ALERT_EMAIL_FROM/TO not set", subject=subject)


class _HttpMailSink(AlertSink):
    url = ""

    def __init__(
        self,
        sender: str,
        recipient: str,
        session: Optional[requests.Session] = None,
        timeout: int = 15,
    ) -> None:
        self.sender = sender
        self.recipient = recipient
        self.session = session or requests.Session()
        self.timeout = timeout

    def headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def payload(self, subject: str, body_html: str) -> Dict[str, Any]:
        return {
            "personalizations": [{"to": [{"email": self.recipient}]}],
            "from": {"email": self.sender, "name": SENDER_NAME},
            "subject": subject,
            "content": [{"type": "text/html", "value": body_html}],
        }

    def send(self, subject: str, body_html: str) -> None:
        response = self.session.post(
            self.url,
            json=self.payload(subject, body_html),
            headers=self.headers(),
            timeout=self.timeout,
        )
        if not response.ok:
            raise RuntimeError(
                f"{self.name} failed: {response.status_code} {response.text[:400]}"
            )
        log_event("Alerts", "alert:sent", sink=self.name, subject=subject)


class SendGridSink(_HttpMailSink):
    name = "SendGrid"
    url = SENDGRID_URL

    def __init__(self, api_key: str, sender: str, recipient: str, **kwargs: Any) -> None:
        super().__init__(sender, recipient, **kwargs)
        self.api_key = api_key

    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}


class MailChannelsSink(_HttpMailSink):
    name = "MailChannels"
    url = MAILCHANNELS_URL


def get_alert_sink() -> AlertSink:
    """Pick the sink for the current configuration."""
    if not Config.alerting_configured():
        return LogOnlySink()
    sender = Config.ALERT_EMAIL_FROM.strip()
    recipient = Config.ALERT_EMAIL_TO.strip()
    api_key = Config.SENDGRID_API_KEY.strip()
    if api_key:
        return SendGridSink(api_key, sender, recipient)
    return MailChannelsSink(sender, recipient)


def format_alert(context: str, error: Any) -> str:
    """HTML body for a failure alert, with the message escaped and truncated."""
    message = (str(error) or type(error).__name__)[:MAX_MESSAGE_CHARS]
    return (
        f"<h3>{html.escape(context)} failed</h3>"
        f'<pre style="white-space:pre-wrap;font-family:monospace">{html.escape(message)}</pre>'
        f"<p>Time (UTC): {datetime.now(UTC).isoformat()}</p>"
    )


def alert_on_error(context: str, error: Any, sink: Optional[AlertSink] = None) -> None:
    """
    Send a failure alert, logging (never raising) if delivery fails.

    Args:
        context: What failed, e.g. 'Scheduled ingest'
        error: Exception or message
        sink: Override sink (defaults to get_alert_sink())
    """
    sink = sink or get_alert_sink()
    try:
        sink.send(f"{context} error", format_alert(context, error))
    except Exception as e:
        log_error("Alerts", f"alert:send_failed {type(e).__name__}: {e}")
