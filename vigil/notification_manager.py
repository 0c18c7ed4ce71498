import asyncio
import logging
import os
from typing import List, Optional
from urllib.parse import quote, urlencode

import apprise

from models import Alert, AlertRule

logger = logging.getLogger("vigil.notifications")

# Configuration
SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
EMAIL_FROM = os.getenv("EMAIL_FROM", "")
ALERT_EMAIL = os.getenv("ALERT_EMAIL", "")
ALERT_NOTIFY_URLS = os.getenv("ALERT_NOTIFY_URLS", "")
NOTIFY_TIMEOUT_SECONDS = float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "10"))


def build_mailto_url(host: str, port: int, user: str = "", password: str = "",
                     sender: str = "", recipient: str = "") -> Optional[str]:
    """Apprise mailto:// URL for the SMTP settings, or None if email is not configured."""
    if not host or not recipient:
        return None

    auth = ""
    if user:
        auth = quote(user, safe="")
        if password:
            auth += ":" + quote(password, safe="")
        auth += "@"

    query = {"smtp": host, "to": recipient}
    if sender:
        query["from"] = sender
    return f"mailto://{auth}{host}:{port}?{urlencode(query)}"


def parse_notify_urls(value: str) -> List[str]:
    return [url.strip() for url in value.split(",") if url.strip()]


class NotificationManager:
    """
    Sends fired alerts through Apprise.

    Targets are the SMTP mailbox (when configured) plus any extra Apprise URLs
    (Discord, Slack, webhooks...) listed in ALERT_NOTIFY_URLS.
    """

    def __init__(self, urls: List[str] = None, timeout: float = NOTIFY_TIMEOUT_SECONDS):
        if urls is None:
            urls = []
            mailto = build_mailto_url(SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASSWORD,
                                      EMAIL_FROM, ALERT_EMAIL)
            if mailto:
                urls.append(mailto)
            urls.extend(parse_notify_urls(ALERT_NOTIFY_URLS))

        self.urls = urls
        self.timeout = timeout
        self.aprobj = apprise.Apprise()
        for url in self.urls:
            if not self.aprobj.add(url):
                logger.warning(f"Ignoring invalid notification URL: {url.split('://', 1)[0]}://...")

    @property
    def configured(self) -> bool:
        return len(self.aprobj) > 0

    @staticmethod
    def format_alert(alert: Alert, rule: AlertRule):
        title = f"Alert: {rule.description}"
        body = (
            f"Alert triggered at {alert.timestamp.isoformat()}\n\n"
            f"Agent: {alert.agent_id}\n"
            f"Rule: {rule.description}\n"
            f"Message: {alert.message}\n"
        )
        return title, body

    async def notify(self, alert: Alert, rule: AlertRule) -> bool:
        """Deliver an alert to every configured target. False when nothing was sent."""
        if not self.configured:
            logger.debug("No notification targets configured, skipping alert delivery")
            return False

        title, body = self.format_alert(alert, rule)
        try:
            success = await asyncio.wait_for(
                self.aprobj.async_notify(title=title, body=body),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Notification for alert {alert.id} timed out after {self.timeout}s")
            return False

        logger.info(f"Notification {'sent' if success else 'FAILED'} for alert {alert.id}")
        return bool(success)

    async def test_channel(self, url: str) -> bool:
        """Test a specific Apprise URL"""
        ap = apprise.Apprise()
        if not ap.add(url):
            return False
        try:
            return await asyncio.wait_for(
                ap.async_notify(
                    title="Vigil Test",
                    body="This is a test notification from Vigil.",
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Test notification timed out after {self.timeout}s")
            return False


# Singleton instance
_notification_manager: Optional[NotificationManager] = None


def get_notification_manager() -> NotificationManager:
    global _notification_manager
    if _notification_manager is None:
        _notification_manager = NotificationManager()
    return _notification_manager
