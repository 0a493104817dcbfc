"""
Operator alerts via Slack webhook and e-mail

Each channel is used only when configured. A failing channel is logged and
never propagates into the caller's loop.
"""

import logging
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(self, slack_webhook: Optional[str] = None,
                 smtp_server: str = "smtp.gmail.com", smtp_port: int = 587,
                 smtp_username: Optional[str] = None, smtp_password: Optional[str] = None,
                 notification_email: Optional[str] = None, title: str = "Staking Keeper"):
        self.slack_webhook = slack_webhook
        self.smtp_server = smtp_server
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.notification_email = notification_email
        self.title = title

    @classmethod
    def from_settings(cls, settings) -> "Notifier":
        return cls(
            slack_webhook=settings.slack_webhook,
            smtp_server=settings.smtp_server,
            smtp_port=settings.smtp_port,
            smtp_username=settings.smtp_username,
            smtp_password=settings.smtp_password,
            notification_email=settings.notification_email,
        )

    @property
    def email_configured(self) -> bool:
        return all([self.smtp_username, self.smtp_password, self.notification_email])

    def send_alert(self, message: str, stats: Optional[Dict[str, Any]] = None):
        """Send alert via email and/or Slack"""
        logger.error(f"ALERT: {message}")
        stats = stats or {}

        if self.email_configured:
            try:
                self._send_email_alert(message, stats)
            except Exception as e:
                logger.error(f"Failed to send email alert: {e}")

        if self.slack_webhook:
            try:
                self._send_slack_alert(message, stats)
            except Exception as e:
                logger.error(f"Failed to send Slack alert: {e}")

    def _send_email_alert(self, message: str, stats: Dict[str, Any]):
        msg = MIMEMultipart()
        msg['From'] = self.smtp_username
        msg['To'] = self.notification_email
        msg['Subject'] = f"{self.title} Alert"

        lines = "\n".join(f"- {name}: {value}" for name, value in stats.items())
        body = (
            f"{self.title} Alert\n\n"
            f"Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n"
            f"Message: {message}\n\n"
            f"Statistics:\n{lines}\n"
        )
        msg.attach(MIMEText(body, 'plain'))

        server = smtplib.SMTP(self.smtp_server, self.smtp_port)
        try:
            server.starttls()
            server.login(self.smtp_username, self.smtp_password)
            server.send_message(msg)
        finally:
            server.quit()
        logger.info("Email alert sent successfully")

    def _send_slack_alert(self, message: str, stats: Dict[str, Any]):
        payload = {
            "text": f"🚨 {self.title} Alert: {message}",
            "attachments": [
                {
                    "fields": [
                        {"title": name, "value": str(value), "short": True}
                        for name, value in stats.items()
                    ]
                }
            ]
        }
        response = requests.post(self.slack_webhook, json=payload, timeout=10)
        response.raise_for_status()
        logger.info("Slack alert sent successfully")
