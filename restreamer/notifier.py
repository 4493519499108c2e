"""Operator notifications and go-live announcements."""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import List, Protocol, Sequence

import requests

from .config import NotifierConfig

logger = logging.getLogger(__name__)


class Notifier:
    """Send webhook or email notifications for stream lifecycle events."""

    def __init__(self, config: NotifierConfig):
        self.config = config

    def notify(self, subject: str, message: str) -> None:
        if self.config.webhook_url:
            self._send_webhook(subject, message)
        if self.config.smtp_host and self.config.email_from and self.config.email_to:
            self._send_email(subject, message)

    def _send_webhook(self, subject: str, message: str) -> None:
        payload = {"subject": subject, "message": message}
        try:
            response = requests.post(self.config.webhook_url, json=payload, timeout=10)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Failed to send webhook: %s", exc)

    def _send_email(self, subject: str, message: str) -> None:
        email = EmailMessage()
        email["From"] = self.config.email_from or ""
        email["To"] = self.config.email_to or ""
        email["Subject"] = subject
        email.set_content(message)

        context = ssl.create_default_context()
        try:
            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=10) as smtp:
                smtp.starttls(context=context)
                if self.config.smtp_username and self.config.smtp_password:
                    smtp.login(self.config.smtp_username, self.config.smtp_password)
                smtp.send_message(email)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send email: %s", exc)


class AnnouncementPublisher(Protocol):
    """The social publishing pipeline, as seen from the streaming engine."""

    def publish_post(self, user_id: str, message: str, account_ids: Sequence[str]) -> List[str]:
        """Publish ``message`` to the given accounts and return the resulting post ids."""


class WebhookAnnouncementPublisher:
    """Hand go-live posts to the publishing pipeline through its intake webhook."""

    def __init__(self, webhook_url: str, timeout: float = 10):
        self.webhook_url = webhook_url
        self.timeout = timeout

    def publish_post(self, user_id: str, message: str, account_ids: Sequence[str]) -> List[str]:
        payload = {
            "user_id": user_id,
            "message": message,
            "accounts": list(account_ids),
            "post_type": "text",
        }
        response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        body = response.json() if response.content else {}
        return [str(post_id) for post_id in body.get("post_ids", [])]
