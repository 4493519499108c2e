import smtplib
from unittest.mock import MagicMock

import pytest
import requests

from restreamer.config import NotifierConfig
from restreamer.notifier import Notifier, WebhookAnnouncementPublisher


class DummySMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.sent_messages = []
        DummySMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    def starttls(self, context=None):
        return None

    def login(self, username, password):
        self.username = username

    def send_message(self, message):
        self.sent_messages.append(message)


@pytest.fixture
def post(monkeypatch):
    post = MagicMock()
    monkeypatch.setattr("restreamer.notifier.requests.post", post)
    return post


def test_notify_posts_to_webhook(post):
    Notifier(NotifierConfig(webhook_url="https://hooks.test/ops")).notify("Stream live", "Session started")

    post.assert_called_once_with(
        "https://hooks.test/ops", json={"subject": "Stream live", "message": "Session started"}, timeout=10
    )


def test_notify_swallows_webhook_errors(post):
    post.side_effect = requests.ConnectionError("refused")

    Notifier(NotifierConfig(webhook_url="https://hooks.test/ops")).notify("Stream live", "Session started")


def test_notify_sends_email(monkeypatch):
    DummySMTP.instances.clear()
    monkeypatch.setattr(smtplib, "SMTP", DummySMTP)
    config = NotifierConfig(
        smtp_host="smtp.test",
        smtp_username="bot",
        smtp_password="pw",
        email_from="bot@test",
        email_to="ops@test",
    )

    Notifier(config).notify("Stream ended", "Session closed after 60s")

    smtp = DummySMTP.instances[0]
    assert (smtp.host, smtp.port) == ("smtp.test", 587)
    assert smtp.username == "bot"
    assert smtp.sent_messages[0]["Subject"] == "Stream ended"


def test_notify_without_channels_does_nothing(post):
    Notifier(NotifierConfig()).notify("Stream live", "ignored")
    post.assert_not_called()


def test_webhook_publisher_returns_post_ids(post):
    response = MagicMock(content=b'{"post_ids": [11, "p2"]}')
    response.json.return_value = {"post_ids": [11, "p2"]}
    post.return_value = response
    publisher = WebhookAnnouncementPublisher("https://social.test/posts", timeout=3)

    post_ids = publisher.publish_post("user-1", "Live now", ["acct-1"])

    assert post_ids == ["11", "p2"]
    post.assert_called_once_with(
        "https://social.test/posts",
        json={"user_id": "user-1", "message": "Live now", "accounts": ["acct-1"], "post_type": "text"},
        timeout=3,
    )


def test_webhook_publisher_propagates_errors(post):
    response = MagicMock()
    response.raise_for_status.side_effect = requests.HTTPError("500")
    post.return_value = response

    with pytest.raises(requests.HTTPError):
        WebhookAnnouncementPublisher("https://social.test/posts").publish_post("user-1", "Live now", [])
