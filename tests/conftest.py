"""Pytest configuration and fixtures."""

import os
import subprocess
from unittest.mock import MagicMock

# restreamer.web builds a module-level app from the environment on import
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("MONITOR_ENABLED", "false")

import pytest

from restreamer.config import AppConfig, DatabaseConfig, MediaServerConfig, MonitorConfig, NotifierConfig
from restreamer.database import create_session_factory
from restreamer.destinations import RepublishingDirectory
from restreamer.media_server import MediaServerClient
from restreamer.models import Caller
from restreamer.monitor import HealthMonitor
from restreamer.notifier import Notifier
from restreamer.registry import StreamRegistry
from restreamer.sessions import SessionTracker
from restreamer.stream_manager import LiveStreamManager
from restreamer.synthesizer import ConfigSynthesizer


class StubPublisher:
    def __init__(self, post_ids=None, error=None):
        self.post_ids = post_ids or ["post-1"]
        self.error = error
        self.calls = []

    def publish_post(self, user_id, message, account_ids):
        self.calls.append({"user_id": user_id, "message": message, "accounts": list(account_ids)})
        if self.error:
            raise self.error
        return list(self.post_ids)


@pytest.fixture(autouse=True)
def reload_commands(monkeypatch):
    """Stand in for pkill/systemctl so no test signals a real process."""
    run = MagicMock(return_value=subprocess.CompletedProcess(args=[], returncode=0))
    monkeypatch.setattr("restreamer.synthesizer.subprocess.run", run)
    return run


@pytest.fixture
def media_config(tmp_path):
    return MediaServerConfig(host="media.test", config_path=str(tmp_path / "media-server" / "rules.json"))


@pytest.fixture
def app_config(media_config):
    return AppConfig(
        media_server=media_config,
        monitor=MonitorConfig(enabled=False, interval_seconds=5, cycle_timeout=2),
        database=DatabaseConfig(url="sqlite://"),
        notifier=NotifierConfig(),
    )


@pytest.fixture
def session_factory():
    return create_session_factory(DatabaseConfig(url="sqlite://"))


@pytest.fixture
def client(media_config):
    client = MagicMock(spec=MediaServerClient)
    client.config = media_config
    client.create_rule.return_value = {"id": "rule-1"}
    client.fetch_stats.return_value = None
    return client


@pytest.fixture
def notifier():
    return MagicMock(spec=Notifier)


@pytest.fixture
def registry(session_factory, media_config):
    return StreamRegistry(session_factory, media_config)


@pytest.fixture
def tracker(session_factory):
    return SessionTracker(session_factory)


@pytest.fixture
def directory(session_factory):
    return RepublishingDirectory(session_factory)


@pytest.fixture
def synthesizer(registry, directory, client, media_config, notifier):
    return ConfigSynthesizer(registry, directory, client, media_config, notifier)


@pytest.fixture
def monitor(registry, tracker, directory, client, synthesizer):
    return HealthMonitor(
        registry,
        tracker,
        directory,
        client,
        MonitorConfig(interval_seconds=5, cycle_timeout=2),
        scheduler=MagicMock(running=False),
        synthesizer=synthesizer,
    )


@pytest.fixture
def publisher():
    return StubPublisher()


@pytest.fixture
def manager(app_config, session_factory, client, publisher, notifier, monitor):
    return LiveStreamManager(
        app_config,
        session_factory=session_factory,
        client=client,
        publisher=publisher,
        notifier=notifier,
        monitor=monitor,
    )


@pytest.fixture
def owner():
    return Caller(user_id="user-1")


@pytest.fixture
def stream(registry):
    return registry.create("user-1", {"title": "Morning show"})
