"""Configuration helpers for the republishing engine."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class MediaServerConfig:
    host: str = "localhost"
    rtmp_port: int = 1935
    stats_port: int = 8082
    api_port: int = 8082
    api_token: Optional[str] = None
    config_path: str = "./media-server/rules.json"
    process_name: str = "nimble"
    service_name: str = "nimble"
    request_timeout: float = 5.0
    reload_timeout: float = 5.0

    @property
    def stats_url(self) -> str:
        return f"http://{self.host}:{self.stats_port}"

    @property
    def api_url(self) -> str:
        return f"http://{self.host}:{self.api_port}"

    def ingest_url(self, app: str = "live") -> str:
        return f"rtmp://{self.host}:{self.rtmp_port}/{app}"


@dataclass
class MonitorConfig:
    enabled: bool = True
    interval_seconds: int = 30
    cycle_timeout: float = 10.0


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./restreamer.db"
    echo: bool = False


@dataclass
class NotifierConfig:
    webhook_url: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    email_from: Optional[str] = None
    email_to: Optional[str] = None


@dataclass
class AppConfig:
    project_name: str = "Stream Republisher"
    log_level: str = "INFO"
    media_server: MediaServerConfig = field(default_factory=MediaServerConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    notifier: NotifierConfig | None = None
    social_webhook_url: Optional[str] = None


def load_config() -> AppConfig:
    """Load configuration from environment variables."""
    media_server = MediaServerConfig(
        host=os.getenv("MEDIA_SERVER_HOST", "localhost"),
        rtmp_port=int(os.getenv("MEDIA_SERVER_RTMP_PORT", "1935")),
        stats_port=int(os.getenv("MEDIA_SERVER_STATS_PORT", "8082")),
        api_port=int(os.getenv("MEDIA_SERVER_API_PORT", "8082")),
        api_token=os.getenv("MEDIA_SERVER_API_TOKEN"),
        config_path=os.getenv("MEDIA_SERVER_CONFIG_PATH", "./media-server/rules.json"),
        process_name=os.getenv("MEDIA_SERVER_PROCESS", "nimble"),
        service_name=os.getenv("MEDIA_SERVER_SERVICE", "nimble"),
        request_timeout=float(os.getenv("MEDIA_SERVER_TIMEOUT", "5")),
        reload_timeout=float(os.getenv("RELOAD_TIMEOUT", "5")),
    )

    monitor = MonitorConfig(
        enabled=_env_bool("MONITOR_ENABLED", True),
        interval_seconds=int(os.getenv("MONITOR_INTERVAL_SECONDS", "30")),
        cycle_timeout=float(os.getenv("STATS_CYCLE_TIMEOUT", "10")),
    )

    database = DatabaseConfig(
        url=os.getenv("DATABASE_URL", "sqlite:///./restreamer.db"),
        echo=_env_bool("DATABASE_ECHO", False),
    )

    notifier = NotifierConfig(
        webhook_url=os.getenv("NOTIFY_WEBHOOK_URL"),
        smtp_host=os.getenv("SMTP_HOST"),
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        smtp_username=os.getenv("SMTP_USERNAME"),
        smtp_password=os.getenv("SMTP_PASSWORD"),
        email_from=os.getenv("NOTIFY_EMAIL_FROM"),
        email_to=os.getenv("NOTIFY_EMAIL_TO"),
    )

    return AppConfig(
        project_name=os.getenv("PROJECT_NAME", "Stream Republisher"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        media_server=media_server,
        monitor=monitor,
        database=database,
        notifier=notifier,
        social_webhook_url=os.getenv("SOCIAL_WEBHOOK_URL"),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
