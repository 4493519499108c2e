"""Periodic reconciliation of stored stream state against media server stats."""

from __future__ import annotations

import datetime as dt
import logging
import time
from typing import Any, Dict, Mapping, Optional, Set

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from dateutil.tz import tzutc

from .config import MonitorConfig
from .destinations import RepublishingDirectory
from .media_server import MediaServerClient
from .models import CycleReport, DestinationStatus, Stream, StreamStatus
from .registry import StreamRegistry
from .sessions import SessionTracker
from .stats import (
    DEFAULT_APP,
    accumulate_viewers,
    extract_applications,
    extract_metrics,
    extract_streams,
    is_broadcast_active,
    stream_key_of,
    viewer_count,
)
from .synthesizer import ConfigSynthesizer

logger = logging.getLogger(__name__)

JOB_ID = "media-server-health"
NO_ACTIVITY_ERROR = "No client activity reported by media server"


class HealthMonitor:
    """Polls the media server and folds what it reports back into the database."""

    def __init__(
        self,
        registry: StreamRegistry,
        tracker: SessionTracker,
        directory: RepublishingDirectory,
        client: MediaServerClient,
        config: MonitorConfig,
        scheduler: Optional[BackgroundScheduler] = None,
        synthesizer: Optional[ConfigSynthesizer] = None,
    ):
        self.registry = registry
        self.tracker = tracker
        self.directory = directory
        self.client = client
        self.config = config
        self.scheduler = scheduler or BackgroundScheduler(timezone=tzutc())
        self.synthesizer = synthesizer
        self.is_monitoring = False
        self.interval_seconds: Optional[int] = None
        self.last_report: Optional[CycleReport] = None
        # last viewer count seen per active session
        self._audience: Dict[str, int] = {}

    def start(self, interval_seconds: Optional[int] = None) -> None:
        if self.is_monitoring:
            logger.info("Health monitor is already running")
            return
        self.interval_seconds = interval_seconds or self.config.interval_seconds
        self.scheduler.add_job(
            self.check_stream_status,
            trigger="interval",
            seconds=self.interval_seconds,
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=dt.datetime.now(tzutc()),
        )
        if not self.scheduler.running:
            self.scheduler.start()
        self.is_monitoring = True
        logger.info("Health monitor started, polling %s every %ss", self.client.config.stats_url, self.interval_seconds)

    def stop(self) -> None:
        try:
            self.scheduler.remove_job(JOB_ID)
        except JobLookupError:
            pass
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.is_monitoring = False
        logger.info("Health monitor stopped")

    def check_stream_status(self) -> CycleReport:
        """Run one poll cycle. Never raises; problems end up in the report."""
        report = CycleReport()
        try:
            fetched = self.client.fetch_stats(deadline=time.monotonic() + self.config.cycle_timeout)
            if fetched is None:
                logger.info("No stats this round")
            else:
                report.endpoint, stats = fetched
                self.process_stats(stats, report)
        except Exception as exc:  # noqa: BLE001
            logger.error("Error checking stream status: %s", exc)
            report.failures.append(str(exc))
        self.last_report = report
        return report

    def process_stats(self, stats: Any, report: Optional[CycleReport] = None) -> CycleReport:
        report = report or CycleReport()
        seen: Set[str] = set()
        for application in extract_applications(stats):
            app_name = str(application.get("name") or DEFAULT_APP)
            for record in extract_streams(application):
                report.streams_seen += 1
                try:
                    session_id = self.reconcile_stream(record, app_name)
                    if session_id:
                        seen.add(session_id)
                        report.streams_reconciled += 1
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Failed to reconcile stream record %s", stream_key_of(record))
                    report.failures.append(f"{stream_key_of(record)}: {exc}")
        self._audience = {key: count for key, count in self._audience.items() if key in seen}
        return report

    def find_stream(self, stream_key: str, app_name: str) -> Optional[Stream]:
        stream = self.registry.find_by_stream_key(stream_key)
        if stream is not None:
            return stream
        for candidate in self.registry.list_live():
            if candidate.source_app == app_name and candidate.source_stream == stream_key:
                return candidate
        return None

    def reconcile_stream(self, record: Mapping[str, Any], app_name: str) -> Optional[str]:
        """Fold one stream record into the database; returns the active session id."""
        stream_key = stream_key_of(record)
        if not stream_key:
            logger.debug("Stream record without a key in app %s", app_name)
            return None
        stream = self.find_stream(stream_key, app_name)
        if stream is None:
            logger.debug("Stream %s/%s is not known", app_name, stream_key)
            return None

        healed = stream.status != StreamStatus.LIVE.value
        if healed:
            self.registry.update_status(stream.id, StreamStatus.LIVE.value)
            logger.info("Stream %s is broadcasting but was %s; marked live", stream.id, stream.status)

        session, created = self.tracker.find_or_open(
            stream.id, stream.user_id, {"auto_created": True, "created_by": "health_monitor"}
        )
        if created:
            logger.info("Created missing session %s for stream %s", session.id, stream.id)

        metrics = extract_metrics(record)
        viewers = viewer_count(record)
        if viewers is not None:
            previous = self._audience.get(session.id)
            if previous is None:
                previous = viewers if session.total_viewers else 0
            metrics["total_viewers"] = accumulate_viewers(session.total_viewers or 0, previous, viewers)
            self._audience[session.id] = viewers
        if metrics:
            self.tracker.update_metrics(session.id, metrics)

        self.update_destination_health(stream.id, record)
        if healed:
            self.resync(stream.id)
        return session.id

    def resync(self, stream_id: str) -> None:
        if self.synthesizer is None:
            return
        try:
            self.synthesizer.push()
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to push media server configuration after healing stream %s: %s", stream_id, exc)

    def update_destination_health(self, stream_id: str, record: Mapping[str, Any]) -> None:
        # inferred from the ingest's own activity, not from any acknowledgment by the platform
        healthy = is_broadcast_active(record)
        status = DestinationStatus.ACTIVE if healthy else DestinationStatus.ERROR
        for destination in self.directory.list(stream_id):
            if not destination.enabled or destination.status == status.value:
                continue
            self.directory.update_status(destination.id, status.value, error=None if healthy else NO_ACTIVITY_ERROR)
            logger.info("Destination %s status %s -> %s", destination.id, destination.status, status.value)

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_monitoring": self.is_monitoring,
            "stats_url": self.client.config.stats_url,
            "interval_seconds": self.interval_seconds if self.is_monitoring else None,
            "last_check": self.last_report.to_dict()["started_at"] if self.last_report else None,
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }
