"""Coordinate streams, sessions, republishing and media server monitoring."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .config import AppConfig, NotifierConfig
from .database import SessionFactory, create_session_factory
from .destinations import RepublishingDirectory
from .errors import AccessDeniedError, ValidationError
from .media_server import MediaServerClient
from .models import Caller, DestinationOutcome, DestinationSpec, SessionStatus, Stream, StreamStatus, utcnow
from .monitor import HealthMonitor
from .notifier import AnnouncementPublisher, Notifier, WebhookAnnouncementPublisher
from .registry import StreamRegistry
from .sessions import SessionTracker
from .synthesizer import ConfigSynthesizer

logger = logging.getLogger(__name__)

ANALYTICS_PERIODS = {"24h": dt.timedelta(days=1), "7d": dt.timedelta(days=7), "30d": dt.timedelta(days=30)}


def _destination_spec(data: Mapping[str, Any]) -> DestinationSpec:
    platform = data.get("platform") or data.get("destination_name")
    stream_key = data.get("stream_key") or data.get("destination_stream")
    if not platform:
        raise ValidationError("platform is required")
    if not stream_key:
        raise ValidationError(f"{platform} stream key is required")
    return DestinationSpec(
        platform=platform,
        stream_key=stream_key,
        enabled=data.get("enabled", True) is not False,
        priority=data.get("priority"),
        destination_url=data.get("destination_url"),
        destination_port=data.get("destination_port"),
        destination_app=data.get("destination_app"),
        destination_name=data.get("destination_name") if data.get("platform") else None,
    )


class LiveStreamManager:
    """The entry point the request layer calls into.

    Ownership is enforced here: a caller may act on a resource it owns, or on
    any resource when it holds the admin role.
    """

    def __init__(
        self,
        config: AppConfig,
        session_factory: Optional[SessionFactory] = None,
        client: Optional[MediaServerClient] = None,
        publisher: Optional[AnnouncementPublisher] = None,
        notifier: Optional[Notifier] = None,
        monitor: Optional[HealthMonitor] = None,
    ):
        self.config = config
        session_factory = session_factory or create_session_factory(config.database)
        self.client = client or MediaServerClient(config.media_server)
        self.notifier = notifier or Notifier(config.notifier or NotifierConfig())
        if publisher is None and config.social_webhook_url:
            publisher = WebhookAnnouncementPublisher(config.social_webhook_url)
        self.publisher = publisher

        self.registry = StreamRegistry(session_factory, config.media_server)
        self.tracker = SessionTracker(session_factory)
        self.directory = RepublishingDirectory(session_factory)
        self.synthesizer = ConfigSynthesizer(
            self.registry, self.directory, self.client, config.media_server, self.notifier
        )
        self.monitor = monitor or HealthMonitor(
            self.registry, self.tracker, self.directory, self.client, config.monitor, synthesizer=self.synthesizer
        )
        if self.monitor.synthesizer is None:
            self.monitor.synthesizer = self.synthesizer

    @staticmethod
    def _check_owner(caller: Caller, owner_id: str) -> None:
        if caller.user_id != owner_id and not caller.is_admin:
            raise AccessDeniedError("Access denied")

    @staticmethod
    def _require_admin(caller: Caller) -> None:
        if not caller.is_admin:
            raise AccessDeniedError("Admin role required")

    def _owned_stream(self, caller: Caller, stream_id: str) -> Stream:
        stream = self.registry.get(stream_id)
        self._check_owner(caller, stream.user_id)
        return stream

    # Streams

    def create_stream(self, caller: Caller, data: Mapping[str, Any]) -> Dict[str, Any]:
        stream = self.registry.create(caller.user_id, data)
        result = stream.to_dict()
        targets = data.get("republishing_targets") or []
        if targets:
            outcomes = self.add_destinations(caller, stream.id, targets)
            result["republishing"] = [outcome.to_dict() for outcome in outcomes]
        return result

    def list_streams(self, caller: Caller) -> List[Dict[str, Any]]:
        return self.registry.list(caller.user_id)

    def get_stream(self, caller: Caller, stream_id: str) -> Dict[str, Any]:
        detail = self.registry.get_detail(stream_id)
        self._check_owner(caller, detail["user_id"])
        return detail

    def update_stream(self, caller: Caller, stream_id: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        self._owned_stream(caller, stream_id)
        return self.registry.update(stream_id, data).to_dict()

    def delete_stream(self, caller: Caller, stream_id: str) -> Dict[str, Any]:
        stream = self._owned_stream(caller, stream_id)
        for session in self.tracker.list_for_stream(stream_id):
            if session.status == SessionStatus.ACTIVE.value:
                self._end_session(session.id, {})
        deleted = self.registry.delete(stream.id)
        if stream.status == StreamStatus.LIVE.value:
            self.synthesizer.push()
        return deleted.to_dict()

    def get_rtmp_info(self, caller: Caller, stream_id: str) -> Dict[str, Any]:
        stream = self._owned_stream(caller, stream_id)
        server = self.config.media_server.ingest_url(stream.source_app or "live")
        return {
            "server": server,
            "stream_key": stream.stream_key,
            "full_url": f"{server}/{stream.stream_key}",
            "obs_settings": {"server": server, "stream_key": stream.stream_key},
        }

    # Sessions

    def start_session(
        self, caller: Caller, stream_id: str, metadata: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        stream = self._owned_stream(caller, stream_id)
        session = self.tracker.open(stream.id, stream.user_id, metadata)
        self.registry.update_status(stream.id, StreamStatus.LIVE.value)
        self.synthesizer.start_republishing(stream.id)

        if stream.auto_post_enabled and stream.auto_post_accounts:
            self.announce(stream, session.id)
        self.notifier.notify(
            subject=f"Stream {stream.title} is live",
            message=f"Session {session.id} started on {stream.rtmp_url}/{stream.source_stream}.",
        )
        return self.tracker.get(session.id).to_dict()

    def announce(self, stream: Stream, session_id: str) -> Optional[List[str]]:
        """Publish the go-live post once per session."""
        session = self.tracker.get(session_id)
        if session.published_to_social:
            logger.info("Session %s already announced", session_id)
            return None
        if self.publisher is None:
            logger.info("No announcement publisher configured; skipping go-live post for %s", stream.id)
            return None
        message = stream.auto_post_message or f"\U0001F534 Live now: {stream.title}"
        try:
            post_ids = self.publisher.publish_post(stream.user_id, message, stream.auto_post_accounts)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to post stream announcement for %s: %s", stream.id, exc)
            return None
        self.tracker.mark_announced(session_id, post_ids)
        logger.info("Announced stream %s with posts %s", stream.id, post_ids)
        return post_ids

    def end_session(self, caller: Caller, session_id: str, end_data: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        session = self.tracker.get(session_id)
        self._check_owner(caller, session.user_id)
        return self._end_session(session_id, end_data or {})

    def _end_session(self, session_id: str, end_data: Mapping[str, Any]) -> Dict[str, Any]:
        session = self.tracker.get(session_id)
        if session.status != SessionStatus.ACTIVE.value:
            return session.to_dict()
        ended = self.tracker.close(
            session_id,
            ended_at=end_data.get("ended_at"),
            duration_seconds=end_data.get("duration_seconds"),
            final_stats=end_data.get("final_stats"),
            error_message=end_data.get("error_message"),
        )
        stream = self.registry.update_status(session.stream_id, StreamStatus.ENDED.value)
        self.synthesizer.stop_republishing(session.stream_id)
        self.notifier.notify(
            subject=f"Stream {stream.title} ended",
            message=f"Session {session_id} ended after {ended.duration_seconds}s with status {ended.status}.",
        )
        return ended.to_dict()

    def update_session_stats(self, caller: Caller, session_id: str, stats: Mapping[str, Any]) -> Dict[str, Any]:
        session = self.tracker.get(session_id)
        self._check_owner(caller, session.user_id)
        return self.tracker.update_metrics(session_id, stats).to_dict()

    def get_active_sessions(self, caller: Caller) -> List[Dict[str, Any]]:
        owner = None if caller.is_admin else caller.user_id
        return [session.to_dict() for session in self.tracker.list_active(owner)]

    def get_active_streams(self, caller: Caller) -> List[Dict[str, Any]]:
        owner = None if caller.is_admin else caller.user_id
        return [stream.to_dict() for stream in self.registry.list_live(owner)]

    def get_stream_analytics(self, caller: Caller, period: str = "7d") -> Dict[str, Any]:
        window = ANALYTICS_PERIODS.get(period, ANALYTICS_PERIODS["7d"])
        since = utcnow() - window
        sessions = [
            session
            for session in self.tracker.list_for_owner(caller.user_id, limit=1000)
            if session.started_at and session.started_at >= since
        ]
        return self.tracker.summarize(sessions)

    # Republishing

    def list_destinations(self, caller: Caller, stream_id: str) -> List[Dict[str, Any]]:
        self._owned_stream(caller, stream_id)
        return [destination.to_dict() for destination in self.directory.list(stream_id)]

    def add_destination(self, caller: Caller, stream_id: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        self._owned_stream(caller, stream_id)
        spec = _destination_spec(data)
        return self.synthesizer.add_destination(stream_id, spec).to_dict()

    def add_platform_destination(
        self, caller: Caller, stream_id: str, platform: str, stream_key: str
    ) -> Dict[str, Any]:
        return self.add_destination(caller, stream_id, {"platform": platform, "stream_key": stream_key})

    def add_destinations(
        self, caller: Caller, stream_id: str, targets: Sequence[Mapping[str, Any]]
    ) -> List[DestinationOutcome]:
        """Add several destinations, reporting each one's outcome separately."""
        self._owned_stream(caller, stream_id)
        outcomes = []
        for target in targets:
            platform = str(target.get("platform") or target.get("destination_name") or "unknown")
            try:
                destination = self.synthesizer.add_destination(stream_id, _destination_spec(target))
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to add %s destination to stream %s: %s", platform, stream_id, exc)
                outcomes.append(DestinationOutcome(platform=platform, success=False, error=str(exc)))
                continue
            outcomes.append(DestinationOutcome(platform=platform, success=True, destination=destination.to_dict()))
        logger.info(
            "Added %d of %d destinations to stream %s",
            sum(1 for outcome in outcomes if outcome.success),
            len(outcomes),
            stream_id,
        )
        return outcomes

    def remove_destination(self, caller: Caller, destination_id: str) -> Dict[str, Any]:
        destination = self.directory.get(destination_id)
        self._check_owner(caller, destination.user_id)
        return self.synthesizer.remove_destination(destination_id).to_dict()

    # Media server

    def get_media_server_config(self, caller: Caller) -> Optional[Dict[str, Any]]:
        self._require_admin(caller)
        return self.synthesizer.current_config()

    def resync_config(self, caller: Caller) -> Dict[str, Any]:
        self._require_admin(caller)
        return self.synthesizer.push().to_dict()

    def get_monitor_status(self, caller: Caller) -> Dict[str, Any]:
        self._require_admin(caller)
        return self.monitor.get_status()

    def test_media_server(self, caller: Caller) -> Dict[str, Any]:
        self._require_admin(caller)
        return self.client.test_connection()

    def start_monitoring(self) -> None:
        if self.config.monitor.enabled:
            self.monitor.start()

    def shutdown(self) -> None:
        self.monitor.stop()
