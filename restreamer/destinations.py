"""Republishing destinations: one outbound fan-out target per stream and platform."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select

from .database import SessionFactory
from .errors import NotFoundError, ValidationError
from .models import DestinationSpec, DestinationStatus, RepublishingDestination, Stream, utcnow

logger = logging.getLogger(__name__)

DEFAULT_RTMP_PORT = 1935
DEFAULT_RTMP_APP = "live"

REQUIRED_FIELDS = (
    "stream_id",
    "user_id",
    "source_app",
    "source_stream",
    "destination_name",
    "destination_url",
    "destination_app",
    "destination_stream",
)

MUTABLE_FIELDS = (
    "source_app",
    "source_stream",
    "destination_name",
    "destination_url",
    "destination_port",
    "destination_app",
    "destination_stream",
    "destination_key",
    "enabled",
    "priority",
    "retry_attempts",
    "external_rule_id",
)


@dataclass(frozen=True)
class PlatformPreset:
    label: str
    host: str
    port: int = DEFAULT_RTMP_PORT
    app: str = DEFAULT_RTMP_APP


_TWITTER = PlatformPreset("Twitter/X Live", "ingest.pscp.tv", 80, "x")

PLATFORM_PRESETS: Dict[str, PlatformPreset] = {
    "youtube": PlatformPreset("YouTube Live", "a.rtmp.youtube.com", 1935, "live2"),
    "twitch": PlatformPreset("Twitch", "live.twitch.tv", 1935, "live"),
    "facebook": PlatformPreset("Facebook Live", "live-api-s.facebook.com", 443, "rtmp"),
    "twitter": _TWITTER,
    "x": _TWITTER,
    "linkedin": PlatformPreset("LinkedIn Live", "live-api.linkedin.com", 1935, "live"),
}


def resolve_platform(
    platform: str,
    url: Optional[str] = None,
    port: Optional[int] = None,
    app: Optional[str] = None,
) -> PlatformPreset:
    """Well-known ingest endpoint for a platform, or the caller's values for anything else."""
    preset = PLATFORM_PRESETS.get(platform.strip().lower())
    if preset is not None:
        return preset
    return PlatformPreset(
        label=platform,
        host=url or platform,
        port=port or DEFAULT_RTMP_PORT,
        app=app or DEFAULT_RTMP_APP,
    )


def _transition(destination: RepublishingDestination, status: DestinationStatus, error: Optional[str]) -> None:
    if status is DestinationStatus.ACTIVE:
        if destination.status != DestinationStatus.ACTIVE.value:
            destination.connection_count = (destination.connection_count or 0) + 1
        destination.last_connected_at = utcnow()
    elif status is DestinationStatus.ERROR and error:
        destination.last_error = error
    destination.status = status.value


def _parse_status(status: str) -> DestinationStatus:
    try:
        return DestinationStatus(status)
    except ValueError as exc:
        raise ValidationError(f"unknown destination status {status!r}") from exc


class RepublishingDirectory:
    """Owns RepublishingDestination rows."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def create(self, attrs: Mapping[str, Any]) -> RepublishingDestination:
        missing = [name for name in REQUIRED_FIELDS if not attrs.get(name)]
        if missing:
            raise ValidationError(f"missing required fields: {', '.join(missing)}")

        destination = RepublishingDestination(
            stream_id=attrs["stream_id"],
            user_id=attrs["user_id"],
            source_app=attrs["source_app"],
            source_stream=attrs["source_stream"],
            destination_name=attrs["destination_name"],
            destination_url=attrs["destination_url"],
            destination_port=int(attrs.get("destination_port") or DEFAULT_RTMP_PORT),
            destination_app=attrs["destination_app"],
            destination_stream=attrs["destination_stream"],
            destination_key=attrs.get("destination_key"),
            enabled=attrs.get("enabled", True) is not False,
            priority=int(attrs.get("priority") or 1),
            retry_attempts=int(attrs.get("retry_attempts") or 3),
            status=DestinationStatus.INACTIVE.value,
        )
        with self._session_factory() as db:
            if db.get(Stream, destination.stream_id) is None:
                raise NotFoundError("stream", destination.stream_id)
            db.add(destination)
            db.commit()
        logger.info(
            "Created destination %s for stream %s -> %s",
            destination.id,
            destination.stream_id,
            destination.destination_name,
        )
        return destination

    def create_for_platform(self, stream: Stream, spec: DestinationSpec) -> RepublishingDestination:
        if not spec.stream_key:
            raise ValidationError(f"{spec.platform} stream key is required")
        preset = resolve_platform(
            spec.platform, spec.destination_url, spec.destination_port, spec.destination_app
        )
        return self.create(
            {
                "stream_id": stream.id,
                "user_id": stream.user_id,
                "source_app": stream.source_app or DEFAULT_RTMP_APP,
                "source_stream": stream.source_stream or stream.stream_key,
                "destination_name": spec.destination_name or preset.label,
                "destination_url": preset.host,
                "destination_port": preset.port,
                "destination_app": preset.app,
                "destination_stream": spec.stream_key,
                "destination_key": spec.stream_key,
                "enabled": spec.enabled,
                "priority": spec.priority,
            }
        )

    def get(self, destination_id: str) -> RepublishingDestination:
        with self._session_factory() as db:
            destination = db.get(RepublishingDestination, destination_id)
        if destination is None:
            raise NotFoundError("destination", destination_id)
        return destination

    def list(self, stream_id: str) -> List[RepublishingDestination]:
        with self._session_factory() as db:
            return list(
                db.scalars(
                    select(RepublishingDestination)
                    .where(RepublishingDestination.stream_id == stream_id)
                    .order_by(
                        RepublishingDestination.priority,
                        RepublishingDestination.created_at,
                        RepublishingDestination.id,
                    )
                )
            )

    def list_for_owner(self, owner_id: str) -> List[RepublishingDestination]:
        with self._session_factory() as db:
            return list(
                db.scalars(
                    select(RepublishingDestination)
                    .where(RepublishingDestination.user_id == owner_id)
                    .order_by(RepublishingDestination.stream_id, RepublishingDestination.priority)
                )
            )

    def update(self, destination_id: str, attrs: Mapping[str, Any]) -> RepublishingDestination:
        changes = {name: attrs[name] for name in MUTABLE_FIELDS if attrs.get(name) is not None}
        if not changes:
            raise ValidationError("No valid fields to update")
        with self._session_factory() as db:
            destination = db.get(RepublishingDestination, destination_id)
            if destination is None:
                raise NotFoundError("destination", destination_id)
            for name, value in changes.items():
                setattr(destination, name, value)
            db.commit()
        return destination

    def update_status(
        self, destination_id: str, status: str, error: Optional[str] = None
    ) -> RepublishingDestination:
        target = _parse_status(status)
        with self._session_factory() as db:
            destination = db.get(RepublishingDestination, destination_id)
            if destination is None:
                raise NotFoundError("destination", destination_id)
            _transition(destination, target, error)
            db.commit()
        return destination

    def bulk_set_status(self, stream_id: str, status: str) -> List[RepublishingDestination]:
        target = _parse_status(status)
        with self._session_factory() as db:
            destinations = db.scalars(
                select(RepublishingDestination).where(RepublishingDestination.stream_id == stream_id)
            ).all()
            for destination in destinations:
                _transition(destination, target, None)
            db.commit()
        logger.info("Set %d destinations of stream %s to %s", len(destinations), stream_id, target.value)
        return list(destinations)

    def delete(self, destination_id: str) -> RepublishingDestination:
        with self._session_factory() as db:
            destination = db.get(RepublishingDestination, destination_id)
            if destination is None:
                raise NotFoundError("destination", destination_id)
            db.delete(destination)
            db.commit()
        logger.info("Deleted destination %s", destination_id)
        return destination

    def stats(self, stream_id: str) -> Dict[str, int]:
        destinations = self.list(stream_id)
        return {
            "total_destinations": len(destinations),
            "enabled_destinations": sum(1 for d in destinations if d.enabled),
            "active_destinations": sum(1 for d in destinations if d.status == DestinationStatus.ACTIVE.value),
            "error_destinations": sum(1 for d in destinations if d.status == DestinationStatus.ERROR.value),
            "total_connections": sum(d.connection_count or 0 for d in destinations),
        }
