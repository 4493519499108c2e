"""Domain models for streams, broadcast sessions and republishing targets."""

from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> dt.datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[dt.datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


class StreamStatus(str, Enum):
    CREATED = "created"
    LIVE = "live"
    ENDED = "ended"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"
    ERROR = "error"


class DestinationStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    ERROR = "error"


DEFAULT_QUALITY_SETTINGS: Dict[str, Any] = {
    "resolution": "1920x1080",
    "bitrate": 4000,
    "framerate": 30,
    "audio_bitrate": 128,
}


class Base(DeclarativeBase):
    pass


class Stream(Base):
    """A configured broadcast source."""

    __tablename__ = "live_streams"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    stream_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    rtmp_url: Mapped[Optional[str]] = mapped_column(String(255))
    source_app: Mapped[str] = mapped_column(String(64), nullable=False, default="live")
    source_stream: Mapped[str] = mapped_column(String(128), nullable=False)
    quality_settings: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=StreamStatus.CREATED.value, index=True
    )
    auto_post_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_post_accounts: Mapped[List[str]] = mapped_column(JSON, default=list)
    auto_post_message: Mapped[Optional[str]] = mapped_column(Text)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(String(512))
    category: Mapped[Optional[str]] = mapped_column(String(64))
    tags: Mapped[List[str]] = mapped_column(JSON, default=list)
    is_public: Mapped[bool] = mapped_column(Boolean, default=True)
    started_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)
    ended_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "description": self.description,
            "stream_key": self.stream_key,
            "rtmp_url": self.rtmp_url,
            "source_app": self.source_app,
            "source_stream": self.source_stream,
            "quality_settings": self.quality_settings,
            "status": self.status,
            "auto_post_enabled": self.auto_post_enabled,
            "auto_post_accounts": list(self.auto_post_accounts or []),
            "auto_post_message": self.auto_post_message,
            "thumbnail_url": self.thumbnail_url,
            "category": self.category,
            "tags": list(self.tags or []),
            "is_public": self.is_public,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class StreamSession(Base):
    """One broadcast attempt of a stream."""

    __tablename__ = "stream_sessions"
    __table_args__ = (
        # at most one active session per stream
        Index(
            "uq_stream_sessions_active_stream",
            "stream_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    stream_id: Mapped[str] = mapped_column(ForeignKey("live_streams.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    session_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SessionStatus.ACTIVE.value)
    peak_viewers: Mapped[int] = mapped_column(Integer, default=0)
    total_viewers: Mapped[int] = mapped_column(Integer, default=0)
    bytes_sent: Mapped[int] = mapped_column(Integer, default=0)
    bytes_received: Mapped[int] = mapped_column(Integer, default=0)
    avg_bitrate: Mapped[Optional[float]] = mapped_column(Float)
    dropped_frames: Mapped[int] = mapped_column(Integer, default=0)
    connection_quality: Mapped[Optional[float]] = mapped_column(Float)
    duration_seconds: Mapped[Optional[int]] = mapped_column(Integer)
    published_to_social: Mapped[bool] = mapped_column(Boolean, default=False)
    social_post_ids: Mapped[List[str]] = mapped_column(JSON, default=list)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    session_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    started_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)
    ended_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "stream_id": self.stream_id,
            "user_id": self.user_id,
            "session_key": self.session_key,
            "status": self.status,
            "peak_viewers": self.peak_viewers,
            "total_viewers": self.total_viewers,
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "avg_bitrate": self.avg_bitrate,
            "dropped_frames": self.dropped_frames,
            "connection_quality": self.connection_quality,
            "duration_seconds": self.duration_seconds,
            "published_to_social": self.published_to_social,
            "social_post_ids": list(self.social_post_ids or []),
            "error_message": self.error_message,
            "metadata": dict(self.session_metadata or {}),
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
        }


class RepublishingDestination(Base):
    """One outbound fan-out target of a stream."""

    __tablename__ = "stream_republishing"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    stream_id: Mapped[str] = mapped_column(ForeignKey("live_streams.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source_app: Mapped[str] = mapped_column(String(64), nullable=False)
    source_stream: Mapped[str] = mapped_column(String(128), nullable=False)
    destination_name: Mapped[str] = mapped_column(String(128), nullable=False)
    destination_url: Mapped[str] = mapped_column(String(255), nullable=False)
    destination_port: Mapped[int] = mapped_column(Integer, default=1935)
    destination_app: Mapped[str] = mapped_column(String(128), nullable=False)
    destination_stream: Mapped[str] = mapped_column(String(255), nullable=False)
    destination_key: Mapped[Optional[str]] = mapped_column(String(255))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    priority: Mapped[int] = mapped_column(Integer, default=1)
    retry_attempts: Mapped[int] = mapped_column(Integer, default=3)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=DestinationStatus.INACTIVE.value)
    last_connected_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    connection_count: Mapped[int] = mapped_column(Integer, default=0)
    external_rule_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "stream_id": self.stream_id,
            "user_id": self.user_id,
            "source_app": self.source_app,
            "source_stream": self.source_stream,
            "destination_name": self.destination_name,
            "destination_url": self.destination_url,
            "destination_port": self.destination_port,
            "destination_app": self.destination_app,
            "destination_stream": self.destination_stream,
            "destination_key": self.destination_key,
            "enabled": self.enabled,
            "priority": self.priority,
            "retry_attempts": self.retry_attempts,
            "status": self.status,
            "last_connected_at": _iso(self.last_connected_at),
            "last_error": self.last_error,
            "connection_count": self.connection_count,
            "external_rule_id": self.external_rule_id,
            "created_at": _iso(self.created_at),
        }


@dataclass
class Caller:
    """Identity the request layer hands to the facade."""

    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class DestinationSpec:
    platform: str
    stream_key: str
    enabled: bool = True
    priority: Optional[int] = None
    destination_url: Optional[str] = None
    destination_port: Optional[int] = None
    destination_app: Optional[str] = None
    destination_name: Optional[str] = None


@dataclass
class RepublishRule:
    id: str
    src_app: str
    src_stream: str
    dest_addr: str
    dest_port: int
    dest_app: str
    dest_stream: str

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "srcApp": self.src_app,
            "srcStream": self.src_stream,
            "destAddr": self.dest_addr,
            "destPort": self.dest_port,
            "destApp": self.dest_app,
            "destStream": self.dest_stream,
        }


@dataclass
class DestinationOutcome:
    platform: str
    success: bool
    destination: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CycleReport:
    started_at: dt.datetime = field(default_factory=utcnow)
    endpoint: Optional[str] = None
    streams_seen: int = 0
    streams_reconciled: int = 0
    failures: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": _iso(self.started_at),
            "endpoint": self.endpoint,
            "streams_seen": self.streams_seen,
            "streams_reconciled": self.streams_reconciled,
            "failures": list(self.failures),
        }
