"""Durable store of configured broadcast streams."""

from __future__ import annotations

import datetime as dt
import logging
import secrets
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from .config import MediaServerConfig
from .database import SessionFactory
from .errors import NotFoundError, ValidationError
from .models import (
    DEFAULT_QUALITY_SETTINGS,
    DestinationStatus,
    RepublishingDestination,
    Stream,
    StreamSession,
    StreamStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = (
    "title",
    "description",
    "source_app",
    "source_stream",
    "quality_settings",
    "auto_post_enabled",
    "auto_post_accounts",
    "auto_post_message",
    "thumbnail_url",
    "category",
    "tags",
    "is_public",
)

EMPTY_STATS = {
    "session_count": 0,
    "total_duration": 0,
    "max_viewers": 0,
    "total_viewers": 0,
    "avg_quality": 0.0,
}


class StreamRegistry:
    """Create, read, update and delete Stream rows."""

    def __init__(self, session_factory: SessionFactory, media_server: MediaServerConfig):
        self._session_factory = session_factory
        self._media_server = media_server

    def create(self, owner_id: str, attrs: Mapping[str, Any]) -> Stream:
        if not owner_id:
            raise ValidationError("owner id is required")
        title = attrs.get("title")
        if not title:
            raise ValidationError("title is required")

        stream_key = attrs.get("stream_key") or secrets.token_hex(16)
        source_app = attrs.get("source_app") or "live"
        stream = Stream(
            user_id=owner_id,
            title=title,
            description=attrs.get("description"),
            stream_key=stream_key,
            rtmp_url=attrs.get("rtmp_url") or self._media_server.ingest_url(source_app),
            source_app=source_app,
            source_stream=attrs.get("source_stream") or stream_key,
            quality_settings=dict(attrs.get("quality_settings") or DEFAULT_QUALITY_SETTINGS),
            status=StreamStatus.CREATED.value,
            auto_post_enabled=bool(attrs.get("auto_post_enabled", False)),
            auto_post_accounts=list(attrs.get("auto_post_accounts") or []),
            auto_post_message=attrs.get("auto_post_message"),
            thumbnail_url=attrs.get("thumbnail_url"),
            category=attrs.get("category"),
            tags=list(attrs.get("tags") or []),
            is_public=attrs.get("is_public", True) is not False,
        )
        with self._session_factory() as db:
            db.add(stream)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise ValidationError("stream key already in use") from exc
        logger.info("Created stream %s for user %s", stream.id, owner_id)
        return stream

    def get(self, stream_id: str) -> Stream:
        with self._session_factory() as db:
            stream = db.get(Stream, stream_id)
        if stream is None:
            raise NotFoundError("stream", stream_id)
        return stream

    def find_by_stream_key(self, stream_key: str) -> Optional[Stream]:
        with self._session_factory() as db:
            return db.scalars(select(Stream).where(Stream.stream_key == stream_key)).first()

    def list_live(self, owner_id: Optional[str] = None) -> List[Stream]:
        query = select(Stream).where(Stream.status == StreamStatus.LIVE.value)
        if owner_id:
            query = query.where(Stream.user_id == owner_id)
        query = query.order_by(Stream.started_at.desc(), Stream.id)
        with self._session_factory() as db:
            return list(db.scalars(query))

    def list(self, owner_id: str) -> List[Dict[str, Any]]:
        """Streams of one owner, newest first, with session and destination aggregates."""
        query = select(Stream).where(Stream.user_id == owner_id).order_by(Stream.created_at.desc())
        enriched = []
        with self._session_factory() as db:
            for stream in db.scalars(query):
                statuses = list(
                    db.scalars(
                        select(RepublishingDestination.status).where(
                            RepublishingDestination.stream_id == stream.id
                        )
                    )
                )
                item = stream.to_dict()
                item["stats"] = self._stats(db, stream.id)
                item["republishing_count"] = len(statuses)
                item["active_republishing"] = statuses.count(DestinationStatus.ACTIVE.value)
                enriched.append(item)
        return enriched

    def get_detail(self, stream_id: str) -> Dict[str, Any]:
        with self._session_factory() as db:
            stream = db.get(Stream, stream_id)
            if stream is None:
                raise NotFoundError("stream", stream_id)
            sessions = db.scalars(
                select(StreamSession)
                .where(StreamSession.stream_id == stream_id)
                .order_by(StreamSession.started_at.desc())
            )
            destinations = db.scalars(
                select(RepublishingDestination)
                .where(RepublishingDestination.stream_id == stream_id)
                .order_by(RepublishingDestination.priority, RepublishingDestination.created_at)
            )
            detail = stream.to_dict()
            detail["stats"] = self._stats(db, stream_id)
            detail["sessions"] = [session.to_dict() for session in sessions]
            detail["republishing"] = [destination.to_dict() for destination in destinations]
        return detail

    def get_stats(self, stream_id: str) -> Dict[str, Any]:
        with self._session_factory() as db:
            return self._stats(db, stream_id)

    def _stats(self, db, stream_id: str) -> Dict[str, Any]:
        row = db.execute(
            select(
                func.count(StreamSession.id),
                func.sum(StreamSession.duration_seconds),
                func.max(StreamSession.peak_viewers),
                func.sum(StreamSession.total_viewers),
                func.avg(StreamSession.connection_quality),
            ).where(StreamSession.stream_id == stream_id)
        ).one()
        if not row[0]:
            return dict(EMPTY_STATS)
        return {
            "session_count": row[0],
            "total_duration": row[1] or 0,
            "max_viewers": row[2] or 0,
            "total_viewers": row[3] or 0,
            "avg_quality": float(row[4] or 0.0),
        }

    def update(self, stream_id: str, attrs: Mapping[str, Any]) -> Stream:
        changes = {name: attrs[name] for name in MUTABLE_FIELDS if attrs.get(name) is not None}
        if not changes:
            raise ValidationError("No valid fields to update")
        with self._session_factory() as db:
            stream = db.get(Stream, stream_id)
            if stream is None:
                raise NotFoundError("stream", stream_id)
            for name, value in changes.items():
                setattr(stream, name, value)
            db.commit()
        logger.info("Updated stream %s fields %s", stream_id, sorted(changes))
        return stream

    def update_status(
        self,
        stream_id: str,
        status: str,
        started_at: Optional[dt.datetime] = None,
        ended_at: Optional[dt.datetime] = None,
        thumbnail_url: Optional[str] = None,
    ) -> Stream:
        """Move a stream through created -> live -> ended, stamping the transition time."""
        try:
            target = StreamStatus(status)
        except ValueError as exc:
            raise ValidationError(f"unknown stream status {status!r}") from exc

        with self._session_factory() as db:
            stream = db.get(Stream, stream_id)
            if stream is None:
                raise NotFoundError("stream", stream_id)
            if target is StreamStatus.CREATED and stream.status != StreamStatus.CREATED.value:
                raise ValidationError(f"stream {stream_id} cannot return to created")

            if target is StreamStatus.LIVE:
                stream.started_at = started_at or utcnow()
                stream.ended_at = None
            elif started_at:
                stream.started_at = started_at
            if target is StreamStatus.ENDED:
                stream.ended_at = ended_at or utcnow()
            elif ended_at:
                stream.ended_at = ended_at
            if thumbnail_url:
                stream.thumbnail_url = thumbnail_url

            previous = stream.status
            stream.status = target.value
            db.commit()
        logger.info("Stream %s status %s -> %s", stream_id, previous, target.value)
        return stream

    def delete(self, stream_id: str) -> Stream:
        """Remove a stream together with its destinations and session history.

        Active sessions must already have been closed by the caller.
        """
        with self._session_factory() as db:
            stream = db.get(Stream, stream_id)
            if stream is None:
                raise NotFoundError("stream", stream_id)
            db.execute(delete(RepublishingDestination).where(RepublishingDestination.stream_id == stream_id))
            db.execute(delete(StreamSession).where(StreamSession.stream_id == stream_id))
            db.delete(stream)
            db.commit()
        logger.info("Deleted stream %s", stream_id)
        return stream
