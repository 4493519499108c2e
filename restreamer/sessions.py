"""Broadcast session tracking and metric accumulation."""

from __future__ import annotations

import datetime as dt
import logging
import secrets
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .database import SessionFactory
from .errors import NotFoundError, ValidationError
from .models import SessionStatus, Stream, StreamSession, new_id, utcnow

logger = logging.getLogger(__name__)

METRIC_FIELDS = (
    "peak_viewers",
    "total_viewers",
    "bytes_sent",
    "bytes_received",
    "avg_bitrate",
    "dropped_frames",
    "connection_quality",
    "duration_seconds",
)


def _apply_metrics(session: StreamSession, metrics: Mapping[str, Any]) -> List[str]:
    applied = []
    for name in METRIC_FIELDS:
        value = metrics.get(name)
        if value is None:
            continue
        if name == "peak_viewers":
            value = max(session.peak_viewers or 0, value)
        setattr(session, name, value)
        applied.append(name)
    if metrics.get("metadata"):
        session.session_metadata = {**(session.session_metadata or {}), **metrics["metadata"]}
        applied.append("metadata")
    return applied


def _finish(
    session: StreamSession,
    ended_at: dt.datetime,
    duration_seconds: Optional[int] = None,
    error_message: Optional[str] = None,
) -> None:
    if duration_seconds is None and session.started_at:
        duration_seconds = max(0, int((ended_at - session.started_at).total_seconds()))
    session.ended_at = ended_at
    session.duration_seconds = duration_seconds
    session.status = SessionStatus.ERROR.value if error_message else SessionStatus.ENDED.value
    if error_message:
        session.error_message = error_message


class SessionTracker:
    """Owns StreamSession rows: one per broadcast attempt of a stream."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def open(self, stream_id: str, owner_id: str, metadata: Optional[Mapping[str, Any]] = None) -> StreamSession:
        """Start a new active session, closing any session still active for the stream."""
        if not stream_id:
            raise ValidationError("stream id is required")
        if not owner_id:
            raise ValidationError("owner id is required")

        with self._session_factory() as db:
            if db.get(Stream, stream_id) is None:
                raise NotFoundError("stream", stream_id)

            now = utcnow()
            session = StreamSession(
                id=new_id(),
                stream_id=stream_id,
                user_id=owner_id,
                session_key=secrets.token_hex(16),
                status=SessionStatus.ACTIVE.value,
                session_metadata=dict(metadata or {}),
                started_at=now,
            )
            previous_sessions = db.scalars(
                select(StreamSession).where(
                    StreamSession.stream_id == stream_id,
                    StreamSession.status == SessionStatus.ACTIVE.value,
                )
            ).all()
            for previous in previous_sessions:
                _finish(previous, ended_at=now)
                previous.session_metadata = {**(previous.session_metadata or {}), "superseded_by": session.id}
                logger.info("Session %s superseded by %s on stream %s", previous.id, session.id, stream_id)
            # the partial unique index must see the old row closed before the insert
            db.flush()
            db.add(session)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = self.find_active(stream_id)
                if existing is None:
                    raise
                logger.info("Concurrent start on stream %s, reusing session %s", stream_id, existing.id)
                return existing

        logger.info("Opened session %s for stream %s", session.id, stream_id)
        return session

    def get(self, session_id: str) -> StreamSession:
        with self._session_factory() as db:
            session = db.get(StreamSession, session_id)
        if session is None:
            raise NotFoundError("session", session_id)
        return session

    def find_by_session_key(self, session_key: str) -> Optional[StreamSession]:
        with self._session_factory() as db:
            return db.scalars(select(StreamSession).where(StreamSession.session_key == session_key)).first()

    def find_active(self, stream_id: str) -> Optional[StreamSession]:
        with self._session_factory() as db:
            return db.scalars(
                select(StreamSession).where(
                    StreamSession.stream_id == stream_id,
                    StreamSession.status == SessionStatus.ACTIVE.value,
                )
            ).first()

    def find_or_open(
        self, stream_id: str, owner_id: str, metadata: Optional[Mapping[str, Any]] = None
    ) -> Tuple[StreamSession, bool]:
        existing = self.find_active(stream_id)
        if existing is not None:
            return existing, False
        return self.open(stream_id, owner_id, metadata), True

    def update_metrics(self, session_id: str, metrics: Mapping[str, Any]) -> StreamSession:
        """Merge the supplied metric fields; fields not supplied are left untouched."""
        with self._session_factory() as db:
            session = db.get(StreamSession, session_id)
            if session is None:
                raise NotFoundError("session", session_id)
            applied = _apply_metrics(session, metrics)
            if not applied:
                raise ValidationError("No valid stats to update")
            db.commit()
        logger.debug("Updated session %s metrics %s", session_id, applied)
        return session

    def close(
        self,
        session_id: str,
        ended_at: Optional[dt.datetime] = None,
        duration_seconds: Optional[int] = None,
        final_stats: Optional[Mapping[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> StreamSession:
        with self._session_factory() as db:
            session = db.get(StreamSession, session_id)
            if session is None:
                raise NotFoundError("session", session_id)
            if session.status != SessionStatus.ACTIVE.value:
                logger.info("Session %s already closed with status %s", session_id, session.status)
                return session
            _finish(session, ended_at or utcnow(), duration_seconds, error_message)
            if final_stats:
                _apply_metrics(session, final_stats)
            db.commit()
        logger.info("Closed session %s (%s, %ss)", session_id, session.status, session.duration_seconds)
        return session

    def mark_announced(self, session_id: str, post_ids: Sequence[str]) -> StreamSession:
        with self._session_factory() as db:
            session = db.get(StreamSession, session_id)
            if session is None:
                raise NotFoundError("session", session_id)
            session.published_to_social = True
            session.social_post_ids = [str(post_id) for post_id in post_ids]
            db.commit()
        return session

    def list_active(self, owner_id: Optional[str] = None) -> List[StreamSession]:
        query = select(StreamSession).where(StreamSession.status == SessionStatus.ACTIVE.value)
        if owner_id:
            query = query.where(StreamSession.user_id == owner_id)
        with self._session_factory() as db:
            return list(db.scalars(query.order_by(StreamSession.started_at.desc())))

    def list_for_stream(self, stream_id: str) -> List[StreamSession]:
        with self._session_factory() as db:
            return list(
                db.scalars(
                    select(StreamSession)
                    .where(StreamSession.stream_id == stream_id)
                    .order_by(StreamSession.started_at.desc())
                )
            )

    def list_for_owner(self, owner_id: str, limit: int = 50, offset: int = 0) -> List[StreamSession]:
        with self._session_factory() as db:
            return list(
                db.scalars(
                    select(StreamSession)
                    .where(StreamSession.user_id == owner_id)
                    .order_by(StreamSession.started_at.desc())
                    .limit(limit)
                    .offset(offset)
                )
            )

    def summarize(self, sessions: Sequence[StreamSession]) -> Dict[str, Any]:
        count = len(sessions)
        return {
            "total_streams": count,
            "total_duration": sum(s.duration_seconds or 0 for s in sessions),
            "total_viewers": sum(s.total_viewers or 0 for s in sessions),
            "avg_viewers": sum(s.peak_viewers or 0 for s in sessions) / count if count else 0,
            "avg_connection_quality": (
                sum(s.connection_quality or 0 for s in sessions) / count if count else 0
            ),
        }
