"""FastAPI application exposing stream, session and republishing controls."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import AppConfig, configure_logging, load_config
from .errors import AccessDeniedError, MediaServerError, NotFoundError, RestreamerError, ValidationError
from .models import Caller
from .stream_manager import LiveStreamManager

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (NotFoundError, 404),
    (AccessDeniedError, 403),
    (ValidationError, 400),
    (MediaServerError, 502),
)


class DestinationPayload(BaseModel):
    platform: Optional[str] = Field(None, description="youtube, twitch, facebook, twitter, x, linkedin or a custom name.")
    stream_key: Optional[str] = None
    destination_name: Optional[str] = None
    destination_stream: Optional[str] = None
    destination_url: Optional[str] = None
    destination_port: Optional[int] = None
    destination_app: Optional[str] = None
    enabled: bool = True
    priority: Optional[int] = None


class StreamUpdatePayload(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    source_app: Optional[str] = None
    source_stream: Optional[str] = None
    quality_settings: Optional[Dict[str, Any]] = None
    auto_post_enabled: Optional[bool] = None
    auto_post_accounts: Optional[list[str]] = None
    auto_post_message: Optional[str] = None
    thumbnail_url: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[list[str]] = None
    is_public: Optional[bool] = None


class StreamPayload(StreamUpdatePayload):
    title: str
    stream_key: Optional[str] = None
    republishing_targets: list[DestinationPayload] = Field(default_factory=list)


class SessionStartPayload(BaseModel):
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SessionStatsPayload(BaseModel):
    peak_viewers: Optional[int] = None
    total_viewers: Optional[int] = None
    bytes_sent: Optional[int] = None
    bytes_received: Optional[int] = None
    avg_bitrate: Optional[float] = None
    dropped_frames: Optional[int] = None
    connection_quality: Optional[float] = Field(None, ge=0, le=1)
    duration_seconds: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None


class SessionEndPayload(BaseModel):
    ended_at: Optional[dt.datetime] = None
    duration_seconds: Optional[int] = None
    final_stats: Optional[SessionStatsPayload] = None
    error_message: Optional[str] = None


class PlatformKeyPayload(BaseModel):
    stream_key: str


class BulkDestinationPayload(BaseModel):
    destinations: list[DestinationPayload]


def _naive_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(dt.timezone.utc).replace(tzinfo=None)


def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_role: str = Header("user"),
) -> Caller:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity")
    return Caller(user_id=x_user_id, role=x_user_role)


def create_app(config: Optional[AppConfig] = None, manager: Optional[LiveStreamManager] = None) -> FastAPI:
    config = config or load_config()
    configure_logging(config.log_level)
    manager = manager or LiveStreamManager(config)
    app = FastAPI(title=config.project_name)
    app.state.manager = manager

    @app.exception_handler(RestreamerError)
    async def restreamer_error(request: Request, exc: RestreamerError) -> JSONResponse:
        for error_type, status_code in ERROR_STATUS:
            if isinstance(exc, error_type):
                break
        else:
            status_code = 500
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/streams", status_code=201)
    def create_stream(payload: StreamPayload, caller: Caller = Depends(get_caller)):
        data = payload.model_dump(exclude_none=True)
        data["republishing_targets"] = [
            target.model_dump(exclude_none=True) for target in payload.republishing_targets
        ]
        return manager.create_stream(caller, data)

    @app.get("/streams")
    def list_streams(caller: Caller = Depends(get_caller)):
        return {"streams": manager.list_streams(caller)}

    @app.get("/streams/analytics")
    def stream_analytics(period: str = "7d", caller: Caller = Depends(get_caller)):
        return manager.get_stream_analytics(caller, period)

    @app.get("/streams/active")
    def active_streams(caller: Caller = Depends(get_caller)):
        return {"streams": manager.get_active_streams(caller)}

    @app.get("/streams/sessions/active")
    def active_sessions(caller: Caller = Depends(get_caller)):
        return {"sessions": manager.get_active_sessions(caller)}

    @app.get("/streams/{stream_id}")
    def get_stream(stream_id: str, caller: Caller = Depends(get_caller)):
        return manager.get_stream(caller, stream_id)

    @app.put("/streams/{stream_id}")
    def update_stream(stream_id: str, payload: StreamUpdatePayload, caller: Caller = Depends(get_caller)):
        return manager.update_stream(caller, stream_id, payload.model_dump(exclude_none=True))

    @app.delete("/streams/{stream_id}")
    def delete_stream(stream_id: str, caller: Caller = Depends(get_caller)):
        manager.delete_stream(caller, stream_id)
        return {"deleted": stream_id}

    @app.get("/streams/{stream_id}/rtmp-info")
    def rtmp_info(stream_id: str, caller: Caller = Depends(get_caller)):
        return manager.get_rtmp_info(caller, stream_id)

    @app.post("/streams/{stream_id}/sessions", status_code=201)
    def start_session(
        stream_id: str,
        payload: Optional[SessionStartPayload] = None,
        caller: Caller = Depends(get_caller),
    ):
        metadata = payload.metadata if payload else {}
        return manager.start_session(caller, stream_id, metadata)

    @app.put("/streams/sessions/{session_id}/end")
    def end_session(
        session_id: str,
        payload: Optional[SessionEndPayload] = None,
        caller: Caller = Depends(get_caller),
    ):
        end_data: Dict[str, Any] = {}
        if payload is not None:
            end_data = payload.model_dump(exclude_none=True)
            end_data["ended_at"] = _naive_utc(payload.ended_at)
        return manager.end_session(caller, session_id, end_data)

    @app.put("/streams/sessions/{session_id}/stats")
    def update_session_stats(session_id: str, payload: SessionStatsPayload, caller: Caller = Depends(get_caller)):
        return manager.update_session_stats(caller, session_id, payload.model_dump(exclude_none=True))

    @app.get("/streams/{stream_id}/republishing")
    def list_destinations(stream_id: str, caller: Caller = Depends(get_caller)):
        return {"destinations": manager.list_destinations(caller, stream_id)}

    @app.post("/streams/{stream_id}/republishing", status_code=201)
    def add_destination(stream_id: str, payload: DestinationPayload, caller: Caller = Depends(get_caller)):
        return manager.add_destination(caller, stream_id, payload.model_dump(exclude_none=True))

    @app.post("/streams/{stream_id}/republishing/bulk")
    def add_destinations(stream_id: str, payload: BulkDestinationPayload, caller: Caller = Depends(get_caller)):
        targets = [target.model_dump(exclude_none=True) for target in payload.destinations]
        outcomes = manager.add_destinations(caller, stream_id, targets)
        return {"results": [outcome.to_dict() for outcome in outcomes]}

    @app.post("/streams/{stream_id}/republishing/{platform}", status_code=201)
    def add_platform_destination(
        stream_id: str, platform: str, payload: PlatformKeyPayload, caller: Caller = Depends(get_caller)
    ):
        return manager.add_platform_destination(caller, stream_id, platform, payload.stream_key)

    @app.delete("/streams/republishing/{destination_id}")
    def remove_destination(destination_id: str, caller: Caller = Depends(get_caller)):
        manager.remove_destination(caller, destination_id)
        return {"deleted": destination_id}

    @app.get("/media-server/config")
    def media_server_config(caller: Caller = Depends(get_caller)):
        document = manager.get_media_server_config(caller)
        if document is None:
            raise HTTPException(status_code=404, detail="No media server configuration written yet")
        return document

    @app.post("/media-server/config/sync")
    def sync_media_server_config(caller: Caller = Depends(get_caller)):
        return manager.resync_config(caller)

    @app.get("/media-server/status")
    def monitor_status(caller: Caller = Depends(get_caller)):
        return manager.get_monitor_status(caller)

    @app.get("/media-server/test")
    def test_media_server(caller: Caller = Depends(get_caller)):
        result = manager.test_media_server(caller)
        if not result.get("success"):
            raise MediaServerError(result.get("error") or "Media server unreachable")
        return result

    @app.on_event("startup")
    def startup_event() -> None:
        manager.start_monitoring()
        logger.info("Stream republisher started.")

    @app.on_event("shutdown")
    def shutdown_event() -> None:
        manager.shutdown()
        logger.info("Stream republisher stopped.")

    return app


app = create_app()
