"""Normalize the media server's stats documents into per-stream records and metrics.

The stats surface answers with one of several layouts depending on version and
build. Each shape detector below inspects the raw document and returns either a
list of application dicts or ``None`` ("not my shape"). The first detector that
answers wins; when none does, the document carries no applications.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from dateutil import parser as date_parser
from dateutil.tz import tzutc

logger = logging.getLogger(__name__)

DEFAULT_APP = "live"
STREAM_KEY_FIELDS = ("name", "stream", "key")
VIEWER_FIELDS = ("clients", "viewers", "viewer_count", "nclients", "connections")
DROP_RATIO_FIELDS = ("drop_ratio", "dropped_ratio", "frame_drop_ratio")

Application = Dict[str, Any]
ShapeDetector = Callable[[Mapping[str, Any]], Optional[List[Application]]]


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _as_applications(value: Any) -> Optional[List[Application]]:
    if isinstance(value, list):
        return [app for app in value if isinstance(app, dict)]
    if isinstance(value, dict):
        return [{"name": name, **app} for name, app in value.items() if isinstance(app, dict)]
    return None


def _nested_applications(*path: str) -> ShapeDetector:
    def detect(stats: Mapping[str, Any]) -> Optional[List[Application]]:
        node: Any = stats
        for key in path:
            if not isinstance(node, dict):
                return None
            node = node.get(key)
        return _as_applications(node)

    detect.__name__ = "detect_" + "_".join(path)
    return detect


def _flat_streams(stats: Mapping[str, Any]) -> Optional[List[Application]]:
    streams = stats.get("streams")
    if streams is None:
        return None
    return [{"name": DEFAULT_APP, "streams": streams}]


SHAPE_DETECTORS: Sequence[ShapeDetector] = (
    _nested_applications("applications"),
    _nested_applications("rtmp", "applications"),
    _nested_applications("server", "applications"),
    _flat_streams,
)


def extract_applications(stats: Any) -> List[Application]:
    if not isinstance(stats, dict):
        logger.info("Stats document is not an object; ignoring")
        return []
    for detector in SHAPE_DETECTORS:
        applications = detector(stats)
        if applications is not None:
            return applications
    logger.info("No applications found in stats structure")
    return []


def extract_streams(application: Mapping[str, Any]) -> List[Dict[str, Any]]:
    for field_name in ("streams", "publishers"):
        value = application.get(field_name)
        if isinstance(value, list):
            return [record for record in value if isinstance(record, dict)]
        if isinstance(value, dict):
            return [{"name": name, **record} for name, record in value.items() if isinstance(record, dict)]
    return []


def stream_key_of(record: Mapping[str, Any]) -> Optional[str]:
    for field_name in STREAM_KEY_FIELDS:
        value = record.get(field_name)
        if value:
            return str(value)
    return None


def viewer_count(record: Mapping[str, Any]) -> Optional[int]:
    counts = [_number(record.get(name)) for name in VIEWER_FIELDS]
    counts = [count for count in counts if count is not None]
    if not counts:
        return None
    return int(max(counts))


def accumulate_viewers(total: int, previous: int, current: int) -> int:
    """Grow a running audience total by the viewers who joined since the last poll."""
    return total + max(0, current - previous)


def heuristic_quality(record: Mapping[str, Any]) -> float:
    """Blend error rate, retransmit rate and bitrate shortfall into a [0, 1] score."""
    quality = 1.0
    packets = _number(record.get("total_packets"))
    errors = _number(record.get("errors"))
    retransmits = _number(record.get("retransmits"))
    if packets and errors:
        quality -= (errors / packets) * 0.5
    if packets and retransmits:
        quality -= (retransmits / packets) * 0.3

    bitrate = _number(record.get("bitrate"))
    target = _number(record.get("target_bitrate"))
    if bitrate and target:
        ratio = bitrate / target
        if ratio < 0.8:
            quality -= (0.8 - ratio) * 0.5
    return _clamp(quality)


def connection_quality(record: Mapping[str, Any]) -> float:
    dropped = _number(record.get("dropped_frames"))
    total = _number(record.get("total_frames"))
    if dropped is not None and total is not None:
        return _clamp(1 - dropped / (total or 1))
    for name in DROP_RATIO_FIELDS:
        ratio = _number(record.get(name))
        if ratio is not None:
            return _clamp(1 - ratio)
    return heuristic_quality(record)


def _duration(record: Mapping[str, Any], now: Optional[dt.datetime] = None) -> Optional[int]:
    start_time = record.get("start_time")
    if start_time:
        try:
            started = date_parser.isoparse(str(start_time))
        except (ValueError, OverflowError):
            logger.debug("Unparseable start_time %r", start_time)
        else:
            if started.tzinfo is None:
                started = started.replace(tzinfo=tzutc())
            now = now or dt.datetime.now(tzutc())
            return max(0, int((now - started).total_seconds()))
    uptime = _number(record.get("uptime"))
    if uptime is not None:
        return int(uptime)
    return None


def extract_metrics(record: Mapping[str, Any], now: Optional[dt.datetime] = None) -> Dict[str, Any]:
    """Session metric fields derived from one stream record."""
    metrics: Dict[str, Any] = {}

    viewers = viewer_count(record)
    if viewers is not None:
        metrics["peak_viewers"] = viewers

    bytes_in = _number(record.get("bytes_in"))
    if bytes_in is not None:
        metrics["bytes_received"] = int(bytes_in)
    bytes_out = _number(record.get("bytes_out"))
    if bytes_out is not None:
        metrics["bytes_sent"] = int(bytes_out)

    bitrate = _number(record.get("bitrate"))
    video = record.get("video")
    if isinstance(video, dict) and _number(video.get("bitrate")):
        bitrate = _number(video.get("bitrate"))
    if bitrate is not None:
        metrics["avg_bitrate"] = float(bitrate)

    dropped = _number(record.get("dropped_frames"))
    if dropped is not None:
        metrics["dropped_frames"] = int(dropped)
    metrics["connection_quality"] = connection_quality(record)

    duration = _duration(record, now)
    if duration is not None:
        metrics["duration_seconds"] = duration
    return metrics


def is_broadcast_active(record: Mapping[str, Any]) -> bool:
    """Whether the record shows live client or viewer activity."""
    if record.get("state") == "active" or record.get("status") == "active":
        return True
    return bool(viewer_count(record))
