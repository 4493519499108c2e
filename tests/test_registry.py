import datetime as dt
import re

import pytest

from restreamer.errors import NotFoundError, ValidationError
from restreamer.models import DEFAULT_QUALITY_SETTINGS, StreamStatus


def test_create_generates_key_and_ingest_url(registry):
    stream = registry.create("user-1", {"title": "Morning show", "tags": ["news"]})

    assert re.fullmatch(r"[0-9a-f]{32}", stream.stream_key)
    assert stream.rtmp_url == "rtmp://media.test:1935/live"
    assert stream.source_app == "live"
    assert stream.source_stream == stream.stream_key
    assert stream.status == StreamStatus.CREATED.value
    assert stream.quality_settings == DEFAULT_QUALITY_SETTINGS
    assert stream.tags == ["news"]
    assert stream.is_public is True


def test_create_requires_title(registry):
    with pytest.raises(ValidationError):
        registry.create("user-1", {"description": "no title"})


def test_create_rejects_duplicate_stream_key(registry):
    registry.create("user-1", {"title": "First", "stream_key": "shared"})
    with pytest.raises(ValidationError):
        registry.create("user-2", {"title": "Second", "stream_key": "shared"})


def test_get_unknown_stream_raises(registry):
    with pytest.raises(NotFoundError):
        registry.get("missing")


def test_find_by_stream_key(registry, stream):
    assert registry.find_by_stream_key(stream.stream_key).id == stream.id
    assert registry.find_by_stream_key("nope") is None


def test_update_only_touches_allowed_fields(registry, stream):
    updated = registry.update(stream.id, {"title": "Evening show", "stream_key": "hijack", "status": "live"})

    assert updated.title == "Evening show"
    assert updated.stream_key == stream.stream_key
    assert updated.status == StreamStatus.CREATED.value


def test_update_without_valid_fields_raises(registry, stream):
    with pytest.raises(ValidationError):
        registry.update(stream.id, {"status": "live"})


def test_update_status_stamps_transition_times(registry, stream):
    live = registry.update_status(stream.id, "live")
    assert live.started_at is not None
    assert live.ended_at is None

    ended = registry.update_status(stream.id, "ended")
    assert ended.ended_at is not None
    assert ended.ended_at >= ended.started_at

    relive = registry.update_status(stream.id, "live")
    assert relive.status == "live"
    assert relive.ended_at is None


def test_update_status_keeps_explicit_timestamps(registry, stream):
    started = dt.datetime(2024, 5, 1, 12, 0, 0)
    live = registry.update_status(stream.id, "live", started_at=started, thumbnail_url="https://img/1.png")

    assert live.started_at == started
    assert live.thumbnail_url == "https://img/1.png"


def test_update_status_rejects_return_to_created(registry, stream):
    registry.update_status(stream.id, "live")
    with pytest.raises(ValidationError):
        registry.update_status(stream.id, "created")


def test_update_status_rejects_unknown_status(registry, stream):
    with pytest.raises(ValidationError):
        registry.update_status(stream.id, "paused")


def test_list_is_enriched_with_aggregates(registry, tracker, directory, stream):
    registry.create("user-2", {"title": "Someone else"})
    session = tracker.open(stream.id, stream.user_id)
    tracker.update_metrics(session.id, {"peak_viewers": 12, "total_viewers": 30, "connection_quality": 0.8})
    tracker.close(session.id, duration_seconds=60)
    directory.create(
        {
            "stream_id": stream.id,
            "user_id": stream.user_id,
            "source_app": "live",
            "source_stream": stream.stream_key,
            "destination_name": "Twitch",
            "destination_url": "live.twitch.tv",
            "destination_app": "live",
            "destination_stream": "tw-key",
        }
    )

    listed = registry.list("user-1")

    assert [item["id"] for item in listed] == [stream.id]
    item = listed[0]
    assert item["stats"] == {
        "session_count": 1,
        "total_duration": 60,
        "max_viewers": 12,
        "total_viewers": 30,
        "avg_quality": pytest.approx(0.8),
    }
    assert item["republishing_count"] == 1
    assert item["active_republishing"] == 0


def test_stats_for_stream_without_sessions(registry, stream):
    assert registry.get_stats(stream.id)["session_count"] == 0


def test_get_detail_nests_sessions_and_destinations(registry, tracker, stream):
    tracker.open(stream.id, stream.user_id)

    detail = registry.get_detail(stream.id)

    assert detail["id"] == stream.id
    assert len(detail["sessions"]) == 1
    assert detail["republishing"] == []
    assert detail["stats"]["session_count"] == 1


def test_delete_removes_sessions_and_destinations(registry, tracker, directory, stream):
    session = tracker.open(stream.id, stream.user_id)
    tracker.close(session.id)
    directory.create(
        {
            "stream_id": stream.id,
            "user_id": stream.user_id,
            "source_app": "live",
            "source_stream": stream.stream_key,
            "destination_name": "Twitch",
            "destination_url": "live.twitch.tv",
            "destination_app": "live",
            "destination_stream": "tw-key",
        }
    )

    registry.delete(stream.id)

    with pytest.raises(NotFoundError):
        registry.get(stream.id)
    assert tracker.list_for_stream(stream.id) == []
    assert directory.list(stream.id) == []
    with pytest.raises(NotFoundError):
        registry.delete(stream.id)
