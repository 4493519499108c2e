import pytest

from restreamer.destinations import PLATFORM_PRESETS, resolve_platform
from restreamer.errors import NotFoundError, ValidationError
from restreamer.models import DestinationSpec, DestinationStatus


def _attrs(stream, **overrides):
    attrs = {
        "stream_id": stream.id,
        "user_id": stream.user_id,
        "source_app": "live",
        "source_stream": stream.stream_key,
        "destination_name": "Custom",
        "destination_url": "rtmp.example.net",
        "destination_app": "ingest",
        "destination_stream": "custom-key",
    }
    attrs.update(overrides)
    return attrs


@pytest.mark.parametrize(
    "platform, host, port, app",
    [
        ("youtube", "a.rtmp.youtube.com", 1935, "live2"),
        ("twitch", "live.twitch.tv", 1935, "live"),
        ("facebook", "live-api-s.facebook.com", 443, "rtmp"),
        ("twitter", "ingest.pscp.tv", 80, "x"),
        ("X", "ingest.pscp.tv", 80, "x"),
        ("linkedin", "live-api.linkedin.com", 1935, "live"),
    ],
)
def test_platform_presets(platform, host, port, app):
    preset = resolve_platform(platform)
    assert (preset.host, preset.port, preset.app) == (host, port, app)


def test_unknown_platform_uses_caller_values():
    assert resolve_platform("kick", url="fa723fc1b171.global-contribute.live-video.net") == resolve_platform(
        "kick", url="fa723fc1b171.global-contribute.live-video.net", port=1935, app="live"
    )
    custom = resolve_platform("restream", url="live.restream.io", port=1936, app="push")
    assert (custom.host, custom.port, custom.app) == ("live.restream.io", 1936, "push")
    assert resolve_platform("myserver").host == "myserver"
    assert "kick" not in PLATFORM_PRESETS


def test_create_starts_inactive(directory, stream):
    destination = directory.create(_attrs(stream))

    assert destination.status == DestinationStatus.INACTIVE.value
    assert destination.destination_port == 1935
    assert destination.priority == 1
    assert destination.retry_attempts == 3
    assert destination.connection_count == 0


def test_create_requires_fields(directory, stream):
    with pytest.raises(ValidationError) as excinfo:
        directory.create(_attrs(stream, destination_url=None))
    assert "destination_url" in str(excinfo.value)


def test_create_for_unknown_stream_raises(directory, stream):
    with pytest.raises(NotFoundError):
        directory.create(_attrs(stream, stream_id="missing"))


def test_create_for_platform_applies_preset(directory, stream):
    destination = directory.create_for_platform(stream, DestinationSpec(platform="youtube", stream_key="yt-key"))

    assert destination.destination_name == "YouTube Live"
    assert destination.destination_url == "a.rtmp.youtube.com"
    assert destination.destination_app == "live2"
    assert destination.destination_stream == "yt-key"
    assert destination.source_stream == stream.source_stream


def test_create_for_platform_requires_key(directory, stream):
    with pytest.raises(ValidationError):
        directory.create_for_platform(stream, DestinationSpec(platform="twitch", stream_key=""))


def test_list_orders_by_priority(directory, stream):
    low = directory.create(_attrs(stream, destination_name="Low", priority=5))
    high = directory.create(_attrs(stream, destination_name="High", priority=1))

    assert [d.id for d in directory.list(stream.id)] == [high.id, low.id]
    assert [d.id for d in directory.list_for_owner(stream.user_id)] == [high.id, low.id]


def test_update_status_active_counts_connections_once(directory, stream):
    destination = directory.create(_attrs(stream))

    directory.update_status(destination.id, "active")
    again = directory.update_status(destination.id, "active")

    assert again.connection_count == 1
    assert again.last_connected_at is not None


def test_update_status_error_records_last_error(directory, stream):
    destination = directory.create(_attrs(stream))

    failed = directory.update_status(destination.id, "error", error="connection refused")

    assert failed.status == DestinationStatus.ERROR.value
    assert failed.last_error == "connection refused"


def test_update_status_rejects_unknown_status(directory, stream):
    destination = directory.create(_attrs(stream))
    with pytest.raises(ValidationError):
        directory.update_status(destination.id, "paused")


def test_update_uses_allow_list(directory, stream):
    destination = directory.create(_attrs(stream))

    updated = directory.update(destination.id, {"enabled": False, "priority": 2, "status": "active"})

    assert updated.enabled is False
    assert updated.priority == 2
    assert updated.status == DestinationStatus.INACTIVE.value
    with pytest.raises(ValidationError):
        directory.update(destination.id, {"status": "active"})


def test_bulk_set_status_and_stats(directory, stream):
    directory.create(_attrs(stream, destination_name="One"))
    directory.create(_attrs(stream, destination_name="Two", enabled=False))

    directory.bulk_set_status(stream.id, "active")
    stats = directory.stats(stream.id)

    assert stats == {
        "total_destinations": 2,
        "enabled_destinations": 1,
        "active_destinations": 2,
        "error_destinations": 0,
        "total_connections": 2,
    }

    directory.bulk_set_status(stream.id, "inactive")
    assert directory.stats(stream.id)["active_destinations"] == 0


def test_delete(directory, stream):
    destination = directory.create(_attrs(stream))

    directory.delete(destination.id)

    with pytest.raises(NotFoundError):
        directory.get(destination.id)
    with pytest.raises(NotFoundError):
        directory.delete(destination.id)
