import datetime as dt

import pytest

from restreamer.errors import NotFoundError, ValidationError
from restreamer.models import SessionStatus


def test_open_creates_active_session(tracker, stream):
    session = tracker.open(stream.id, stream.user_id, {"source": "obs"})

    assert session.status == SessionStatus.ACTIVE.value
    assert session.session_metadata == {"source": "obs"}
    assert len(session.session_key) == 32
    assert tracker.find_active(stream.id).id == session.id
    assert tracker.find_by_session_key(session.session_key).id == session.id


def test_open_unknown_stream_raises(tracker):
    with pytest.raises(NotFoundError):
        tracker.open("missing", "user-1")


def test_second_open_supersedes_active_session(tracker, stream):
    first = tracker.open(stream.id, stream.user_id)
    second = tracker.open(stream.id, stream.user_id)

    active = [s for s in tracker.list_for_stream(stream.id) if s.status == SessionStatus.ACTIVE.value]
    assert [s.id for s in active] == [second.id]

    previous = tracker.get(first.id)
    assert previous.status == SessionStatus.ENDED.value
    assert previous.ended_at is not None
    assert previous.session_metadata["superseded_by"] == second.id


def test_find_or_open_reuses_active_session(tracker, stream):
    opened, created = tracker.find_or_open(stream.id, stream.user_id)
    again, created_again = tracker.find_or_open(stream.id, stream.user_id)

    assert created is True
    assert created_again is False
    assert again.id == opened.id


def test_update_metrics_merges_supplied_fields_only(tracker, stream):
    session = tracker.open(stream.id, stream.user_id)
    tracker.update_metrics(session.id, {"peak_viewers": 10, "bytes_sent": 500})
    updated = tracker.update_metrics(session.id, {"bytes_received": 900, "metadata": {"encoder": "x264"}})

    assert updated.peak_viewers == 10
    assert updated.bytes_sent == 500
    assert updated.bytes_received == 900
    assert updated.session_metadata == {"encoder": "x264"}


def test_peak_viewers_never_decreases(tracker, stream):
    session = tracker.open(stream.id, stream.user_id)
    tracker.update_metrics(session.id, {"peak_viewers": 25, "total_viewers": 25})
    updated = tracker.update_metrics(session.id, {"peak_viewers": 4, "total_viewers": 4})

    assert updated.peak_viewers == 25
    assert updated.total_viewers == 4


def test_repeated_metrics_are_idempotent(tracker, stream):
    session = tracker.open(stream.id, stream.user_id)
    metrics = {"peak_viewers": 7, "avg_bitrate": 3500.0, "connection_quality": 0.9}
    first = tracker.update_metrics(session.id, metrics).to_dict()
    second = tracker.update_metrics(session.id, metrics).to_dict()

    assert first == second


def test_update_metrics_without_valid_fields_raises(tracker, stream):
    session = tracker.open(stream.id, stream.user_id)
    with pytest.raises(ValidationError):
        tracker.update_metrics(session.id, {"unknown": 1})


def test_close_computes_duration(tracker, stream):
    session = tracker.open(stream.id, stream.user_id)
    ended_at = session.started_at + dt.timedelta(seconds=90, milliseconds=400)

    closed = tracker.close(session.id, ended_at=ended_at)

    assert closed.status == SessionStatus.ENDED.value
    assert closed.duration_seconds == 90
    assert closed.ended_at == ended_at


def test_close_is_idempotent(tracker, stream):
    session = tracker.open(stream.id, stream.user_id)
    first = tracker.close(session.id)
    second = tracker.close(session.id, ended_at=first.ended_at + dt.timedelta(hours=1), error_message="late")

    assert second.status == SessionStatus.ENDED.value
    assert second.ended_at == first.ended_at
    assert second.duration_seconds == first.duration_seconds
    assert second.error_message is None


def test_close_with_error_message(tracker, stream):
    session = tracker.open(stream.id, stream.user_id)

    closed = tracker.close(session.id, duration_seconds=12, error_message="encoder crashed", final_stats={"peak_viewers": 3})

    assert closed.status == SessionStatus.ERROR.value
    assert closed.error_message == "encoder crashed"
    assert closed.duration_seconds == 12
    assert closed.peak_viewers == 3


def test_mark_announced_records_post_ids(tracker, stream):
    session = tracker.open(stream.id, stream.user_id)

    announced = tracker.mark_announced(session.id, ["p1", 2])

    assert announced.published_to_social is True
    assert announced.social_post_ids == ["p1", "2"]


def test_listings(tracker, registry, stream):
    other = registry.create("user-2", {"title": "Other"})
    first = tracker.open(stream.id, stream.user_id)
    tracker.close(first.id)
    second = tracker.open(stream.id, stream.user_id)
    tracker.open(other.id, other.user_id)

    assert [s.id for s in tracker.list_active("user-1")] == [second.id]
    assert len(tracker.list_active()) == 2
    assert {s.id for s in tracker.list_for_stream(stream.id)} == {first.id, second.id}
    assert len(tracker.list_for_owner("user-1", limit=1)) == 1


def test_summarize(tracker, stream):
    session = tracker.open(stream.id, stream.user_id)
    tracker.update_metrics(session.id, {"peak_viewers": 10, "total_viewers": 40, "connection_quality": 0.5})
    tracker.close(session.id, duration_seconds=300)

    summary = tracker.summarize(tracker.list_for_owner("user-1"))

    assert summary == {
        "total_streams": 1,
        "total_duration": 300,
        "total_viewers": 40,
        "avg_viewers": 10,
        "avg_connection_quality": 0.5,
    }
    assert tracker.summarize([])["total_streams"] == 0
