# pylint: disable=missing-module-docstring,missing-function-docstring

import pytest

from observability import metrics


def test_timed_emits_one_metric_and_reports_duration(logs) -> None:
    with metrics.timed("transcription_request", zone="worker", user_id="alice", details={"attempt": 1}) as t:
        assert t.duration_ms is None
        assert metrics.active_timer_count() == 1

    records = logs.of("METRIC_TIMER")
    assert len(records) == 1
    assert records[0]["metric"] == "transcription_request"
    assert records[0]["zone"] == "worker"
    assert records[0]["user_id"] == "alice"
    assert records[0]["details"] == {"attempt": 1}
    assert t.duration_ms == records[0]["value_ms"]
    assert t.duration_s == pytest.approx(t.duration_ms / 1000.0)
    assert metrics.active_timer_count() == 0


def test_timed_stops_timer_when_block_raises(logs) -> None:
    with pytest.raises(RuntimeError):
        with metrics.timed("transcription_request"):
            raise RuntimeError("boom")

    assert len(logs.of("METRIC_TIMER")) == 1
    assert metrics.active_timer_count() == 0


def test_stop_timer_unknown_id_is_ignored(logs) -> None:
    assert metrics.stop_timer("timer_missing") is None
    assert logs.of("METRIC_TIMER") == []
