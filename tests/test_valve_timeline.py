import pytest

from pool_controller import ValveTimeline, interpolate_percent


def sample(timeline, start, end, step=500):
    return [timeline.current_percent(t) for t in range(start, end, step)]


def test_idle_timeline_reports_stable_percent():
    tl = ValveTimeline(percent=42.0)
    assert tl.current_percent(0) == 42.0
    assert tl.current_percent(10**12) == 42.0


def test_opening_is_non_decreasing_and_ends_at_target():
    tl = ValveTimeline()
    tl.start(0, 100, at_ms=1_000, duration_ms=30_000)
    values = sample(tl, 0, 40_000)
    assert values == sorted(values)
    assert tl.current_percent(31_000) == 100.0
    assert tl.current_percent(99_000) == 100.0


def test_closing_is_non_increasing_and_ends_at_target():
    tl = ValveTimeline()
    tl.start(100, 0, at_ms=1_000, duration_ms=30_000)
    values = sample(tl, 0, 40_000)
    assert values == sorted(values, reverse=True)
    assert tl.current_percent(31_000) == 0.0


def test_progress_is_clamped_before_start():
    tl = ValveTimeline()
    tl.start(20, 80, at_ms=10_000, duration_ms=30_000)
    assert tl.current_percent(0) == 20.0


def test_midpoint_is_linear():
    tl = ValveTimeline()
    tl.start(40, 100, at_ms=0, duration_ms=30_000)
    assert tl.current_percent(15_000) == pytest.approx(70.0)


def test_zero_duration_jumps_to_target():
    assert interpolate_percent(0, 100, 5_000, 0, 5_000) == 100.0


def test_halt_freezes_current_position():
    tl = ValveTimeline()
    tl.start(100, 0, at_ms=0, duration_ms=30_000)
    tl.halt(7_500)
    assert tl.moving is False
    assert tl.percent == pytest.approx(75.0)
    assert tl.current_percent(60_000) == pytest.approx(75.0)


def test_settle_stops_motion():
    tl = ValveTimeline()
    tl.start(0, 100, at_ms=0, duration_ms=30_000)
    tl.settle(100)
    assert tl.moving is False
    assert tl.current_percent(1) == 100.0


def test_to_dict_uses_wire_names():
    tl = ValveTimeline()
    tl.start(0, 100, at_ms=1_000, duration_ms=30_000)
    data = tl.to_dict(16_000)
    assert data == {
        "percent": pytest.approx(50.0),
        "moving": True,
        "from": 0.0,
        "to": 100.0,
        "startMs": 1_000,
        "durationMs": 30_000,
    }
