from __future__ import annotations

from datetime import datetime, timedelta, timezone

from threadpilot.admin import TokenUsageTracker


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def test_usage_accumulates_and_reports_percentage() -> None:
    clock = Clock(datetime(2025, 3, 1, 15, 30, tzinfo=timezone.utc))
    tracker = TokenUsageTracker(token_base=10_000, clock=clock)

    tracker.add_token_usage(1_000, 500)
    tracker.add_token_usage(-5, 1_000)

    info = tracker.usage_info()
    assert info.current_usage == 2_500
    assert info.usage_percentage == 25
    assert info.next_reset_time == datetime(2025, 3, 2, tzinfo=timezone.utc)
    assert tracker.status_string() == "2500/10000 (25%) 2025-03-02 00:00"


def test_usage_resets_after_a_day() -> None:
    clock = Clock(datetime(2025, 3, 1, 15, 30, tzinfo=timezone.utc))
    tracker = TokenUsageTracker(clock=clock)
    tracker.add_token_usage(40_000, 10_000)
    assert tracker.usage_percentage() == 50

    clock.now = datetime(2025, 3, 2, 0, 0, tzinfo=timezone.utc)

    assert tracker.current_usage == 0
    assert tracker.usage_info().next_reset_time == clock.now + timedelta(hours=24)


def test_manual_reset() -> None:
    clock = Clock(datetime(2025, 3, 1, 8, tzinfo=timezone.utc))
    tracker = TokenUsageTracker(clock=clock)
    tracker.add_token_usage(10, 10)

    tracker.reset()

    assert tracker.current_usage == 0
    assert tracker.usage_info().as_dict()["next_reset_time"] == "2025-03-02T08:00:00+00:00"
