"""Tests for the rolling-hour quota governor."""

from __future__ import annotations

import pytest

from sweep import ConfigurationError, QuotaGovernor

from conftest import FakeClock


def make_governor(clock: FakeClock, max_per_hour: int = 12, margin: int = 2) -> QuotaGovernor:
    return QuotaGovernor(max_per_hour, margin, clock=clock, sleep=clock.sleep)


class TestQuotaGovernor:
    def test_budget(self, clock: FakeClock) -> None:
        assert make_governor(clock).budget == 10
        assert QuotaGovernor(5000, 100, clock=clock, sleep=clock.sleep).budget == 4900

    def test_within_budget_does_not_wait(self, clock: FakeClock) -> None:
        gov = make_governor(clock)
        assert gov.before_dispatch(10) == 0.0
        gov.record(10)
        assert gov.window.used == 10
        assert clock.sleeps == []

    def test_waits_rest_of_hour_then_resets(self, clock: FakeClock) -> None:
        gov = make_governor(clock)
        start = clock.now
        gov.record(8)
        clock.now += 600

        waited = gov.before_dispatch(3)

        assert waited == pytest.approx(3000.0)
        assert clock.sleeps == [pytest.approx(3000.0)]
        assert gov.window.used == 0
        assert gov.window.window_start == pytest.approx(start + 3600)

    def test_resets_without_wait_after_an_hour(self, clock: FakeClock) -> None:
        gov = make_governor(clock)
        gov.record(9)
        clock.now += 4000

        assert gov.before_dispatch(5) == 0.0
        assert clock.sleeps == []
        assert gov.window.used == 0
        assert gov.window.window_start == clock.now

    def test_oversized_unit_waits_once_and_proceeds(self, clock: FakeClock) -> None:
        """A unit bigger than the whole budget gets one wait-and-reset, never a split."""
        gov = make_governor(clock)
        waited = gov.before_dispatch(50)
        assert waited == pytest.approx(3600.0)
        assert len(clock.sleeps) == 1
        gov.record(50)
        assert gov.window.used == 50

    def test_used_never_exceeds_budget_without_wait(self, clock: FakeClock) -> None:
        gov = make_governor(clock)
        for _ in range(20):
            gov.before_dispatch(3)
            assert gov.window.used + 3 <= gov.budget
            gov.record(3)
            clock.now += 1
        # 3 units fit per window: a wait before units 4, 7, 10, 13, 16 and 19.
        assert len(clock.sleeps) == 6
        assert all(s > 0 for s in clock.sleeps)

    @pytest.mark.parametrize(("max_per_hour", "margin"), [(0, 0), (100, 100), (100, 150), (100, -1)])
    def test_invalid_quota(self, clock: FakeClock, max_per_hour: int, margin: int) -> None:
        with pytest.raises(ConfigurationError):
            QuotaGovernor(max_per_hour, margin, clock=clock, sleep=clock.sleep)
