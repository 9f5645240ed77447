"""
Tests for core.throttle module.
"""
import asyncio

import pytest

from core.throttle import ReportThrottle


class FakeClock:
    """Manual clock; `sleep` advances it instead of waiting."""

    def __init__(self):
        self.now = 1000.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class TestReportThrottle:
    """Tests for ReportThrottle class."""

    def test_negative_interval_rejected(self):
        with pytest.raises(ValueError):
            ReportThrottle(-1)

    @pytest.mark.asyncio
    async def test_first_call_not_delayed(self, clock):
        throttle = ReportThrottle(31, sleep=clock.sleep, clock=clock)

        async with throttle.slot("metric-aggregates") as waited:
            assert waited == 0

        assert clock.sleeps == []
        assert throttle.calls == 1

    @pytest.mark.asyncio
    async def test_delay_between_calls(self, clock):
        """Consecutive calls are spaced `interval` apart, measured from the end of the previous one."""
        throttle = ReportThrottle(31, sleep=clock.sleep, clock=clock)

        async with throttle.slot():
            clock.now += 2  # call takes 2s
        clock.now += 5  # caller does other work

        async with throttle.slot() as waited:
            pass

        assert waited == pytest.approx(26)
        assert clock.sleeps == [pytest.approx(26)]
        assert throttle.total_waited == pytest.approx(26)

    @pytest.mark.asyncio
    async def test_no_delay_once_interval_elapsed(self, clock):
        throttle = ReportThrottle(31, sleep=clock.sleep, clock=clock)

        async with throttle.slot():
            pass
        clock.now += 40

        async with throttle.slot() as waited:
            pass

        assert waited == 0
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_nothing_waits_after_last_call(self, clock):
        """Three calls cost two gaps, not three."""
        throttle = ReportThrottle(10, sleep=clock.sleep, clock=clock)

        for _ in range(3):
            async with throttle.slot():
                pass

        assert clock.sleeps == [10, 10]

    @pytest.mark.asyncio
    async def test_concurrent_calls_are_serialized(self):
        """Overlapping callers never hold a slot at the same time."""
        throttle = ReportThrottle(0)
        active = 0
        peak = 0

        async def call():
            nonlocal active, peak
            async with throttle.slot():
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(call() for _ in range(4)))

        assert peak == 1
        assert throttle.calls == 4

    @pytest.mark.asyncio
    async def test_estimate(self, clock):
        throttle = ReportThrottle(31, sleep=clock.sleep, clock=clock)
        assert throttle.estimate(0) == 0
        assert throttle.estimate(1) == 0
        assert throttle.estimate(3) == 62

        async with throttle.slot():
            pass
        clock.now += 1

        assert throttle.remaining() == pytest.approx(30)
        assert throttle.estimate(2) == pytest.approx(61)

    @pytest.mark.asyncio
    async def test_failed_call_still_counts(self, clock):
        """A call that raises still pushes the next one back."""
        throttle = ReportThrottle(31, sleep=clock.sleep, clock=clock)

        with pytest.raises(RuntimeError):
            async with throttle.slot():
                raise RuntimeError("upstream 429")

        assert throttle.calls == 1
        assert throttle.remaining() == pytest.approx(31)
