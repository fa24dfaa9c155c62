"""Tests for the detection cycle scheduler and tickers."""

import asyncio
from datetime import datetime

import pytest

from sqlmonitor.models.monitor_models import CycleReport
from sqlmonitor.services.scheduler import IntervalTicker, ManualTicker, MonitorScheduler


class RecordingRunner:
    """Cycle runner that records overlap and can fail on chosen cycles"""

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.calls = 0
        self.active = 0
        self.max_active = 0

    async def run_cycle(self, stop_event=None):
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0)
            if self.calls in self.fail_on:
                raise RuntimeError(f"cycle {self.calls} exploded")
            return CycleReport(cycle_number=self.calls, started_at=datetime(2024, 1, 1))
        finally:
            self.active -= 1


class TestMonitorScheduler:
    @pytest.mark.asyncio
    async def test_runs_one_cycle_per_tick_without_overlap(self):
        runner = RecordingRunner()
        scheduler = MonitorScheduler(runner, ManualTicker(3))

        completed = await scheduler.run()

        assert completed == 3
        assert runner.calls == 3
        assert runner.max_active == 1
        assert scheduler.last_report.cycle_number == 3

    @pytest.mark.asyncio
    async def test_failed_cycle_does_not_stop_scheduling(self):
        runner = RecordingRunner(fail_on={2})
        scheduler = MonitorScheduler(runner, ManualTicker(3))

        completed = await scheduler.run()

        assert completed == 3
        assert scheduler.last_report.cycle_number == 3

    @pytest.mark.asyncio
    async def test_stop_from_cycle_callback(self):
        runner = RecordingRunner()
        reports = []

        async def on_cycle(report):
            reports.append(report)
            scheduler.stop()

        scheduler = MonitorScheduler(runner, ManualTicker(10), on_cycle=on_cycle)

        assert await scheduler.run() == 1
        assert scheduler.is_stopping is True
        assert [r.cycle_number for r in reports] == [1]

    @pytest.mark.asyncio
    async def test_stop_interrupts_interval_wait(self):
        runner = RecordingRunner()
        scheduler = MonitorScheduler(runner, IntervalTicker(3600))

        task = asyncio.create_task(scheduler.run())
        while runner.calls < 1:
            await asyncio.sleep(0)
        scheduler.stop()

        assert await asyncio.wait_for(task, timeout=5) == 1


class TestTickers:
    @pytest.mark.asyncio
    async def test_interval_ticker_fires_immediately_then_waits(self):
        ticker = IntervalTicker(0.01)
        stop = asyncio.Event()

        assert await ticker.wait_next(stop) is True
        assert await ticker.wait_next(stop) is True
        stop.set()
        assert await ticker.wait_next(stop) is False

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            IntervalTicker(0)

    @pytest.mark.asyncio
    async def test_manual_ticker_is_finite(self):
        ticker = ManualTicker(1)
        stop = asyncio.Event()

        assert await ticker.wait_next(stop) is True
        assert await ticker.wait_next(stop) is False
