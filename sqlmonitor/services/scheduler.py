"""
Detection cycle scheduler

One cycle runs per tick and the next tick is awaited only after the cycle
finishes, so cycles never overlap. Timing comes from a Ticker so tests can
drive cycles without real delays.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Protocol

from sqlmonitor.core.logger import get_logger, log_exception
from sqlmonitor.models.monitor_models import CycleReport

logger = get_logger('services.scheduler')


class CycleRunner(Protocol):
    async def run_cycle(self, stop_event: Optional[asyncio.Event] = None) -> CycleReport:
        ...


class Ticker(ABC):
    """Source of scheduler ticks"""

    @abstractmethod
    async def wait_next(self, stop_event: asyncio.Event) -> bool:
        """Wait for the next tick; False means stop scheduling"""
        pass


class IntervalTicker(Ticker):
    """
    Fixed interval between the end of one cycle and the start of the next

    The first tick fires immediately; a stop request ends the wait early.
    """

    def __init__(self, interval_seconds: float, run_immediately: bool = True):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds
        self._first = run_immediately

    async def wait_next(self, stop_event: asyncio.Event) -> bool:
        if stop_event.is_set():
            return False
        if self._first:
            self._first = False
            return True
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            return True
        return False


class ManualTicker(Ticker):
    """A fixed number of ticks with no delay"""

    def __init__(self, ticks: int = 1):
        self.remaining = ticks

    async def wait_next(self, stop_event: asyncio.Event) -> bool:
        if stop_event.is_set() or self.remaining <= 0:
            return False
        self.remaining -= 1
        return True


class MonitorScheduler:
    """
    Runs detection cycles until the ticker is exhausted or stop() is called
    """

    def __init__(
        self,
        runner: CycleRunner,
        ticker: Ticker,
        on_cycle: Optional[Callable[[CycleReport], Awaitable[None]]] = None,
    ):
        self.runner = runner
        self.ticker = ticker
        self.on_cycle = on_cycle
        self.stop_event = asyncio.Event()
        self.cycles_completed = 0
        self.last_report: Optional[CycleReport] = None

    def stop(self) -> None:
        """Request shutdown; the running cycle skips its remaining databases"""
        if not self.stop_event.is_set():
            logger.info("Stop requested")
        self.stop_event.set()

    @property
    def is_stopping(self) -> bool:
        return self.stop_event.is_set()

    async def run(self) -> int:
        """
        Run until stopped

        Returns:
            Number of cycles that ran
        """
        logger.info("Scheduler started")
        while await self.ticker.wait_next(self.stop_event):
            try:
                report = await self.runner.run_cycle(self.stop_event)
            except Exception as e:
                log_exception(logger, e, "Detection cycle failed")
                continue
            finally:
                self.cycles_completed += 1

            self.last_report = report
            logger.info(f"Cycle finished: {report.summary()}")
            if self.on_cycle is not None:
                await self.on_cycle(report)

        logger.info(f"Scheduler stopped after {self.cycles_completed} cycle(s)")
        return self.cycles_completed
