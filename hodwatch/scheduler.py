"""Fixed-delay polling loop shared by the perpetual ingestion components.

Each iteration runs the cycle function to completion, then waits the full
interval before starting the next one. Iterations never overlap; a slow cycle
delays the next one instead of skipping it. Any exception raised by a cycle is
logged with its traceback and the loop carries on.
"""

import asyncio
import contextlib
import time as _time
from collections.abc import Awaitable, Callable

from loguru import logger

from hodwatch.monitoring.metrics import MetricsCollector

# Log a metrics summary every N cycles
SUMMARY_EVERY_CYCLES = 100


class FixedIntervalLoop:
    """
    Run ``cycle`` forever with a fixed delay between iterations.

    Usage::

        loop = FixedIntervalLoop("snapshots", ingestor.run_cycle, interval=15.0)
        await loop.run()          # until loop.stop() is called

    ``cycle`` may return an int (rows written) which is fed into the metrics.
    """

    def __init__(
        self,
        name: str,
        cycle: Callable[[], Awaitable[int | None]],
        interval: float,
        stop_event: asyncio.Event | None = None,
        metrics: MetricsCollector | None = None,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self._cycle = cycle
        self._interval = interval
        self._stop_event = stop_event or asyncio.Event()
        self.metrics = metrics or MetricsCollector(name)

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request the loop to exit after the current iteration."""
        self._stop_event.set()

    async def shutdown(self) -> None:
        self.stop()

    async def run_once(self) -> int:
        """Run a single cycle, recording metrics. Never raises (except cancellation)."""
        started = _time.monotonic()
        try:
            rows = await self._cycle()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.metrics.record_failure(_time.monotonic() - started, e)
            logger.exception(f"[{self.name}] cycle failed: {e}")
            return 0

        rows = rows or 0
        self.metrics.record_cycle(_time.monotonic() - started, rows)
        return rows

    async def run(self) -> None:
        """Loop until stopped."""
        logger.info(f"[{self.name}] starting loop, interval {self._interval}s")
        while not self.stopped:
            await self.run_once()

            cycles = self.metrics.get_metrics().cycles
            if cycles % SUMMARY_EVERY_CYCLES == 0:
                logger.info(f"[{self.name}] metrics: {self.metrics.get_summary()}")

            if self.stopped:
                break
            logger.debug(f"[{self.name}] waiting {self._interval}s before next cycle")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)

        logger.info(f"[{self.name}] loop stopped after {self.metrics.get_metrics().cycles} cycles")
