"""Per-component cycle metrics."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from loguru import logger


@dataclass
class CycleMetrics:
    """Counters for a repeating unit of work."""

    cycles: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    rows_written: int = 0
    last_duration_seconds: float | None = None
    total_duration_seconds: float = 0.0
    last_cycle_at: datetime | None = None
    last_error: str | None = None

    @property
    def avg_duration_seconds(self) -> float | None:
        """Average cycle duration across all recorded cycles."""
        if self.cycles == 0:
            return None
        return self.total_duration_seconds / self.cycles


class MetricsCollector:
    """
    Collects cycle metrics for one long-running component.

    Tracks:
    - Completed and failed cycles
    - Rows written to the store
    - Cycle durations
    """

    def __init__(self, component: str):
        self.component = component
        self._metrics = CycleMetrics()

    def record_cycle(self, duration_seconds: float, rows_written: int = 0) -> None:
        """
        Record a completed cycle.

        Args:
            duration_seconds: Wall time the cycle took
            rows_written: Rows upserted or inserted during the cycle
        """
        m = self._metrics
        m.cycles += 1
        m.consecutive_failures = 0
        m.rows_written += max(rows_written, 0)
        m.last_duration_seconds = duration_seconds
        m.total_duration_seconds += duration_seconds
        m.last_cycle_at = datetime.now(timezone.utc)

    def record_failure(self, duration_seconds: float, error: BaseException) -> None:
        """Record a cycle that raised."""
        m = self._metrics
        m.cycles += 1
        m.failures += 1
        m.consecutive_failures += 1
        m.last_duration_seconds = duration_seconds
        m.total_duration_seconds += duration_seconds
        m.last_cycle_at = datetime.now(timezone.utc)
        m.last_error = str(error)
        if m.consecutive_failures and m.consecutive_failures % 10 == 0:
            logger.warning(
                f"[{self.component}] {m.consecutive_failures} consecutive failed cycles "
                f"(last error: {m.last_error})"
            )

    def get_metrics(self) -> CycleMetrics:
        """Get the current counters."""
        return self._metrics

    def get_summary(self) -> dict[str, Any]:
        """Summary suitable for logging."""
        m = self._metrics
        return {
            "component": self.component,
            "cycles": m.cycles,
            "failures": m.failures,
            "rows_written": m.rows_written,
            "last_duration_seconds": (
                round(m.last_duration_seconds, 3) if m.last_duration_seconds is not None else None
            ),
            "avg_duration_seconds": (
                round(m.avg_duration_seconds, 3) if m.avg_duration_seconds is not None else None
            ),
            "last_error": m.last_error,
        }
