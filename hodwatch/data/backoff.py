"""Exponential reconnect backoff for the trade stream.

The delay for the Nth consecutive failed attempt is::

    min(initial * multiplier ** (N - 1), maximum)

so with the defaults (1 s, x2, 10 s cap) the retries wait 1, 2, 4, 8, 10, 10 ...
seconds. ``reset()`` is called on every successful socket open.
"""

# Standard reconnection parameters.
INITIAL_RECONNECT_DELAY = 1.0  # seconds
MAX_RECONNECT_DELAY = 10.0  # seconds
RECONNECT_DELAY_MULTIPLIER = 2.0


class ReconnectBackoff:
    """Tracks consecutive reconnect attempts and hands out the next delay."""

    __slots__ = ("initial", "maximum", "multiplier", "_attempts")

    def __init__(
        self,
        initial: float = INITIAL_RECONNECT_DELAY,
        maximum: float = MAX_RECONNECT_DELAY,
        multiplier: float = RECONNECT_DELAY_MULTIPLIER,
    ) -> None:
        if initial <= 0 or maximum < initial:
            raise ValueError(f"Invalid backoff bounds: initial={initial}, maximum={maximum}")
        self.initial = initial
        self.maximum = maximum
        self.multiplier = multiplier
        self._attempts = 0

    @property
    def attempts(self) -> int:
        """Consecutive attempts since the last reset."""
        return self._attempts

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before the given 1-based attempt."""
        n = max(attempt, 1)
        return min(self.initial * (self.multiplier ** (n - 1)), self.maximum)

    def next_delay(self) -> float:
        """Count one more failed attempt and return how long to wait before retrying."""
        self._attempts += 1
        return self.delay_for(self._attempts)

    def reset(self) -> None:
        """Back to the initial delay (call after a successful connect)."""
        self._attempts = 0
