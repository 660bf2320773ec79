"""High-of-day alerting."""

from hodwatch.scanner.hod_scanner import HodScanner, trading_day_start

__all__ = ["HodScanner", "trading_day_start"]
