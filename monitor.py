from typing import Callable, Optional
from datetime import datetime, timedelta
from collections import deque
import threading

from logger_config import setup_logger

logger = setup_logger()


class Monitor:
    def __init__(self, failure_threshold: int, window_seconds: int = 60, alert_handler: Optional[Callable[[str], None]] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Watch storage backend failures over a sliding time window.

        Args:
            failure_threshold: Number of failures inside the window that raises an alert
            window_seconds: Time window in seconds to check for failures
            alert_handler: Optional callback function to handle alerts. If None, logs at ERROR level
            clock: Source of the current time
        """
        if failure_threshold <= 0:
            raise ValueError("Failure threshold must be positive")

        self._failure_threshold = failure_threshold
        self._window_seconds = window_seconds
        self._alert_handler = alert_handler or self._default_alert_handler
        self._clock = clock
        self._total_passes = 0
        self._total_failures = 0
        self._failure_timestamps = deque()  # Store failure timestamps
        self._last_status_time = clock()
        self._lock = threading.Lock()

    def _clean_old_failures(self) -> None:
        """Remove failures outside the time window."""
        window_start = self._clock() - timedelta(seconds=self._window_seconds)

        while self._failure_timestamps and self._failure_timestamps[0] < window_start:
            self._failure_timestamps.popleft()

    def _default_alert_handler(self, message: str) -> None:
        logger.error(message)

    def pass_(self) -> None:
        """Record a successful resolution."""
        with self._lock:
            self._total_passes += 1
            self._last_status_time = self._clock()
            self._clean_old_failures()

    def fail(self) -> None:
        """
        Record a backend failure.
        Triggers an alert when failures reach the threshold within the time window.
        """
        with self._lock:
            now = self._clock()
            self._failure_timestamps.append(now)
            self._total_failures += 1
            self._last_status_time = now

            self._clean_old_failures()
            alert = len(self._failure_timestamps) == self._failure_threshold

        if alert:
            self._alert_handler(
                f"Alert: {self._failure_threshold} storage backend failures within {self._window_seconds}s! "
                f"(Total passes: {self._total_passes}, Total failures: {self._total_failures})"
            )

    @property
    def recent_failures(self) -> int:
        """Number of failures within the window."""
        with self._lock:
            self._clean_old_failures()
            return len(self._failure_timestamps)

    @property
    def stats(self) -> dict:
        """Get monitor statistics."""
        with self._lock:
            self._clean_old_failures()
            return {
                'total_passes': self._total_passes,
                'total_failures': self._total_failures,
                'recent_failures': len(self._failure_timestamps),
                'last_status_time': int(self._last_status_time.timestamp()),
                'window_seconds': self._window_seconds
            }
