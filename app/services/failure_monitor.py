from typing import Callable, Optional
from datetime import datetime, timedelta
from collections import deque

from logger_config import setup_logger

logger = setup_logger()


class FailureMonitor:
    def __init__(
        self,
        failure_threshold: int,
        window_seconds: int = 60,
        alert_handler: Optional[Callable[[str], None]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Track filesystem failures and alert when too many happen in a short window.

        Args:
            failure_threshold: Number of failures inside the window that triggers an alert
            window_seconds: Length of the sliding window in seconds
            alert_handler: Optional callback receiving the alert message. Logs at ERROR if None
            clock: Source of the current time
        """
        if failure_threshold <= 0:
            raise ValueError("Failure threshold must be positive")

        self._failure_threshold = failure_threshold
        self._window_seconds = window_seconds
        self._alert_handler = alert_handler or self._default_alert_handler
        self._clock = clock
        self._total_successes = 0
        self._total_failures = 0
        self._failure_timestamps = deque()

    def _clean_old_failures(self) -> None:
        """Remove failures outside the time window."""
        window_start = self._clock() - timedelta(seconds=self._window_seconds)

        while self._failure_timestamps and self._failure_timestamps[0] < window_start:
            self._failure_timestamps.popleft()

    def _default_alert_handler(self, message: str) -> None:
        logger.error(f"[ALERT] {message}")

    def record_success(self) -> None:
        """Record a completed filesystem operation."""
        self._total_successes += 1
        self._clean_old_failures()

    def record_failure(self, reason: str = "") -> None:
        """
        Record a failed filesystem operation.
        Triggers the alert when the failures inside the window reach the threshold.
        """
        self._failure_timestamps.append(self._clock())
        self._total_failures += 1
        self._clean_old_failures()
        logger.debug(f"Filesystem failure recorded: {reason}")

        if len(self._failure_timestamps) == self._failure_threshold:
            self._alert_handler(
                f"{self._failure_threshold} filesystem failures within {self._window_seconds}s "
                f"(last: {reason or 'unknown'}; total successes: {self._total_successes}, "
                f"total failures: {self._total_failures})"
            )

    @property
    def recent_failures(self) -> int:
        """Number of failures inside the current window."""
        self._clean_old_failures()
        return len(self._failure_timestamps)

    @property
    def stats(self) -> dict:
        self._clean_old_failures()
        return {
            'total_successes': self._total_successes,
            'total_failures': self._total_failures,
            'recent_failures': len(self._failure_timestamps),
            'window_seconds': self._window_seconds
        }
