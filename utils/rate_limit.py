"""
Rate Gate

Minimum-spacing throttle for outbound calls to an external service.
Each client owns a gate by default; pass the same instance to several
clients when they must share one budget.
"""

import threading
import time


class RateGate:
    """Blocks callers until ``min_interval`` seconds have passed since the previous call."""

    def __init__(self, min_interval: float):
        if min_interval < 0:
            raise ValueError("min_interval must not be negative")
        self.min_interval = min_interval
        self.last_call_time = None
        self._lock = threading.Lock()

    def wait(self) -> float:
        """
        Wait out the remainder of the interval, then claim the next slot.

        Returns:
            float: Seconds spent sleeping.
        """
        with self._lock:
            waited = 0.0
            if self.last_call_time is not None:
                remaining = self.min_interval - (time.monotonic() - self.last_call_time)
                if remaining > 0:
                    time.sleep(remaining)
                    waited = remaining
            self.last_call_time = time.monotonic()
            return waited

    def reset(self) -> None:
        """Forget the previous call so the next one proceeds immediately."""
        with self._lock:
            self.last_call_time = None
