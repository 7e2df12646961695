"""
Shared extraction primitives: cooperative cancellation and call throttling.
"""

import threading
import time
from collections.abc import Callable
from typing import Optional


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a running scan.

    Checked between Oracle calls and between deep-scan chunks; work that has
    already been committed stays committed.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; return True if cancelled meanwhile."""
        return self._event.wait(timeout)


class RateLimiter:
    """Fixed minimum interval between consecutive calls.

    The first call goes through immediately. The interval applies after every
    call, whether it succeeded or failed.
    """

    def __init__(
        self,
        min_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: Optional[float] = None
        self._lock = threading.Lock()

    def wait(self, cancel_token: Optional[CancellationToken] = None) -> bool:
        """Block until the next call is allowed.

        Returns:
            False if the token was cancelled while waiting, else True
        """
        with self._lock:
            if self._last_call is not None:
                remaining = self.min_interval - (self._clock() - self._last_call)
                if remaining > 0:
                    if cancel_token is not None:
                        if cancel_token.wait(remaining):
                            return False
                    else:
                        self._sleep(remaining)
            if cancel_token is not None and cancel_token.is_cancelled:
                return False
            self._last_call = self._clock()
            return True

    def mark(self) -> None:
        """Record the end of a call; the next wait counts the interval from here."""
        with self._lock:
            self._last_call = self._clock()
