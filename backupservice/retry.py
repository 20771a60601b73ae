"""Re-run a failing call after a delay, a bounded number of times."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class RetryService:
    """Retries a function at a fixed interval; ``label`` is only used in logs."""

    def __init__(self, label: str):
        self.label = label
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()

    def retry(self, func: Callable[[], object], interval: float, attempts: int) -> None:
        """Call ``func``; if it raises, call it again after ``interval`` seconds.

        At most ``attempts`` further calls are made. A new call cancels any
        retry that is still pending.
        """
        with self._lock:
            self._cancel_timer()
            try:
                func()
            except Exception as exc:
                if attempts == 0:
                    logger.warning("[%s] Execution failed, no retry attempts left: %s",
                                   self.label, exc)
                    return
                logger.info("[%s] Execution failed, retry scheduled in %ss: %s",
                            self.label, interval, exc)
                timer = threading.Timer(interval, self.retry,
                                        args=(func, interval, attempts - 1))
                timer.daemon = True
                self._timer = timer
                timer.start()

    def cancel(self) -> None:
        """Cancel a pending retry, if any."""
        with self._lock:
            self._cancel_timer()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None