"""A thread-safe cache that loads missing values on demand."""

from __future__ import annotations

import threading
from collections.abc import Callable, Hashable
from typing import Any


class LoadingCache:
    """Maps keys to values loaded by ``load_func``; emptied periodically."""

    def __init__(self, load_func: Callable[[Hashable], Any], cleanup_interval: float = 3600.0):
        self._load_func = load_func
        self._interval = cleanup_interval
        self._data: dict[Hashable, Any] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._cleanup_loop, daemon=True)
        self._thread.start()

    def get(self, key: Hashable) -> Any:
        """Return the cached value for ``key``, loading it first if needed."""
        with self._lock:
            if key in self._data:
                return self._data[key]
            value = self._load_func(key)
            self._data[key] = value
            return value

    def clear(self) -> None:
        """Drop every cached value."""
        with self._lock:
            self._data = {}

    def close(self) -> None:
        """Stop the periodic cleanup."""
        self._stop.set()
        self._thread.join()

    def _cleanup_loop(self) -> None:
        while not self._stop.wait(self._interval):
            self.clear()

    def __enter__(self) -> LoadingCache:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()