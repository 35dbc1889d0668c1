from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List


class RuntimeCache:
    """Process-wide registry of ephemeral caches plus an invalidation epoch.

    Readers capture ``epoch`` before a slow read and discard the result if the
    epoch moved while they were reading.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._epoch = time.time_ns()
        self._caches: Dict[str, Dict[str, Any]] = {}
        self._listeners: List[Callable[[str], None]] = []

    @property
    def epoch(self) -> int:
        return self._epoch

    def cache_for(self, name: str) -> Dict[str, Any]:
        with self._lock:
            return self._caches.setdefault(name, {})

    def subscribe(self, callback: Callable[[str], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _unsubscribe

    def bump(self, reason: str) -> int:
        with self._lock:
            # Strictly increasing even when the clock does not move
            self._epoch = max(self._epoch + 1, time.time_ns())
            listeners = list(self._listeners)
            epoch = self._epoch
        for cb in listeners:
            try:
                cb(reason)
            except Exception:
                continue
        return epoch

    def reset_all(self, reason: str) -> int:
        with self._lock:
            cleared = 0
            for cache in self._caches.values():
                cleared += len(cache)
                cache.clear()
        self.bump(reason)
        return cleared


runtime_cache = RuntimeCache()
