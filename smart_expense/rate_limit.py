from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable

ONE_DAY_SECONDS = 24 * 60 * 60


@dataclass
class PairRateLimiter:
    """Remembers when each currency pair was last fetched.

    Process-local; a shared store can replace it as long as it offers the same
    ``is_limited``/``record`` pair.
    """

    window_seconds: float = ONE_DAY_SECONDS
    clock: Callable[[], float] = time.time
    _last_fetch: dict[str, float] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def is_limited(self, key: str) -> bool:
        with self._lock:
            last_fetch = self._last_fetch.get(key)
        return last_fetch is not None and self.clock() - last_fetch < self.window_seconds

    def record(self, key: str) -> None:
        with self._lock:
            self._last_fetch[key] = self.clock()


def pair_key(base: str, target: str) -> str:
    return f"{base}:{target}"
