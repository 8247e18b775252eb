from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable

from ..transport.base import Endpoint


class EndpointCache:
    """Process-wide map of known endpoints to their last-seen monotonic timestamp.

    Shared by concurrent scrapes. The lock only guards the dict operations themselves; callers
    must never hold it across network I/O, which is why iteration goes through `snapshot()`.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._last_seen: dict[Endpoint, float] = {}

    def snapshot(self) -> dict[Endpoint, float]:
        with self._lock:
            return dict(self._last_seen)

    def touch(self, endpoint: Endpoint, now: float | None = None) -> None:
        """Insert `endpoint` or refresh its last-seen timestamp."""

        seen_at = self._clock() if now is None else now
        with self._lock:
            self._last_seen[endpoint] = seen_at

    def evict(self, endpoints: Iterable[Endpoint]) -> None:
        with self._lock:
            for endpoint in endpoints:
                self._last_seen.pop(endpoint, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._last_seen)

    def __contains__(self, endpoint: object) -> bool:
        with self._lock:
            return endpoint in self._last_seen
