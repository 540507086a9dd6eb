"""Sliding-window rate limiting.

Each source key owns a deque of request instants. A request is admitted iff
fewer than ``max_requests`` instants remain after pruning those older than
``now - window_s``; on admission the current instant is appended.
"""

import logging
import math
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Iterable, Optional

from ..errors import RateLimited

logger = logging.getLogger(__name__)


class RateLimiter:
    """Per-key sliding window with its own lock."""

    def __init__(
        self,
        window_s: float,
        max_requests: int,
        exempt_paths: Iterable[str] = (),
        per_endpoint: bool = False,
        message: str = "Too many requests, please try again later.",
        clock: Callable[[], float] = time.time,
    ):
        self.window_s = window_s
        self.max_requests = max_requests
        self.exempt_paths = frozenset(exempt_paths)
        self.per_endpoint = per_endpoint
        self.message = message
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    @classmethod
    def for_endpoint(
        cls,
        window_s: float,
        max_requests: int,
        message: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> "RateLimiter":
        """Limiter keyed by ``source+path`` so each API surface has its own budget."""
        return cls(
            window_s,
            max_requests,
            per_endpoint=True,
            message=message or "Too many requests for this endpoint",
            clock=clock,
        )

    def key_for(self, source: str, path: str) -> str:
        return f"{source}_{path}" if self.per_endpoint else source

    def is_exempt(self, path: str) -> bool:
        return path in self.exempt_paths

    def _prune(self, window: Deque[float], now: float) -> None:
        cutoff = now - self.window_s
        while window and window[0] < cutoff:
            window.popleft()

    def allow(self, key: str) -> bool:
        """Admit one request for ``key`` if the window has room."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                window = self._windows[key] = deque()
            self._prune(window, now)
            if len(window) >= self.max_requests:
                return False
            window.append(now)
            return True

    def retry_after(self, key: str) -> int:
        """Whole seconds until the oldest request in the window expires."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if not window:
                return 0
            self._prune(window, now)
            if len(window) < self.max_requests:
                return 0
            return max(1, math.ceil(window[0] + self.window_s - now))

    def check(self, source: str, path: str = "") -> None:
        """Admit or raise.

        Raises:
            RateLimited: The window for this source (and path) is full
        """
        if self.is_exempt(path):
            return
        key = self.key_for(source, path)
        if not self.allow(key):
            retry = self.retry_after(key) or math.ceil(self.window_s)
            logger.warning(
                "Rate limit exceeded for %s on %s (%d per %ss)",
                source,
                path or "-",
                self.max_requests,
                self.window_s,
            )
            raise RateLimited(self.message, retry_after=retry)

    def remaining(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                return self.max_requests
            self._prune(window, now)
            return max(0, self.max_requests - len(window))

    def purge(self) -> int:
        """Drop keys whose windows are empty.

        Returns:
            Number of keys removed
        """
        now = self._clock()
        with self._lock:
            for window in self._windows.values():
                self._prune(window, now)
            empty = [k for k, w in self._windows.items() if not w]
            for key in empty:
                del self._windows[key]
        return len(empty)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)
