from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_s: int


@dataclass
class ClientWindow:
    timestamps: deque[float] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock)
    evicted: bool = False


class SlidingWindowRateLimiter:
    """Per-client sliding window over the last ``window_s`` seconds.

    Each client window has its own lock; the registry lock is only held to
    look up or create a window and during the periodic sweep that drops
    windows with no request inside the current window.
    """

    def __init__(self, max_requests: int, window_s: float = 60.0, sweep_interval_s: float = 300.0) -> None:
        self.max_requests = max(1, max_requests)
        self.window_s = window_s
        self.sweep_interval_s = sweep_interval_s
        self._windows: dict[str, ClientWindow] = {}
        self._registry_lock = threading.Lock()
        self._last_sweep: float | None = None

    @property
    def tracked_clients(self) -> int:
        with self._registry_lock:
            return len(self._windows)

    def admit(self, client_id: str, now: float | None = None) -> bool:
        return self.check(client_id, now).allowed

    def check(self, client_id: str, now: float | None = None) -> RateLimitDecision:
        if now is None:
            now = time.monotonic()
        self._maybe_sweep(now)

        while True:
            window = self._window_for(client_id)
            with window.lock:
                # swept between lookup and lock; fetch the replacement
                if window.evicted:
                    continue
                return self._check_window(window, now)

    def reset(self) -> None:
        with self._registry_lock:
            for window in self._windows.values():
                window.evicted = True
            self._windows.clear()
            self._last_sweep = None

    def _window_for(self, client_id: str) -> ClientWindow:
        with self._registry_lock:
            window = self._windows.get(client_id)
            if window is None:
                window = ClientWindow()
                self._windows[client_id] = window
            return window

    def _check_window(self, window: ClientWindow, now: float) -> RateLimitDecision:
        bucket = window.timestamps
        while bucket and now - bucket[0] >= self.window_s:
            bucket.popleft()

        if len(bucket) >= self.max_requests:
            retry_after = max(1, int(self.window_s - (now - bucket[0])))
            return RateLimitDecision(False, 0, retry_after)

        bucket.append(now)
        return RateLimitDecision(True, self.max_requests - len(bucket), 0)

    def _maybe_sweep(self, now: float) -> None:
        with self._registry_lock:
            if self._last_sweep is None:
                self._last_sweep = now
                return
            if now - self._last_sweep < self.sweep_interval_s:
                return
            self._last_sweep = now

            for client_id, window in list(self._windows.items()):
                if not window.lock.acquire(blocking=False):
                    continue
                try:
                    if not window.timestamps or now - window.timestamps[-1] >= self.window_s:
                        window.evicted = True
                        del self._windows[client_id]
                finally:
                    window.lock.release()
