"""Rate-limit policy: minimum spacing between calls plus per-endpoint sliding-window quotas."""
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional


@dataclass
class RateLimitQuota:
    """Per-endpoint rate-limit quota."""
    requests_per_window: int
    window_seconds: float


@dataclass
class RateLimitState:
    """Track request history for a single endpoint."""
    quota: RateLimitQuota
    request_times: list = field(default_factory=list)

    def is_allowed(self) -> bool:
        now = time.time()
        cutoff = now - self.quota.window_seconds
        self.request_times = [t for t in self.request_times if t > cutoff]
        return len(self.request_times) < self.quota.requests_per_window

    def record_request(self) -> None:
        self.request_times.append(time.time())

    def time_until_allowed(self) -> float:
        """Return seconds until next request is allowed. 0 if allowed now."""
        if self.is_allowed():
            return 0.0
        oldest = min(self.request_times)
        return max(0.0, oldest + self.quota.window_seconds - time.time())


class RateLimitManager:
    """Enforce rate-limit quotas per endpoint."""

    # Luno allows roughly 5 calls per second per key on the trading endpoints
    DEFAULT_QUOTAS = {
        "/api/1/marketorder": RateLimitQuota(requests_per_window=5, window_seconds=1),
        "/api/1/trades": RateLimitQuota(requests_per_window=3, window_seconds=1),
        "default": RateLimitQuota(requests_per_window=5, window_seconds=1),
    }

    def __init__(self, quotas: Optional[Dict[str, RateLimitQuota]] = None):
        self.quotas = quotas or self.DEFAULT_QUOTAS.copy()
        self.states: Dict[str, RateLimitState] = {}

    def _get_state(self, endpoint: str) -> RateLimitState:
        if endpoint not in self.states:
            quota = self.quotas.get(endpoint, self.quotas.get("default"))
            self.states[endpoint] = RateLimitState(quota=quota)
        return self.states[endpoint]

    def is_allowed(self, endpoint: str) -> bool:
        return self._get_state(endpoint).is_allowed()

    def record_request(self, endpoint: str) -> None:
        self._get_state(endpoint).record_request()

    def time_until_allowed(self, endpoint: str) -> float:
        return self._get_state(endpoint).time_until_allowed()

    def wait_if_needed(self, endpoint: str, max_wait: float = 60.0) -> bool:
        """Wait until request is allowed; return True if allowed, False if max_wait exceeded."""
        start = time.time()
        while not self.is_allowed(endpoint):
            wait_time = self.time_until_allowed(endpoint)
            if wait_time > 0:
                elapsed = time.time() - start
                if elapsed + wait_time > max_wait:
                    return False
                time.sleep(min(wait_time, max_wait - elapsed))

        self.record_request(endpoint)
        return True


class RequestPacer:
    """Keep at least ``min_interval`` seconds between consecutive calls.

    Every exchange call goes through ``pace`` first. Some endpoints (trade
    history) still trip 429s at the default spacing and ask for a longer one
    via ``interval``.
    """

    def __init__(
        self,
        min_interval: float = 0.6,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: Optional[float] = None

    def pace(self, interval: Optional[float] = None) -> float:
        """Block until the spacing is respected; return the seconds slept."""
        spacing = self.min_interval if interval is None else interval
        slept = 0.0
        if self._last_call is not None:
            remaining = spacing - (self._clock() - self._last_call)
            if remaining > 0:
                self._sleep(remaining)
                slept = remaining
        self._last_call = self._clock()
        return slept
