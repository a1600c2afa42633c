import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from errors import Blocked, RateLimited
from identity import RequestContext


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None  # "rate_limited" | "blocked"

    def raise_for_denial(self) -> None:
        if self.allowed:
            return
        if self.reason == "rate_limited":
            raise RateLimited("Too many requests. Please try again later.")
        raise Blocked("Request blocked")


class TokenBucketLimiter:
    """Per-key token bucket guarding the create-transaction mutation."""

    def __init__(
        self,
        capacity: int,
        refill_per_hour: int,
        blocked: Iterable[str] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.capacity = capacity
        self.refill_per_sec = refill_per_hour / 3600.0
        self.blocked = frozenset(blocked)
        self._clock = clock
        self._buckets: dict[str, tuple[float, float]] = {}
        self._lock = threading.Lock()

    def decide(self, ctx: RequestContext, cost: int = 1) -> Decision:
        key = f"user:{ctx.user_id}" if ctx.user_id else f"client:{ctx.client_key}"
        if key in self.blocked or ctx.client_key in self.blocked:
            return Decision(False, "blocked")
        now = self._clock()
        with self._lock:
            tokens, updated = self._buckets.get(key, (float(self.capacity), now))
            tokens = min(
                float(self.capacity), tokens + (now - updated) * self.refill_per_sec
            )
            if tokens < cost:
                self._buckets[key] = (tokens, now)
                return Decision(False, "rate_limited")
            self._buckets[key] = (tokens - cost, now)
        return Decision(True)
