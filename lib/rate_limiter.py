import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

WINDOWS = ('minute', 'hour', 'day')

WINDOW_SECONDS = {
    'minute': 60,
    'hour': 60 * 60,
    'day': 24 * 60 * 60,
}

@dataclass
class RateLimitEntry:
    count: int
    reset_at: float

@dataclass
class RateLimitResult:
    allowed: bool
    window: Optional[str] = None
    limit: Optional[int] = None

class RateLimiter:
    """Fixed-window message counters per sender.

    State is process-local. One instance is created at startup and handed
    to the SMS handler.
    """

    def __init__(
        self,
        max_per_minute: int = 5,
        max_per_hour: int = 30,
        max_per_day: int = 200,
        sweep_interval: float = 300,
        clock: Callable[[], float] = time.time
    ):
        self.limits: Dict[str, RateLimitEntry] = {}
        self.max_limits = {
            'minute': max_per_minute,
            'hour': max_per_hour,
            'day': max_per_day,
        }
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._last_sweep = clock()

    def is_allowed(self, user_phone: str, window: str) -> bool:
        """Count one message against a window, unless it is already full"""
        key = f"{user_phone}:{window}"
        now = self._clock()
        entry = self.limits.get(key)

        if entry is None or now > entry.reset_at:
            self.limits[key] = RateLimitEntry(count=1, reset_at=now + WINDOW_SECONDS[window])
            return True

        max_limit = self.max_limits[window]
        if entry.count >= max_limit:
            logger.info(f"Rate limit: {user_phone} exceeded {window} limit ({entry.count}/{max_limit})")
            return False

        entry.count += 1
        return True

    def check_limits(self, user_phone: str) -> RateLimitResult:
        """Check minute, hour and day windows; the first denial wins"""
        self._maybe_sweep()

        for window in WINDOWS:
            if not self.is_allowed(user_phone, window):
                return RateLimitResult(
                    allowed=False,
                    window=window,
                    limit=self.max_limits[window]
                )

        return RateLimitResult(allowed=True)

    def cleanup(self) -> int:
        """Drop entries whose window has passed"""
        now = self._clock()
        expired = [key for key, entry in self.limits.items() if now > entry.reset_at]
        for key in expired:
            del self.limits[key]

        if expired:
            logger.info(f"Rate limit: cleaned up {len(expired)} expired entries")
        return len(expired)

    def get_usage(self, user_phone: str) -> Dict[str, int]:
        now = self._clock()
        usage = {}
        for window in WINDOWS:
            entry = self.limits.get(f"{user_phone}:{window}")
            usage[window] = entry.count if entry and now <= entry.reset_at else 0
        return usage

    def reset(self, user_phone: str) -> None:
        for window in WINDOWS:
            self.limits.pop(f"{user_phone}:{window}", None)
        logger.info(f"Rate limit: reset limits for {user_phone}")

    def _maybe_sweep(self) -> None:
        now = self._clock()
        if now - self._last_sweep >= self.sweep_interval:
            self._last_sweep = now
            self.cleanup()
