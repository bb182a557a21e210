"""
Attempt Rate Limiter - throttles repeated failures per identifier
Process-local and time-bounded; the durable per-user cap lives in the MFA
verification log, this layer only slows down a single noisy address.
"""

import logging
import math
from typing import Optional

from caching.simple_cache import ExpiringCache

logger = logging.getLogger(__name__)


class AttemptLimiter:
    """Fixed-window failure counter"""

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        time_window: Optional[int] = None,
        cache: Optional[ExpiringCache] = None,
        namespace: str = "attempts",
    ):
        """
        Args:
            max_attempts: Failures allowed per window (default from config)
            time_window: Window length in seconds (default from config)
            cache: Backing cache, replaceable in tests
        """
        from config import Config

        self.max_attempts = Config.MFA_IP_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.time_window = Config.MFA_FAILURE_WINDOW_MINUTES * 60 if time_window is None else time_window
        self.cache = ExpiringCache(default_ttl=self.time_window) if cache is None else cache
        self.namespace = namespace

    def _key(self, identifier: str) -> str:
        return f"{self.namespace}:{identifier}"

    def is_allowed(self, identifier: Optional[str]) -> bool:
        """False once the identifier has used up its failures for this window"""
        if not identifier:
            return True
        return self.cache.get(self._key(identifier), 0) < self.max_attempts

    def record_failure(self, identifier: Optional[str]) -> int:
        if not identifier:
            return 0
        count = self.cache.increment(self._key(identifier), ttl=self.time_window)
        if count == self.max_attempts:
            logger.warning(f"🚫 RATE_LIMITED: {self.namespace} {identifier} reached {count} failures")
        return count

    def reset(self, identifier: Optional[str]) -> None:
        if identifier:
            self.cache.delete(self._key(identifier))

    def get_remaining_attempts(self, identifier: str) -> int:
        return max(0, self.max_attempts - self.cache.get(self._key(identifier), 0))

    def retry_after(self, identifier: str) -> int:
        """Seconds until the window for identifier resets"""
        return int(math.ceil(self.cache.remaining_ttl(self._key(identifier))))
