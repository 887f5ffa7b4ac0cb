import time
import threading
from typing import Dict, Optional
import redis
from loguru import logger


class Idem:
    """Redis-based idempotency guard for webhooks and scanner ticks."""

    def __init__(self, redis_url: Optional[str] = None, clock=time.time):
        self.clock = clock
        self._lock = threading.Lock()
        self._memory_keys: Dict[str, float] = {}
        self.r = None

        if not redis_url:
            logger.info("Idempotency store using in-memory keys")
            return

        try:
            self.r = redis.from_url(redis_url)
            # Test connection
            self.r.ping()
            logger.info("Redis connection established successfully")
        except Exception as e:
            logger.error(f"Redis connection failed: {e}")
            # Fallback to in-memory storage (not recommended for production)
            self.r = None

    def check_and_set(self, key: str, ttl: int = 3600) -> bool:
        """
        Check if key exists and set it if it doesn't.

        Args:
            key: Unique identifier (lead email, tick slot, ...)
            ttl: Time to live in seconds (default: 1 hour)

        Returns:
            True if key was set (first time seen), False if already exists
        """
        if not key:
            logger.warning("Empty key provided to idempotency check")
            return False

        try:
            if self.r:
                result = self.r.set(name=f"idem:{key}", value=int(self.clock()), ex=ttl, nx=True)
                return result is True

            now = self.clock()
            with self._lock:
                expires_at = self._memory_keys.get(key)
                if expires_at is not None and expires_at > now:
                    return False
                self._memory_keys[key] = now + ttl
                return True

        except Exception as e:
            logger.error(f"Idempotency check failed: {e}")
            # Fail open - allow processing to continue
            return True

    def clear_key(self, key: str) -> bool:
        """Manually clear a key (for testing/debugging)."""
        try:
            if self.r:
                return bool(self.r.delete(f"idem:{key}"))
            with self._lock:
                self._memory_keys.pop(key, None)
            return True
        except Exception as e:
            logger.error(f"Failed to clear key: {e}")
            return False
