"""
Enigmo - Rate Limiting

Token bucket rate limiting for the relay. Each client session owns a
bucket for ``send_message`` envelopes; the transport server keeps one
bucket per remote address to throttle connection attempts.

Author: enigmo contributors
Version: 1.0.0
"""

import logging
import time
from threading import Lock
from typing import Callable, Dict

from .constants import (
    RATE_LIMIT_CLEANUP_INTERVAL,
    RATE_LIMIT_CONNECTIONS_PER_MINUTE,
    RATE_LIMIT_MESSAGES_BURST,
    RATE_LIMIT_MESSAGES_PER_MINUTE,
    RATE_LIMIT_STALE_TIMEOUT,
)

logger = logging.getLogger(__name__)


class TokenBucket:
    """Token bucket allowing short bursts under a long-term rate.

    Attributes:
        capacity: Maximum number of tokens in bucket
        refill_rate: Tokens added per second
        tokens: Current number of tokens
        last_refill: Clock reading at the last refill
    """

    def __init__(self, capacity: int, refill_rate: float, clock: Callable[[], float] = time.monotonic):
        """Initialize token bucket.

        Args:
            capacity: Maximum tokens (burst size)
            refill_rate: Tokens per second
            clock: Monotonic time source, injectable for tests
        """
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self.tokens = float(capacity)
        self.last_refill = clock()
        self.lock = Lock()

    @classmethod
    def per_minute(cls, per_minute: int, burst: int, clock: Callable[[], float] = time.monotonic) -> "TokenBucket":
        return cls(burst, per_minute / 60.0, clock)

    def consume(self, tokens: int = 1) -> bool:
        """Attempt to consume tokens from the bucket.

        Returns:
            True if tokens were consumed, False if insufficient tokens
        """
        with self.lock:
            now = self._clock()
            elapsed = max(0.0, now - self.last_refill)
            self.tokens = min(self.capacity, self.tokens + (elapsed * self.refill_rate))
            self.last_refill = now

            if self.tokens >= tokens:
                self.tokens -= tokens
                return True

            return False

    def reset(self) -> None:
        """Reset the bucket to full capacity."""
        with self.lock:
            self.tokens = float(self.capacity)
            self.last_refill = self._clock()


class RateLimiter:
    """Per-key rate limiter.

    The relay keys message buckets by session and connection buckets by
    remote address. Idle buckets are dropped by ``cleanup``.
    """

    def __init__(
        self,
        messages_per_minute: int = RATE_LIMIT_MESSAGES_PER_MINUTE,
        messages_burst: int = RATE_LIMIT_MESSAGES_BURST,
        connections_per_minute: int = RATE_LIMIT_CONNECTIONS_PER_MINUTE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.messages_per_minute = messages_per_minute
        self.messages_burst = messages_burst
        self.connections_per_minute = connections_per_minute
        self._clock = clock

        self.message_buckets: Dict[str, TokenBucket] = {}
        self.connection_buckets: Dict[str, TokenBucket] = {}

        self.lock = Lock()
        self.last_cleanup = clock()

        logger.info(
            "Rate limiter initialized: "
            f"{messages_per_minute} msg/min (burst {messages_burst}), "
            f"{connections_per_minute} conn/min"
        )

    def message_bucket(self, key: str) -> TokenBucket:
        """Get or create the message bucket for ``key``."""
        with self.lock:
            bucket = self.message_buckets.get(key)
            if bucket is None:
                bucket = TokenBucket.per_minute(self.messages_per_minute, self.messages_burst, self._clock)
                self.message_buckets[key] = bucket
            return bucket

    def check_message_rate(self, key: str) -> bool:
        """Check if one more message is allowed for ``key``."""
        if self.message_bucket(key).consume():
            return True

        logger.warning(f"Message rate limit exceeded for: {key}")
        return False

    def check_connection_rate(self, address: str) -> bool:
        """Check if a new connection is allowed from ``address``."""
        with self.lock:
            bucket = self.connection_buckets.get(address)
            if bucket is None:
                bucket = TokenBucket.per_minute(
                    self.connections_per_minute, self.connections_per_minute, self._clock
                )
                self.connection_buckets[address] = bucket

        if bucket.consume():
            return True

        logger.warning(f"Connection rate limit exceeded for: {address}")
        return False

    def forget(self, key: str) -> None:
        """Drop the message bucket for a closed session."""
        with self.lock:
            self.message_buckets.pop(key, None)

    def cleanup(self, force: bool = False) -> int:
        """Drop buckets idle longer than the stale timeout.

        Returns:
            Number of buckets removed
        """
        now = self._clock()
        if not force and now - self.last_cleanup < RATE_LIMIT_CLEANUP_INTERVAL:
            return 0

        removed = 0
        with self.lock:
            for buckets in (self.message_buckets, self.connection_buckets):
                stale = [k for k, b in buckets.items() if now - b.last_refill > RATE_LIMIT_STALE_TIMEOUT]
                for key in stale:
                    del buckets[key]
                removed += len(stale)
            self.last_cleanup = now

        if removed:
            logger.info(f"Cleaned up {removed} idle rate limit buckets")
        return removed

    def get_stats(self) -> Dict[str, int]:
        with self.lock:
            return {
                "message_buckets": len(self.message_buckets),
                "connection_buckets": len(self.connection_buckets),
            }
