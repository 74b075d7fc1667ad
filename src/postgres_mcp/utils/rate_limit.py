"""Brute-force protection for the password step of the authorize flow.

Failed credential checks are counted per caller identifier (normally the
client address). Reaching the threshold locks the identifier out for a
fixed window; a successful check clears the counter.
"""

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from postgres_mcp.config import (
    DEFAULT_RATE_LIMIT_ATTEMPTS,
    DEFAULT_RATE_LIMIT_WINDOW_MS,
    ServerConfig,
)

logger = logging.getLogger("postgres-mcp.utils.rate_limit")


DEFAULT_WINDOW_SECONDS = DEFAULT_RATE_LIMIT_WINDOW_MS / 1000


@dataclass
class RateLimitEntry:
    """Failure counter for one caller identifier."""

    attempts: int = 0
    lockout_until: float = 0.0  # 0 means not locked


class RateLimiter:
    """Per-identifier failure counter with a lockout window."""

    def __init__(
        self,
        max_attempts: int = DEFAULT_RATE_LIMIT_ATTEMPTS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize rate limiter.

        Args:
            max_attempts: Consecutive failures that trigger a lockout
            window_seconds: Lockout duration in seconds
            clock: Time source, seconds since the epoch
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get_entry(self, identifier: str) -> RateLimitEntry | None:
        return self._entries.get(identifier)

    def check(self, identifier: str) -> str | None:
        """Check whether an identifier is locked out.

        Args:
            identifier: Caller identifier, e.g. the client IP

        Returns:
            Error message with the remaining wait if locked, None otherwise
        """
        entry = self._entries.get(identifier)
        if entry is None:
            return None

        now = self._clock()
        if entry.lockout_until > now:
            return (
                "Too many failed attempts. "
                f"Try again in {self.retry_after(identifier)} seconds."
            )

        # Expired lockouts are dropped so the next failure starts from one
        if entry.attempts >= self.max_attempts:
            del self._entries[identifier]
            logger.debug(f"Lockout expired for {identifier}")

        return None

    def retry_after(self, identifier: str) -> int:
        """Seconds until the identifier's lockout ends, 0 if not locked."""
        entry = self._entries.get(identifier)
        if entry is None:
            return 0
        remaining = entry.lockout_until - self._clock()
        return max(0, math.ceil(remaining))

    def record_failure(self, identifier: str) -> bool:
        """Record a failed credential check.

        Args:
            identifier: Caller identifier

        Returns:
            True if the identifier is now locked out
        """
        entry = self._entries.setdefault(identifier, RateLimitEntry())
        entry.attempts += 1

        if entry.attempts >= self.max_attempts:
            entry.lockout_until = self._clock() + self.window_seconds
            logger.warning(
                f"Rate limit triggered for {identifier}: "
                f"{entry.attempts} failed attempts, locked for {self.window_seconds:g}s"
            )
            return True
        return False

    def clear(self, identifier: str) -> None:
        """Forget all failures for an identifier after a successful check."""
        self._entries.pop(identifier, None)

    @classmethod
    def from_config(
        cls, config: ServerConfig, clock: Callable[[], float] = time.time
    ) -> "RateLimiter":
        return cls(
            max_attempts=config.rate_limit_attempts,
            window_seconds=config.rate_limit_window_seconds,
            clock=clock,
        )
