"""
Sliding-window rate limiting for the sign-in endpoints.
Counts are kept per process; the one-time codes themselves live in the
database, so a limiter reset never weakens code verification.
"""
import asyncio
from typing import Dict, Optional
from datetime import datetime, timedelta, timezone
from collections import defaultdict, deque
from dataclasses import dataclass
import logging

from services.security import SecurityUtils

logger = logging.getLogger(__name__)

@dataclass
class RateLimitResult:
    """Result of rate limit check."""
    allowed: bool
    remaining: int
    reset_time: datetime
    retry_after: Optional[int] = None

class InMemoryRateLimiter:
    """In-memory sliding window limiter keyed by client and path."""

    def __init__(self):
        # Structure: {client_key: deque([timestamp1, timestamp2, ...])}
        self._requests: Dict[str, deque] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def check_rate_limit(self, client_key: str, window_seconds: int = 60,
                             max_requests: int = 60) -> RateLimitResult:
        """
        Record a request for ``client_key`` unless its window is full.

        Args:
            client_key: Unique identifier for the client (IP and path)
            window_seconds: Time window in seconds
            max_requests: Maximum requests allowed in window
        """
        async with self._lock:
            now = datetime.now(timezone.utc)
            window_start = now - timedelta(seconds=window_seconds)

            client_requests = self._requests[client_key]
            while client_requests and client_requests[0] < window_start:
                client_requests.popleft()

            current_requests = len(client_requests)

            if current_requests >= max_requests:
                reset_time = client_requests[0] + timedelta(seconds=window_seconds)
                retry_after = max(1, int((reset_time - now).total_seconds()))

                SecurityUtils.log_security_event(
                    "rate_limit_exceeded",
                    {
                        "client_key": client_key,
                        "current_requests": current_requests,
                        "max_requests": max_requests,
                        "window_seconds": window_seconds
                    }
                )

                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_time=reset_time,
                    retry_after=retry_after
                )

            client_requests.append(now)
            return RateLimitResult(
                allowed=True,
                remaining=max_requests - current_requests - 1,
                reset_time=now + timedelta(seconds=window_seconds)
            )

    async def cleanup_expired(self, max_age_seconds: int = 3600):
        """Drop timestamps older than the longest window so idle clients are forgotten."""
        async with self._lock:
            cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)
            for client_key, requests in list(self._requests.items()):
                while requests and requests[0] < cutoff:
                    requests.popleft()
                if not requests:
                    del self._requests[client_key]

    def reset(self):
        """Forget every client. Used between test cases."""
        self._requests.clear()

rate_limiter = InMemoryRateLimiter()

async def cleanup_rate_limiter():
    """Background task to clean up expired rate limiter entries."""
    while True:
        try:
            await rate_limiter.cleanup_expired()
            await asyncio.sleep(300)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in rate limiter cleanup: {e}")
            await asyncio.sleep(60)

def get_rate_limiter() -> InMemoryRateLimiter:
    """Get the global rate limiter instance."""
    return rate_limiter
