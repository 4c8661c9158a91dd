"""
Read throttling for Azure Resource Manager.

ARM reports the remaining read budget per subscription/tenant in response
headers. The throttle slows callers down as that budget runs low and
honours Retry-After once a 429 has been seen.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any

logger = logging.getLogger(__name__)

# ARM remaining-read headers, most specific first
REMAINING_READ_HEADERS = (
    "x-ms-ratelimit-remaining-subscription-reads",
    "x-ms-ratelimit-remaining-tenant-reads",
)

# ARM grants 12000 reads per hour per principal and scope
DEFAULT_READ_LIMIT = 12000


@dataclass
class RateLimitInfo:
    """Rate limit information reported by ARM."""
    limit: int = DEFAULT_READ_LIMIT
    remaining: int | None = None
    retry_after: float | None = None

    @property
    def usage_percent(self) -> float:
        """Get rate limit usage as percentage (0.0 to 1.0)."""
        if self.limit and self.remaining is not None:
            used = self.limit - self.remaining
            return max(0.0, used / self.limit)
        return 0.0


class ReadThrottle:
    """
    Adaptive throttle shared by every thread using one ARM client.

    Features:
    - Tracks the remaining-reads headers
    - Adds a growing delay once usage passes ``throttle_threshold``
    - Respects Retry-After
    """

    MAX_THROTTLE_DELAY = 2.0

    def __init__(
        self,
        name: str = "arm",
        limit: int = DEFAULT_READ_LIMIT,
        throttle_threshold: float = 0.9,
        sleep=time.sleep,
    ):
        self.name = name
        self.throttle_threshold = throttle_threshold
        self.lock = Lock()
        self.info = RateLimitInfo(limit=limit)
        self.throttle_delay = 0.0
        self.request_count = 0
        self._sleep = sleep

    def update_from_headers(self, headers: dict[str, str]) -> None:
        """Update rate limit info from ARM response headers."""
        lowered = {key.lower(): value for key, value in headers.items()}
        with self.lock:
            for header in REMAINING_READ_HEADERS:
                if header in lowered:
                    try:
                        self.info.remaining = int(lowered[header])
                    except ValueError:
                        logger.debug(f"{self.name}: ignoring malformed {header}={lowered[header]!r}")
                    break

            if "retry-after" in lowered:
                try:
                    self.info.retry_after = float(lowered["retry-after"])
                except ValueError:
                    pass

            self._update_throttle_delay()

    def _update_throttle_delay(self) -> None:
        usage = self.info.usage_percent
        if usage >= self.throttle_threshold:
            excess = (usage - self.throttle_threshold) / (1.0 - self.throttle_threshold)
            self.throttle_delay = min(excess, 1.0) * self.MAX_THROTTLE_DELAY
            logger.warning(
                f"{self.name}: read budget at {usage:.1%}, throttling with {self.throttle_delay:.2f}s delay"
            )
        else:
            self.throttle_delay = 0.0

    def clear_retry_after(self) -> None:
        """Drop a pending Retry-After the caller has already waited out."""
        with self.lock:
            self.info.retry_after = None

    def wait_if_needed(self) -> None:
        """Block while a Retry-After or throttle delay is pending."""
        with self.lock:
            retry_after = self.info.retry_after
            self.info.retry_after = None
            delay = self.throttle_delay
            self.request_count += 1

        if retry_after:
            logger.warning(f"{self.name}: Retry-After received, waiting {retry_after:.0f}s")
            self._sleep(retry_after)
        elif delay > 0:
            self._sleep(delay)

    def get_status(self) -> dict[str, Any]:
        """Get current rate limit status."""
        with self.lock:
            return {
                "name": self.name,
                "limit": self.info.limit,
                "remaining": self.info.remaining,
                "usage_percent": self.info.usage_percent,
                "throttle_delay": self.throttle_delay,
                "request_count": self.request_count,
            }
