import time
import asyncio
import logging
from datetime import datetime, timezone
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from src.utils.github.metrics import rate_limit_remaining

logger = logging.getLogger("github-rate-limit")

CORE = "core"
SEARCH = "search"
GRAPHQL = "graphql"


def _parse_timestamp(value) -> Optional[float]:
    """Accepts epoch seconds or an ISO 8601 string."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


@dataclass(frozen=True)
class RateLimitSnapshot:
    limit: int
    remaining: int
    reset_at: float
    used: int = 0
    resource: Optional[str] = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> Optional["RateLimitSnapshot"]:
        """
        Builds a snapshot from x-ratelimit-* response headers.

        Returns None when the response carries no quota information.
        """
        remaining = headers.get("x-ratelimit-remaining")
        reset = headers.get("x-ratelimit-reset")
        if remaining is None or reset is None:
            return None
        try:
            limit = int(headers.get("x-ratelimit-limit", 0))
            remaining_count = int(remaining)
            used = headers.get("x-ratelimit-used")
            if used is not None:
                used_count = int(used)
            else:
                used_count = max(limit - remaining_count, 0)
        except ValueError:
            logger.debug(f"Ignoring malformed rate limit headers: {dict(headers)}")
            return None
        reset_at = _parse_timestamp(reset)
        if reset_at is None:
            return None
        return cls(
            limit=limit,
            remaining=remaining_count,
            reset_at=reset_at,
            used=used_count,
            resource=headers.get("x-ratelimit-resource"),
        )

    @classmethod
    def from_graphql(
        cls, data: Optional[Mapping[str, Any]]
    ) -> Optional["RateLimitSnapshot"]:
        """Builds a snapshot from a GraphQL rateLimit object (resetAt is ISO 8601)."""
        if not data or "remaining" not in data:
            return None
        reset_at = _parse_timestamp(data.get("resetAt"))
        if reset_at is None:
            return None
        limit = int(data.get("limit") or 0)
        remaining = int(data["remaining"])
        return cls(
            limit=limit,
            remaining=remaining,
            reset_at=reset_at,
            used=int(data.get("used") or max(limit - remaining, 0)),
            resource=GRAPHQL,
        )

    def seconds_until_reset(self, now: float) -> float:
        return max(0.0, self.reset_at - now)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        reset = datetime.fromtimestamp(self.reset_at, tz=timezone.utc)
        data["reset_at_iso"] = reset.isoformat()
        return data


class RateLimitTracker:
    """
    Last observed quota state per API surface (core, search, graphql).

    A passive holder: observations overwrite the previous snapshot for the
    surface and the values are hints, GitHub stays authoritative.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.clock = clock
        self.sleep = sleep
        self._snapshots: Dict[str, RateLimitSnapshot] = {}

    def record_observation(self, surface: str, snapshot: RateLimitSnapshot):
        self._snapshots[surface] = snapshot
        rate_limit_remaining.labels(surface=surface).set(snapshot.remaining)

    def snapshot(self, surface: str) -> Optional[RateLimitSnapshot]:
        return self._snapshots.get(surface)

    def snapshots(self) -> Dict[str, RateLimitSnapshot]:
        return dict(self._snapshots)

    def is_approaching_limit(self, surface: str, threshold: int = 100) -> bool:
        snapshot = self._snapshots.get(surface)
        if snapshot is None:
            return False
        return snapshot.remaining < threshold

    def seconds_until_reset(self, surface: str) -> float:
        snapshot = self._snapshots.get(surface)
        if snapshot is None:
            return 0.0
        return snapshot.seconds_until_reset(self.clock())

    async def wait_until_reset(self, surface: str) -> float:
        """
        Suspends until the surface's reset time has passed.

        Returns immediately when nothing is known about the surface or the
        reset time is already behind us.

        Returns:
            float: Seconds waited.
        """
        delay = self.seconds_until_reset(surface)
        if delay <= 0:
            return 0.0
        logger.warning(f"Waiting {delay:.1f}s for the {surface} rate limit to reset")
        await self.sleep(delay)
        return delay

    def status(self) -> Dict[str, Any]:
        now = self.clock()
        return {
            surface: {
                **snapshot.to_dict(),
                "seconds_until_reset": round(snapshot.seconds_until_reset(now), 3),
            }
            for surface, snapshot in self._snapshots.items()
        }
