import json
import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from src.utils.github.cache import TTLCache
from src.utils.github.executor import RequestExecutor
from src.utils.github.rate_limit import RateLimitSnapshot

logger = logging.getLogger("github-rest")

KEY_PREFIX = "github:rest"


@dataclass
class PaginatedResult:
    items: List[Any] = field(default_factory=list)
    page: int = 0
    per_page: int = 30
    has_next_page: bool = False
    has_previous_page: bool = False
    total_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": self.items,
            "pagination": {
                "page": self.page,
                "per_page": self.per_page,
                "has_next_page": self.has_next_page,
                "has_previous_page": self.has_previous_page,
                "total_count": (
                    len(self.items) if self.total_count is None else self.total_count
                ),
            },
        }


def normalize_params(params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drops None values and joins list values the way GitHub expects."""
    normalized = {}
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            value = ",".join(str(v) for v in value)
        elif isinstance(value, bool):
            value = str(value).lower()
        normalized[key] = value
    return normalized


def resource_family(path: str) -> str:
    """
    Collection a REST path belongs to, used to invalidate related reads.

    /repos/o/r/issues/42/labels -> /repos/o/r/issues
    /projects/columns/7 -> /projects
    """
    segments = [s for s in path.split("?")[0].split("/") if s]
    if segments and segments[0] == "repos" and len(segments) >= 4:
        return "/" + "/".join(segments[:4])
    if segments:
        return "/" + segments[0]
    return "/"


class RESTClient:
    """
    Cached REST accessor.

    Reads go through the shared TTL cache keyed by method, path and
    normalized parameters. Writes always hit GitHub and invalidate the
    cached reads of the affected resource family afterwards.
    """

    def __init__(self, executor: RequestExecutor, cache: TTLCache, config):
        self.executor = executor
        self.cache = cache
        self.config = config

    @staticmethod
    def cache_key(
        method: str, path: str, params: Optional[Dict[str, Any]] = None
    ) -> str:
        encoded = json.dumps(normalize_params(params), sort_keys=True, default=str)
        digest = base64.urlsafe_b64encode(encoded.encode("utf-8")).decode("ascii")
        return f"{KEY_PREFIX}:{method.upper()}:{path}:{digest}"

    def default_ttl(self, path: str) -> float:
        if path.startswith("/search/"):
            return self.config.search_ttl
        return self.config.entity_ttl

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        ttl: Optional[float] = None,
        use_cache: bool = True,
    ) -> Any:
        params = normalize_params(params)
        if not use_cache:
            return await self.executor.request("GET", path, params=params)

        key = self.cache_key("GET", path, params)
        return await self.cache.get_or_set(
            key,
            lambda: self.executor.request("GET", path, params=params),
            ttl if ttl is not None else self.default_ttl(path),
        )

    async def post(self, path: str, json: Any = None, invalidate: Iterable[str] = ()):
        return await self._write("POST", path, json, invalidate)

    async def patch(self, path: str, json: Any = None, invalidate: Iterable[str] = ()):
        return await self._write("PATCH", path, json, invalidate)

    async def put(self, path: str, json: Any = None, invalidate: Iterable[str] = ()):
        return await self._write("PUT", path, json, invalidate)

    async def delete(self, path: str, json: Any = None, invalidate: Iterable[str] = ()):
        return await self._write("DELETE", path, json, invalidate)

    async def _write(
        self, method: str, path: str, body: Any, invalidate: Iterable[str]
    ):
        result = await self.executor.request(method, path, json=body)
        self.invalidate(resource_family(path), *invalidate)
        return result

    def invalidate(self, *families: str) -> int:
        """Drops cached reads for each resource family (path prefix or glob)."""
        removed = 0
        for family in families:
            removed += self.cache.invalidate(f"{KEY_PREFIX}:*:{family}*")
        if removed:
            logger.debug(
                f"Invalidated {removed} cached reads for {', '.join(families)}"
            )
        return removed

    async def paginate(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        per_page: int = 30,
        max_pages: int = 10,
        items_key: Optional[str] = None,
        ttl: Optional[float] = None,
        start_page: int = 1,
    ) -> PaginatedResult:
        """
        Reads consecutive pages until one comes back short or max_pages is
        reached.

        has_next_page is True only when the page cap stopped the walk while
        the last page was still full.
        """
        result = PaginatedResult(per_page=per_page, has_previous_page=start_page > 1)
        if ttl is None:
            if path.startswith("/search/"):
                ttl = self.config.search_ttl
            else:
                ttl = self.config.list_ttl

        for page in range(start_page, start_page + max_pages):
            page_params = {**(params or {}), "page": page, "per_page": per_page}
            payload = await self.get(path, page_params, ttl=ttl)

            if items_key:
                payload = payload or {}
                items = payload.get(items_key) or []
                if "total_count" in payload:
                    result.total_count = payload["total_count"]
            else:
                items = payload or []

            result.items.extend(items)
            result.page = page
            if len(items) < per_page:
                result.has_next_page = False
                break
        else:
            result.has_next_page = True

        return result

    async def get_rate_limit(self) -> Dict[str, Any]:
        """
        Fetches /rate_limit (never cached) and refreshes the tracker for
        every surface GitHub reports.
        """
        payload = await self.executor.request("GET", "/rate_limit")
        resources = (payload or {}).get("resources", {})
        for surface, data in resources.items():
            snapshot = RateLimitSnapshot(
                limit=int(data.get("limit", 0)),
                remaining=int(data.get("remaining", 0)),
                reset_at=float(data.get("reset", 0)),
                used=int(data.get("used", 0)),
                resource=surface,
            )
            self.executor.rate_limits.record_observation(surface, snapshot)
        return self.executor.rate_limits.status()

    def is_approaching_rate_limit(
        self, surface: str = "core", threshold: Optional[int] = None
    ) -> bool:
        if threshold is None:
            threshold = self.config.rate_limit_threshold
        return self.executor.rate_limits.is_approaching_limit(surface, threshold)
