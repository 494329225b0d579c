import json
import hashlib
import logging
from typing import Any, Dict, Iterable, Optional

from src.utils.github.batching import GraphQLBatchQueue, is_batchable
from src.utils.github.cache import TTLCache
from src.utils.github.executor import RequestExecutor

logger = logging.getLogger("github-graphql")

KEY_PREFIX = "github:graphql"


class GraphQLClient:
    """
    Cached GraphQL accessor.

    Queries are cached by document and variables (or a caller supplied
    key) and, when batching is enabled, sent through the batch queue.
    Mutations bypass both and invalidate the given key patterns.
    """

    def __init__(self, executor: RequestExecutor, cache: TTLCache, config):
        self.executor = executor
        self.cache = cache
        self.config = config
        self.batch_queue: Optional[GraphQLBatchQueue] = None
        if config.batch_enabled:
            self.batch_queue = GraphQLBatchQueue(
                executor.graphql,
                window=config.batch_window,
                max_batch_size=config.batch_max_size,
            )

    @staticmethod
    def cache_key(document: str, variables: Optional[Dict[str, Any]] = None) -> str:
        encoded = json.dumps(variables or {}, sort_keys=True, default=str)
        raw = document.strip() + encoded
        return f"{KEY_PREFIX}:{hashlib.sha256(raw.encode('utf-8')).hexdigest()}"

    async def query(
        self,
        document: str,
        variables: Optional[Dict[str, Any]] = None,
        cache_key: Optional[str] = None,
        ttl: Optional[float] = None,
        use_cache: bool = True,
    ) -> Dict[str, Any]:
        if not use_cache:
            return await self._execute(document, variables)
        key = cache_key or self.cache_key(document, variables)
        return await self.cache.get_or_set(
            key,
            lambda: self._execute(document, variables),
            ttl if ttl is not None else self.config.entity_ttl,
        )

    async def mutate(
        self,
        document: str,
        variables: Optional[Dict[str, Any]] = None,
        invalidate: Iterable[str] = (),
    ) -> Dict[str, Any]:
        data = await self.executor.graphql(document, variables)
        for pattern in invalidate:
            self.cache.invalidate(pattern)
        return data

    async def _execute(self, document: str, variables: Optional[Dict[str, Any]]):
        if self.batch_queue is not None and is_batchable(document):
            return await self.batch_queue.submit(document, variables)
        return await self.executor.graphql(document, variables)

    async def aclose(self):
        if self.batch_queue is not None:
            await self.batch_queue.close()
