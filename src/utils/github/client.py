import logging
from typing import Awaitable, Callable, Optional

import httpx

from src.utils.github.cache import TTLCache
from src.utils.github.config import GitHubConfig
from src.utils.github.executor import RequestExecutor
from src.utils.github.graphql import GraphQLClient
from src.utils.github.issues import IssueRepository
from src.utils.github.milestones import MilestoneRepository
from src.utils.github.projects import ProjectRepository
from src.utils.github.rate_limit import RateLimitTracker
from src.utils.github.rest import RESTClient
from src.utils.store import FileStore

logger = logging.getLogger("github-client")


class GitHubClient:
    """
    Wires the shared cache, rate limit tracker and executor into the REST and
    GraphQL accessors and the issue, milestone and project repositories.

    One instance per token. Call aclose() when done with it.
    """

    def __init__(
        self,
        config: GitHubConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        cache: Optional[TTLCache] = None,
        rate_limits: Optional[RateLimitTracker] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        store: Optional[FileStore] = None,
    ):
        self.config = config
        if cache is None:
            cache = TTLCache.from_config(config)
        if rate_limits is None:
            rate_limits = RateLimitTracker()
        self.cache = cache
        self.rate_limits = rate_limits

        executor_kwargs = {}
        if sleep is not None:
            executor_kwargs["sleep"] = sleep
        self.executor = RequestExecutor(
            config, self.rate_limits, http_client=http_client, **executor_kwargs
        )

        if store is None and config.data_dir:
            store = FileStore(config.data_dir, compress=config.storage_compression)
        self.store = store

        self.rest = RESTClient(self.executor, self.cache, config)
        self.graphql = GraphQLClient(self.executor, self.cache, config)
        self.issues = IssueRepository(self.rest, config)
        self.milestones = MilestoneRepository(self.rest, config, clock=self.cache.clock)
        self.projects = ProjectRepository(
            self.graphql,
            config,
            issues=self.issues,
            store=self.store,
            clock=self.cache.clock,
        )
        self._closed = False

    @classmethod
    def from_env(cls, token: Optional[str] = None, **kwargs) -> "GitHubClient":
        config = GitHubConfig.from_env()
        if token:
            config = config.with_token(token)
        return cls(config, **kwargs)

    async def aclose(self):
        if self._closed:
            return
        self._closed = True
        await self.graphql.aclose()
        await self.cache.close()
        await self.executor.aclose()
        logger.info("GitHub client closed")
