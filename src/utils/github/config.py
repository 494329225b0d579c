import os
import logging
from dataclasses import dataclass, field, replace
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger("github-config")

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_USER_AGENT = "github-projects-mcp/1.0"
EVICTION_POLICIES = ("lru", "lfu", "fifo")


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_str(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class GitHubConfig:
    """
    Settings consumed by the GitHub access layer.

    Supplied once at construction time. All durations are in seconds.
    """

    token: Optional[str] = None
    owner: Optional[str] = None
    repo: Optional[str] = None
    api_url: str = DEFAULT_API_URL
    graphql_url: Optional[str] = None
    user_agent: str = DEFAULT_USER_AGENT

    # Request executor
    max_retries: int = 3
    retry_delay: float = 1.0
    timeout: float = 30.0
    min_request_interval: float = 0.0
    rate_limit_threshold: int = 100

    # Cache
    cache_max_entries: int = 10000
    cache_max_memory_bytes: int = 100 * 1024 * 1024
    cache_eviction_policy: str = "lru"
    cache_cleanup_interval: float = 60.0
    cache_single_flight: bool = False
    entity_ttl: float = 300.0
    list_ttl: float = 120.0
    search_ttl: float = 60.0

    # GraphQL batching
    batch_enabled: bool = True
    batch_window: float = 0.1
    batch_max_size: int = 10

    # Durable snapshots
    data_dir: Optional[str] = None
    storage_compression: bool = False

    log_level: str = field(default="INFO")

    def __post_init__(self):
        if self.cache_eviction_policy not in EVICTION_POLICIES:
            raise ValueError(
                f"Unknown cache eviction policy: {self.cache_eviction_policy}. "
                f"Expected one of {', '.join(EVICTION_POLICIES)}"
            )
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.batch_max_size < 1:
            raise ValueError("batch_max_size must be at least 1")

    @property
    def graphql_endpoint(self) -> str:
        return self.graphql_url or f"{self.api_url.rstrip('/')}/graphql"

    def with_token(self, token: Optional[str]) -> "GitHubConfig":
        return replace(self, token=token)

    def resolve_repository(self, owner=None, repo=None):
        """
        Returns (owner, repo), falling back to the configured defaults.

        Raises:
            ValueError: If either part cannot be resolved.
        """
        owner = owner or self.owner
        repo = repo or self.repo
        if not owner or not repo:
            raise ValueError(
                "Repository owner and name are required. "
                "Pass owner/repo or set GITHUB_OWNER and GITHUB_REPO."
            )
        return owner, repo

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "GitHubConfig":
        """
        Loads configuration from the environment (and a .env file when present).
        """
        load_dotenv(dotenv_path=dotenv_path)

        config = cls(
            token=_env_str("GITHUB_TOKEN"),
            owner=_env_str("GITHUB_OWNER"),
            repo=_env_str("GITHUB_REPO"),
            api_url=_env_str("GITHUB_API_URL", DEFAULT_API_URL),
            graphql_url=_env_str("GITHUB_GRAPHQL_URL"),
            user_agent=_env_str("GITHUB_USER_AGENT", DEFAULT_USER_AGENT),
            max_retries=_env_int("GITHUB_MAX_RETRIES", 3, minimum=1),
            retry_delay=_env_float("GITHUB_RETRY_DELAY_SECONDS", 1.0),
            timeout=_env_float("GITHUB_TIMEOUT_SECONDS", 30.0),
            min_request_interval=_env_float("GITHUB_MIN_REQUEST_INTERVAL_SECONDS", 0.0),
            rate_limit_threshold=_env_int("GITHUB_RATE_LIMIT_THRESHOLD", 100),
            cache_max_entries=_env_int("CACHE_MAX_ENTRIES", 10000, minimum=1),
            cache_max_memory_bytes=_env_int("CACHE_MAX_MEMORY_MB", 100, minimum=1)
            * 1024
            * 1024,
            cache_eviction_policy=_env_str("CACHE_EVICTION_POLICY", "lru").lower(),
            cache_cleanup_interval=_env_float("CACHE_CLEANUP_INTERVAL_SECONDS", 60.0),
            cache_single_flight=_env_bool("CACHE_SINGLE_FLIGHT", False),
            entity_ttl=_env_float("CACHE_TTL_SECONDS", 300.0),
            list_ttl=_env_float("CACHE_LIST_TTL_SECONDS", 120.0),
            search_ttl=_env_float("CACHE_SEARCH_TTL_SECONDS", 60.0),
            batch_enabled=_env_bool("GRAPHQL_BATCH_ENABLED", True),
            batch_window=_env_int("GRAPHQL_BATCH_WINDOW_MS", 100) / 1000.0,
            batch_max_size=_env_int("GRAPHQL_BATCH_MAX_SIZE", 10, minimum=1),
            data_dir=_env_str("GITHUB_PROJECTS_DATA_DIR"),
            storage_compression=_env_bool("STORAGE_COMPRESSION", False),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
        )
        logger.debug(
            f"Loaded GitHub config: api_url={config.api_url}, "
            f"owner={config.owner}, repo={config.repo}"
        )
        return config
