import json
from dataclasses import replace
from typing import Callable, Dict, List, Tuple

import httpx
import pytest
import pytest_asyncio

from src.utils.github.cache import TTLCache
from src.utils.github.client import GitHubClient
from src.utils.github.config import GitHubConfig
from src.utils.github.rate_limit import RateLimitTracker

START_TIME = 1_700_000_000.0


# Set asyncio default fixture loop scope to function
def pytest_configure(config):
    config.option.asyncio_default_fixture_loop_scope = "function"


class FakeTime:
    """Clock and sleep pair where sleeping only moves the clock forward."""

    def __init__(self, start: float = START_TIME):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


def reply(status: int = 200, json=None, headers=None) -> Callable:
    def respond(request: httpx.Request) -> httpx.Response:
        if json is None:
            return httpx.Response(status, headers=headers)
        return httpx.Response(status, json=json, headers=headers)

    return respond


class FakeGitHub:
    """
    httpx.MockTransport handler with queued responses per (method, path).

    The last queued response for a route repeats. Unknown routes get a 404.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[Callable]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path: str, *responses: Callable):
        self.routes.setdefault((method.upper(), path), []).extend(responses)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == method.upper() and r.url.path == path
        ]

    def graphql_calls(self) -> List[dict]:
        return [json.loads(r.content) for r in self.calls("POST", "/graphql")]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": "Not Found"})
        respond = queue.pop(0) if len(queue) > 1 else queue[0]
        return respond(request)


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture(name="reply")
def reply_fixture():
    return reply


@pytest.fixture
def fake_github():
    return FakeGitHub()


@pytest.fixture
def github_config():
    return GitHubConfig(
        token="test-token",
        owner="octo",
        repo="demo",
        retry_delay=1.0,
        cache_cleanup_interval=0,
        batch_enabled=False,
    )


@pytest_asyncio.fixture
async def make_github(fake_time, fake_github, github_config):
    """Builds GitHubClient instances wired to the fake transport and clock."""
    created = []

    def factory(config=None, store=None, **overrides) -> GitHubClient:
        config = config or github_config
        if overrides:
            config = replace(config, **overrides)
        http_client = httpx.AsyncClient(
            transport=httpx.MockTransport(fake_github), base_url=config.api_url
        )
        client = GitHubClient(
            config,
            http_client=http_client,
            cache=TTLCache.from_config(config, clock=fake_time),
            rate_limits=RateLimitTracker(clock=fake_time, sleep=fake_time.sleep),
            sleep=fake_time.sleep,
            store=store,
        )
        client.executor.jitter = lambda low, high: 0.0
        created.append((client, http_client))
        return client

    yield factory

    for client, http_client in created:
        await client.aclose()
        await http_client.aclose()


@pytest_asyncio.fixture
async def github(make_github):
    return make_github()
