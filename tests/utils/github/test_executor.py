import json
import logging

import httpx
import pytest
import pytest_asyncio
from prometheus_client import REGISTRY

from src.utils.github.config import GitHubConfig
from src.utils.github.errors import (
    RateLimitError,
    TransientTransportError,
    UpstreamRequestError,
)
from src.utils.github.executor import Outcome, RequestExecutor, classify_response
from src.utils.github.rate_limit import RateLimitTracker


def retries_recorded(surface, reason):
    value = REGISTRY.get_sample_value(
        "github_api_retries_total", {"surface": surface, "reason": reason}
    )
    return value or 0.0


@pytest_asyncio.fixture
async def make_executor(fake_time, fake_github):
    created = []

    def factory(**overrides):
        config = GitHubConfig(token="test-token", retry_delay=1.0, **overrides)
        http_client = httpx.AsyncClient(
            transport=httpx.MockTransport(fake_github), base_url=config.api_url
        )
        executor = RequestExecutor(
            config,
            RateLimitTracker(clock=fake_time, sleep=fake_time.sleep),
            http_client=http_client,
            sleep=fake_time.sleep,
            jitter=lambda low, high: 0.0,
        )
        created.append(http_client)
        return executor

    yield factory

    for http_client in created:
        await http_client.aclose()


@pytest.mark.asyncio
async def test_retries_service_unavailable_then_succeeds(
    make_executor, fake_github, fake_time, reply
):
    fake_github.add(
        "GET",
        "/repos/octo/demo",
        reply(503),
        reply(503),
        reply(200, json={"full_name": "octo/demo"}),
    )
    executor = make_executor()

    result = await executor.request("GET", "/repos/octo/demo")

    assert result == {"full_name": "octo/demo"}
    assert len(fake_github.calls("GET", "/repos/octo/demo")) == 3
    assert fake_time.sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_two_server_errors_cause_exactly_two_delays(
    make_executor, fake_github, fake_time, reply
):
    fake_github.add(
        "GET", "/rate_limit", reply(500), reply(500), reply(200, json={"ok": True})
    )
    executor = make_executor()

    await executor.request("GET", "/rate_limit")

    assert len(fake_github.calls("GET", "/rate_limit")) == 3
    assert len(fake_time.sleeps) == 2


@pytest.mark.asyncio
async def test_not_found_is_never_retried(make_executor, fake_github, fake_time, reply):
    fake_github.add(
        "GET",
        "/repos/octo/demo/issues/404",
        reply(404, json={"message": "Not Found"}),
    )
    executor = make_executor()

    with pytest.raises(UpstreamRequestError) as exc_info:
        await executor.request("GET", "/repos/octo/demo/issues/404")

    assert exc_info.value.status_code == 404
    assert exc_info.value.context["endpoint"] == "GET /repos/octo/demo/issues/404"
    assert len(fake_github.requests) == 1
    assert fake_time.sleeps == []


@pytest.mark.asyncio
async def test_persistent_server_errors_exhaust_attempts(
    make_executor, fake_github, fake_time, reply
):
    fake_github.add("GET", "/repos/octo/demo", reply(502))
    executor = make_executor(max_retries=3)

    with pytest.raises(TransientTransportError) as exc_info:
        await executor.request("GET", "/repos/octo/demo")

    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.cause, UpstreamRequestError)
    assert len(fake_github.requests) == 3
    assert fake_time.sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_connection_errors_are_retried(
    make_executor, fake_github, fake_time, reply
):
    attempts = []

    def flaky(request):
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, json={"login": "octo"})

    fake_github.add("GET", "/user", flaky)
    executor = make_executor()

    assert await executor.request("GET", "/user") == {"login": "octo"}
    assert len(attempts) == 2
    assert fake_time.sleeps == [1.0]


@pytest.mark.asyncio
async def test_timeouts_are_retried(make_executor, fake_github, fake_time, caplog):
    attempts = []

    def slow_then_ok(request):
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ReadTimeout("read timed out", request=request)
        return httpx.Response(200, json={"login": "octo"})

    fake_github.add("GET", "/user", slow_then_ok)
    executor = make_executor()
    before = retries_recorded("core", "timeout")

    with caplog.at_level(logging.WARNING, logger="github-executor"):
        assert await executor.request("GET", "/user") == {"login": "octo"}

    assert len(attempts) == 2
    assert fake_time.sleeps == [1.0]
    assert retries_recorded("core", "timeout") == before + 1
    assert "(timeout:" in caplog.text


@pytest.mark.asyncio
async def test_per_call_timeout_reaches_the_transport(
    make_executor, fake_github, reply
):
    fake_github.add("GET", "/user", reply(200, json={}))
    fake_github.add("POST", "/graphql", reply(200, json={"data": {}}))
    executor = make_executor(timeout=30.0)

    await executor.request("GET", "/user", timeout=2.5)
    await executor.request("GET", "/user", timeout=0)
    await executor.request("GET", "/user")
    await executor.graphql("query { viewer { login } }", timeout=4.0)

    timeouts = [r.extensions["timeout"]["read"] for r in fake_github.requests]
    assert timeouts == [2.5, 0, 30.0, 4.0]


@pytest.mark.asyncio
async def test_exhausted_quota_waits_for_reset(
    make_executor, fake_github, fake_time, reply
):
    reset = int(fake_time.now) + 5
    fake_github.add(
        "GET",
        "/repos/octo/demo/issues",
        reply(
            403,
            json={"message": "API rate limit exceeded"},
            headers={
                "x-ratelimit-limit": "5000",
                "x-ratelimit-remaining": "0",
                "x-ratelimit-reset": str(reset),
            },
        ),
        reply(200, json=[]),
    )
    executor = make_executor()

    assert await executor.request("GET", "/repos/octo/demo/issues") == []
    assert sum(fake_time.sleeps) >= 5
    assert fake_time.sleeps == [5.0]


@pytest.mark.asyncio
async def test_retry_after_header_is_honoured(
    make_executor, fake_github, fake_time, reply
):
    fake_github.add(
        "GET",
        "/search/issues",
        reply(429, headers={"retry-after": "2"}),
        reply(200, json={"items": []}),
    )
    executor = make_executor()

    await executor.request("GET", "/search/issues", params={"q": "bug"})

    assert fake_time.sleeps == [2.0]


@pytest.mark.asyncio
async def test_rate_limit_on_last_attempt_raises(make_executor, fake_github, reply):
    fake_github.add("GET", "/repos/octo/demo", reply(429))
    executor = make_executor(max_retries=2)

    with pytest.raises(RateLimitError) as exc_info:
        await executor.request("GET", "/repos/octo/demo")

    assert exc_info.value.code == "RATE_LIMITED"
    assert len(fake_github.requests) == 2


@pytest.mark.asyncio
async def test_forbidden_without_rate_limit_is_fatal(make_executor, fake_github, reply):
    fake_github.add(
        "GET",
        "/repos/octo/private",
        reply(403, json={"message": "Resource not accessible by integration"}),
    )
    executor = make_executor()

    with pytest.raises(UpstreamRequestError):
        await executor.request("GET", "/repos/octo/private")
    assert len(fake_github.requests) == 1


@pytest.mark.asyncio
async def test_requests_carry_auth_and_api_version_headers(
    make_executor, fake_github, reply
):
    fake_github.add("GET", "/user", reply(200, json={}))
    executor = make_executor()

    await executor.request("GET", "/user")

    request = fake_github.requests[0]
    assert request.headers["authorization"] == "Bearer test-token"
    assert request.headers["x-github-api-version"] == "2022-11-28"
    assert request.headers["accept"] == "application/vnd.github+json"


@pytest.mark.asyncio
async def test_quota_headers_are_recorded_per_surface(
    make_executor, fake_github, reply
):
    headers = {
        "x-ratelimit-limit": "30",
        "x-ratelimit-remaining": "29",
        "x-ratelimit-reset": "1700000060",
    }
    fake_github.add(
        "GET", "/search/issues", reply(200, json={"items": []}, headers=headers)
    )
    executor = make_executor()

    await executor.request("GET", "/search/issues", params={"q": "bug"})

    snapshot = executor.rate_limits.snapshot("search")
    assert snapshot.remaining == 29
    assert executor.rate_limits.snapshot("core") is None


@pytest.mark.asyncio
async def test_graphql_returns_data(make_executor, fake_github, reply):
    fake_github.add(
        "POST",
        "/graphql",
        reply(
            200,
            json={
                "data": {"viewer": {"login": "octo"}},
                "extensions": {
                    "rateLimit": {
                        "limit": 5000,
                        "remaining": 4999,
                        "resetAt": "2023-11-14T23:13:20Z",
                    }
                },
            },
        ),
    )
    executor = make_executor()

    data = await executor.graphql("query { viewer { login } }")

    assert data == {"viewer": {"login": "octo"}}
    body = json.loads(fake_github.requests[0].content)
    assert body == {"query": "query { viewer { login } }", "variables": {}}
    assert executor.rate_limits.snapshot("graphql").remaining == 4999


@pytest.mark.asyncio
async def test_graphql_errors_fail_without_retry(make_executor, fake_github, reply):
    fake_github.add(
        "POST",
        "/graphql",
        reply(
            200,
            json={
                "data": None,
                "errors": [{"type": "NOT_FOUND", "message": "Could not resolve"}],
            },
        ),
    )
    executor = make_executor()

    with pytest.raises(UpstreamRequestError) as exc_info:
        await executor.graphql("query { node(id: \"x\") { id } }")

    assert exc_info.value.errors[0]["type"] == "NOT_FOUND"
    assert len(fake_github.requests) == 1


def test_backoff_delay_grows_even_with_maximum_jitter():
    executor = RequestExecutor(
        GitHubConfig(retry_delay=1.0),
        RateLimitTracker(),
        http_client=httpx.AsyncClient(),
        jitter=lambda low, high: high,
    )
    delays = [executor.backoff_delay(attempt) for attempt in range(1, 5)]
    assert delays == [2.0, 3.0, 5.0, 9.0]
    assert delays == sorted(set(delays))


@pytest.mark.parametrize(
    "status,payload,graphql,expected",
    [
        (200, {"ok": True}, False, Outcome.SUCCESS),
        (429, None, False, Outcome.RATE_LIMITED),
        (
            403,
            {"message": "You have exceeded a secondary rate limit"},
            False,
            Outcome.RATE_LIMITED,
        ),
        (403, {"message": "Must have admin rights"}, False, Outcome.FATAL),
        (503, None, False, Outcome.RETRYABLE),
        (422, {"message": "Validation Failed"}, False, Outcome.FATAL),
        (
            200,
            {"errors": [{"type": "RATE_LIMITED", "message": "x"}]},
            True,
            Outcome.RATE_LIMITED,
        ),
    ],
)
def test_classify_response(status, payload, graphql, expected):
    response = httpx.Response(status)
    outcome, _ = classify_response(response, payload, graphql=graphql)
    assert outcome is expected
