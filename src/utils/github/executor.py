import time
import random
import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from src.utils.github.errors import (
    RateLimitError,
    TransientTransportError,
    UpstreamRequestError,
)
from src.utils.github.metrics import api_requests_total, api_retries_total
from src.utils.github.rate_limit import (
    CORE,
    GRAPHQL,
    SEARCH,
    RateLimitSnapshot,
    RateLimitTracker,
)

logger = logging.getLogger("github-executor")

RETRYABLE_STATUS_CODES = {500, 502, 503, 504}


class Outcome(str, Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    RETRYABLE = "retryable"
    FATAL = "fatal"


def _error_message(payload: Any, default: str) -> str:
    if isinstance(payload, dict):
        if payload.get("message"):
            return str(payload["message"])
        errors = payload.get("errors")
        if isinstance(errors, list) and errors:
            return "; ".join(str(e.get("message", e)) for e in errors if e)
    return default


def _is_rate_limit_text(text: str) -> bool:
    return "rate limit" in text.lower()


def _decode(response: httpx.Response) -> Any:
    if response.status_code == 204 or not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def classify_response(response: httpx.Response, payload: Any, graphql: bool = False):
    """
    Maps an HTTP response to an Outcome and a human readable reason.
    """
    status = response.status_code

    if status == 429:
        return Outcome.RATE_LIMITED, _error_message(payload, "Too many requests")
    if status == 403:
        message = _error_message(payload, "Forbidden")
        if response.headers.get("x-ratelimit-remaining") == "0" or _is_rate_limit_text(
            message
        ):
            return Outcome.RATE_LIMITED, message
        return Outcome.FATAL, message
    if status in RETRYABLE_STATUS_CODES:
        return Outcome.RETRYABLE, f"HTTP {status}"
    if status >= 400:
        return Outcome.FATAL, _error_message(payload, f"HTTP {status}")

    if graphql:
        if not isinstance(payload, dict):
            return Outcome.FATAL, "Malformed GraphQL response"
        errors = payload.get("errors") or []
        if errors:
            message = _error_message(payload, "GraphQL error")
            if any(
                isinstance(e, dict)
                and (
                    e.get("type") == "RATE_LIMITED"
                    or _is_rate_limit_text(str(e.get("message", "")))
                )
                for e in errors
            ):
                return Outcome.RATE_LIMITED, message
            return Outcome.FATAL, message

    return Outcome.SUCCESS, "ok"


class RequestExecutor:
    """
    Issues single GitHub REST or GraphQL calls with bounded retries.

    The executor is the only place that decides between retrying and
    surfacing an error. Rate limit errors wait for the quota reset,
    transport errors and 5xx responses back off exponentially with jitter,
    anything else fails on the spot. Quota headers from every attempt are
    fed into the shared RateLimitTracker.
    """

    def __init__(
        self,
        config,
        rate_limits: RateLimitTracker,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ):
        self.config = config
        self.rate_limits = rate_limits
        self.max_retries = config.max_retries
        self.retry_delay = config.retry_delay
        self.timeout = config.timeout
        self.min_request_interval = config.min_request_interval
        self.sleep = sleep
        self.jitter = jitter
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(
            base_url=config.api_url, timeout=config.timeout
        )
        self._last_request_at = 0.0

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": self.config.user_agent,
        }
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    def backoff_delay(self, attempt: int) -> float:
        """base * 2^(attempt-1) plus up to one base delay of jitter."""
        base = self.retry_delay * (2 ** (attempt - 1))
        return base + self.jitter(0, self.retry_delay)

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Performs a REST call and returns the decoded JSON body.

        Returns:
            The decoded payload, or None for empty responses.

        Raises:
            RateLimitError, TransientTransportError, UpstreamRequestError
        """
        method = method.upper()
        surface = SEARCH if path.startswith("/search/") else CORE

        async def send(request_timeout):
            return await self.client.request(
                method,
                path,
                params=params,
                json=json,
                headers=self._headers(),
                timeout=request_timeout,
            )

        payload = await self._execute(
            send, surface, f"{method} {path}", timeout=timeout, graphql=False
        )
        return payload

    async def graphql(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Runs a GraphQL document and returns its data object.

        A response carrying errors[] is a failed attempt even on HTTP 200.
        """

        async def send(request_timeout):
            return await self.client.post(
                self.config.graphql_endpoint,
                json={"query": query, "variables": variables or {}},
                headers=self._headers(),
                timeout=request_timeout,
            )

        payload = await self._execute(
            send, GRAPHQL, "POST /graphql", timeout=timeout, graphql=True
        )
        return payload.get("data") or {}

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()

    async def _throttle(self, surface: str):
        snapshot = self.rate_limits.snapshot(surface)
        if snapshot is not None and snapshot.remaining <= 0:
            await self.rate_limits.wait_until_reset(surface)
        elif self.rate_limits.is_approaching_limit(
            surface, self.config.rate_limit_threshold
        ):
            logger.warning(
                f"Approaching the {surface} rate limit: "
                f"{snapshot.remaining} requests left"
            )

        if self.min_request_interval > 0:
            elapsed = time.monotonic() - self._last_request_at
            if elapsed < self.min_request_interval:
                await self.sleep(self.min_request_interval - elapsed)

    def _observe(self, response: httpx.Response, payload: Any, surface: str):
        snapshot = RateLimitSnapshot.from_headers(response.headers)
        if snapshot is not None:
            self.rate_limits.record_observation(snapshot.resource or surface, snapshot)

        if isinstance(payload, dict):
            extensions = payload.get("extensions") or {}
            graphql_snapshot = RateLimitSnapshot.from_graphql(
                extensions.get("rateLimit")
            )
            if graphql_snapshot is not None:
                self.rate_limits.record_observation(GRAPHQL, graphql_snapshot)

    def _retry_after(self, response: Optional[httpx.Response]) -> Optional[float]:
        if response is None:
            return None
        value = response.headers.get("retry-after")
        if value is None:
            return None
        try:
            return max(0.0, float(value))
        except ValueError:
            return None

    async def _execute(
        self,
        send: Callable[[float], Awaitable[httpx.Response]],
        surface: str,
        description: str,
        timeout: Optional[float] = None,
        graphql: bool = False,
    ) -> Any:
        request_timeout = self.timeout if timeout is None else timeout
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_retries + 1):
            await self._throttle(surface)
            self._last_request_at = time.monotonic()
            context = {"endpoint": description, "attempt": attempt}

            try:
                response = await send(request_timeout)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                api_requests_total.labels(
                    surface=surface, outcome=Outcome.RETRYABLE.value
                ).inc()
                last_error = e
                if isinstance(e, httpx.TimeoutException):
                    reason = "timeout"
                else:
                    reason = "transport"
                if attempt >= self.max_retries:
                    break
                await self._backoff(surface, attempt, reason, description, e)
                continue

            payload = _decode(response)
            self._observe(response, payload, surface)
            outcome, message = classify_response(response, payload, graphql=graphql)
            api_requests_total.labels(surface=surface, outcome=outcome.value).inc()

            if outcome is Outcome.SUCCESS:
                if attempt > 1:
                    logger.info(f"{description} succeeded on attempt {attempt}")
                return payload

            if outcome is Outcome.FATAL:
                errors = payload.get("errors") if isinstance(payload, dict) else None
                raise UpstreamRequestError(
                    f"GitHub request failed: {message}",
                    status_code=response.status_code,
                    errors=errors if isinstance(errors, list) else None,
                    context=context,
                )

            if outcome is Outcome.RATE_LIMITED:
                resource = response.headers.get("x-ratelimit-resource") or surface
                retry_after = self._retry_after(response)
                if attempt >= self.max_retries:
                    snapshot = self.rate_limits.snapshot(resource)
                    if retry_after is None:
                        retry_after = self.rate_limits.seconds_until_reset(resource)
                    raise RateLimitError(
                        f"GitHub rate limit exceeded for {resource}: {message}",
                        snapshot=snapshot,
                        retry_after=retry_after,
                        context=context,
                    )
                api_retries_total.labels(surface=surface, reason="rate_limit").inc()
                if retry_after is not None:
                    logger.warning(
                        f"{description} rate limited, retrying after {retry_after:.1f}s"
                    )
                    await self.sleep(retry_after)
                elif await self.rate_limits.wait_until_reset(resource) <= 0:
                    await self.sleep(self.backoff_delay(attempt))
                continue

            # Outcome.RETRYABLE
            last_error = UpstreamRequestError(
                f"GitHub request failed: {message}",
                status_code=response.status_code,
                context=context,
            )
            if attempt >= self.max_retries:
                break
            await self._backoff(
                surface,
                attempt,
                f"http_{response.status_code}",
                description,
                last_error,
            )

        raise TransientTransportError(
            f"{description} failed after {self.max_retries} attempts",
            attempts=self.max_retries,
            cause=last_error,
            context={"endpoint": description},
        ) from last_error

    async def _backoff(self, surface, attempt, reason, description, error):
        delay = self.backoff_delay(attempt)
        api_retries_total.labels(surface=surface, reason=reason).inc()
        logger.warning(
            f"{description} attempt {attempt}/{self.max_retries} failed "
            f"({reason}: {error}), "
            f"retrying in {delay:.2f}s"
        )
        await self.sleep(delay)
