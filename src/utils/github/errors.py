from typing import Any, Dict, Optional


class GitHubAPIError(Exception):
    """
    Base class for every error surfaced by the GitHub access layer.

    Carries a human readable message, a machine readable code and a context
    dict with whatever is needed to diagnose the failure (endpoint, attempt
    count, rate limit snapshot, ...).
    """

    code = "GITHUB_API_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code, "context": self.context}


class ValidationError(GitHubAPIError, ValueError):
    code = "VALIDATION_ERROR"


class RateLimitError(GitHubAPIError):
    """Quota exhausted and no attempts left."""

    code = "RATE_LIMITED"

    def __init__(
        self,
        message: str,
        snapshot=None,
        retry_after: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = dict(context or {})
        if snapshot is not None:
            context["rate_limit"] = snapshot.to_dict()
        if retry_after is not None:
            context["retry_after_seconds"] = round(retry_after, 3)
        super().__init__(message, context=context)
        self.snapshot = snapshot
        self.retry_after = retry_after


class TransientTransportError(GitHubAPIError):
    """Timeouts, connection failures and 5xx responses that outlived every retry."""

    code = "TRANSIENT_TRANSPORT_ERROR"

    def __init__(
        self,
        message: str,
        attempts: int,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = dict(context or {})
        context["attempts"] = attempts
        if cause is not None:
            context["cause"] = str(cause) or type(cause).__name__
        super().__init__(message, context=context)
        self.attempts = attempts
        self.cause = cause


class UpstreamRequestError(GitHubAPIError):
    """Non-retryable 4xx response or a GraphQL error list."""

    code = "UPSTREAM_REQUEST_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        errors: Optional[list] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = dict(context or {})
        if status_code is not None:
            context["status_code"] = status_code
        if errors:
            context["errors"] = errors
        super().__init__(message, context=context)
        self.status_code = status_code
        self.errors = errors or []


class CacheOperationError(GitHubAPIError):
    code = "CACHE_OPERATION_ERROR"


class BatchFailureError(GitHubAPIError):
    """The combined request of a flushed GraphQL batch failed."""

    code = "BATCH_FAILURE"

    def __init__(
        self,
        message: str,
        batch_size: int,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = dict(context or {})
        context["batch_size"] = batch_size
        if isinstance(cause, GitHubAPIError):
            context["cause"] = cause.to_dict()
        elif cause is not None:
            context["cause"] = {"message": str(cause), "code": type(cause).__name__}
        super().__init__(message, context=context)
        self.batch_size = batch_size
        self.cause = cause


class ClientDestroyedError(GitHubAPIError):
    code = "CLIENT_DESTROYED"
