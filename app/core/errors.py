"""Pipeline error taxonomy.

Adapters raise these so the worker can decide between a retry with
backoff and a failed-permanent disposition without inspecting provider
specific exceptions.
"""

import httpx


class PipelineError(Exception):
    retryable = False

    def __init__(self, message: str, *, retryable: bool | None = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class RetryableError(PipelineError):
    """Transient failure: network timeout, provider 5xx, storage unavailable."""

    retryable = True


class PermanentError(PipelineError):
    """Failure that will not succeed on retry: provider 4xx, malformed payload."""

    retryable = False


def is_retryable_http_error(exc: BaseException) -> bool:
    """Timeouts, transport failures, 429 and 5xx responses are worth retrying."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))
