"""
Exception hierarchy shared by the upstream clients and the reasoning engine.
"""


class DeepExError(Exception):
    """Base class for all DeepEx errors."""


class ConfigurationError(DeepExError):
    """Invalid or missing configuration (e.g. an empty credential pool)."""


class CheckpointError(DeepExError):
    """A resume payload could not be validated."""


class InvocationError(DeepExError):
    """An inbound request body is malformed."""


class FanOutError(DeepExError):
    """Every branch of a fan-out failed."""

    def __init__(self, reasons: dict[str, str]):
        self.reasons = reasons
        detail = "; ".join(f"{task}: {reason}" for task, reason in reasons.items())
        super().__init__(f"all {len(reasons)} parallel tasks failed ({detail})")


class UpstreamError(DeepExError):
    """Failure talking to an upstream API."""

    def __init__(self, message: str, *, provider: str = "upstream", status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class RateLimitedError(UpstreamError):
    """HTTP 429: rotate credentials, do not count against the attempt budget."""


class TransientUpstreamError(UpstreamError):
    """5xx or request timeout from the upstream: retried with backoff."""


class UpstreamClientError(UpstreamError):
    """Non-retriable 4xx: the request itself is wrong."""


class EmptyResponseError(UpstreamError):
    """A successful response that carried no content."""


class StreamStalledError(UpstreamError):
    """No stream chunk arrived within the stall window."""


class UpstreamExhaustedError(UpstreamError):
    """The retry ceiling was reached without a usable response."""


def classify_status(status_code: int, body: str = "", *, provider: str = "upstream") -> UpstreamError:
    """Map a non-success HTTP status to the matching upstream error."""
    message = f"{provider} API error {status_code}: {body[:200]}"
    if status_code == 429:
        return RateLimitedError(message, provider=provider, status_code=status_code)
    if status_code == 408 or status_code >= 500:
        return TransientUpstreamError(message, provider=provider, status_code=status_code)
    return UpstreamClientError(message, provider=provider, status_code=status_code)
