"""Exception hierarchy for npm_hookwatch.

Errors are grouped by how the pipeline reacts to them:

- TransientNetworkError and MalformedResponseError are retried: the feed
  producer backs off and polls again, the work queue re-runs the job.
- ConfigurationError and SinkDeliveryError are contained by the alert
  dispatcher and never abort a scan.
- InitialCursorError is fatal: the monitor cannot start without a feed
  position, and the operator has to be told immediately.
"""

from __future__ import annotations


class HookwatchError(Exception):
    """Base class for all npm_hookwatch errors."""


class TransientNetworkError(HookwatchError):
    """A network call failed in a way that may succeed on retry."""


class FetchError(TransientNetworkError):
    """The registry answered with a non-success HTTP status.

    Attributes:
        url: The requested URL
        status_code: HTTP status returned by the server
        body_snippet: The response body, truncated
    """

    def __init__(self, url: str, status_code: int, body_snippet: str = "") -> None:
        self.url = url
        self.status_code = status_code
        self.body_snippet = body_snippet
        super().__init__(f"HTTP {status_code} from {url}: {body_snippet}")


class FetchTimeoutError(TransientNetworkError, TimeoutError):
    """No response arrived within the request deadline."""

    def __init__(self, url: str, timeout: float) -> None:
        self.url = url
        self.timeout = timeout
        super().__init__(f"request to {url} timed out after {timeout:g}s")


class MalformedResponseError(HookwatchError):
    """A response was missing the fields the pipeline relies on."""


class ConfigurationError(HookwatchError):
    """A sink could not be configured for a particular alert.

    Raised, for example, when a package's repository URL cannot be turned
    into an owner/repo pair for issue creation.
    """


class SinkDeliveryError(HookwatchError):
    """A notification sink failed to deliver a message."""

    def __init__(self, sink_name: str, reason: str) -> None:
        self.sink_name = sink_name
        self.reason = reason
        super().__init__(f"{sink_name}: {reason}")


class InitialCursorError(HookwatchError):
    """The starting position of the replication feed could not be obtained."""


#: Exceptions that the producer and the work queue treat as retryable.
RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    TransientNetworkError,
    MalformedResponseError,
)
