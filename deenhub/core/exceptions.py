"""Error taxonomy for upstream access, sync runs and job control.

Retry logic and the job runner match on these classes rather than on
error message strings.
"""


class DeenHubError(Exception):
    """Base class for all application errors."""


# =============================================================================
# Upstream errors
# =============================================================================


class UpstreamError(DeenHubError):
    """An upstream API call failed."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        url: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class UpstreamUnavailable(UpstreamError):
    """5xx, timeout, connection failure or open circuit breaker."""

    retryable = True


class UpstreamCircuitOpen(UpstreamUnavailable):
    """The host's circuit breaker is open; fail fast without retrying."""

    retryable = False


class UpstreamRateLimited(UpstreamError):
    """Upstream answered 429."""

    retryable = True

    def __init__(
        self,
        message: str,
        status_code: int | None = 429,
        url: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code, url=url)
        self.retry_after = retry_after


class UpstreamAuthError(UpstreamError):
    """Upstream answered 401; the credentials are misconfigured."""


class UpstreamClientError(UpstreamError):
    """Any other 4xx; the request itself is wrong."""


# =============================================================================
# Sync errors
# =============================================================================


class MappingError(DeenHubError):
    """Upstream record has an unexpected shape."""


class StorageError(DeenHubError):
    """A storage write failed."""


# =============================================================================
# Job control
# =============================================================================


class JobInterrupted(DeenHubError):
    """Raised at a checkpoint when an operator stopped the running job."""

    status: str = "interrupted"


class JobCancelled(JobInterrupted):
    """The job was cancelled while running."""

    status = "cancelled"


class JobPaused(JobInterrupted):
    """The job was paused while running."""

    status = "paused"


class InvalidJobTransition(DeenHubError):
    """Requested job state change is not allowed from the current state."""

    def __init__(self, job_id: str, current: str, action: str) -> None:
        super().__init__(f"Cannot {action} job {job_id} in status '{current}'")
        self.job_id = job_id
        self.current = current
        self.action = action
