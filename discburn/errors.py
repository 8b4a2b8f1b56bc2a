"""
Error classes for discburn.

These error types enable retry classification at the executor boundary:
- TransientError: Safe to retry (store outages, network issues)
- PermanentError: Do not retry automatically (illegal transitions,
  rejected signals, malformed objects, exhausted retry budget)

The executor catches everything raised while processing a job and turns it
into a `failed` transition. The security gateway never raises; callers that
want exception flow use GatewayDecision.raise_for_rejection().
"""


class DiscburnError(Exception):
    """Base exception for discburn."""
    pass


class ConfigError(DiscburnError):
    """Configuration validation error."""
    pass


class TransientError(DiscburnError):
    """
    Transient error - safe to retry.

    The polling loop skips the current tick and tries again on the next one.
    """
    pass


class PermanentError(DiscburnError):
    """
    Permanent error - do not retry automatically.

    Surfaced to the caller, or recorded in a job's audit trail.
    """
    pass


class StoreUnavailable(TransientError):
    """The remote store could not be read or written."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class InvalidTransition(PermanentError):
    """An illegal manifest state change was requested."""

    def __init__(self, from_state: str, to_state: str):
        super().__init__(f"Invalid state transition: {from_state} -> {to_state}")
        self.from_state = from_state
        self.to_state = to_state


class SecurityRejected(PermanentError):
    """An inbound signal failed the gateway policy."""

    def __init__(self, reason: str, check: str | None = None):
        super().__init__(f"Signal rejected: {reason}")
        self.reason = reason
        self.check = check


class ParseError(PermanentError):
    """A persisted object or signal could not be deserialized."""
    pass


class MaxRetriesExceeded(PermanentError):
    """A job failed more often than its retry budget allows."""

    def __init__(self, job_id: str, retry_count: int, max_retries: int):
        super().__init__(
            f"Job {job_id} exceeded retry budget ({retry_count} > {max_retries})"
        )
        self.job_id = job_id
        self.retry_count = retry_count
        self.max_retries = max_retries


class JobNotFoundError(PermanentError):
    """No descriptor or manifest exists for the requested job."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id
