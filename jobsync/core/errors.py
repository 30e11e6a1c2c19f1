"""
Exception taxonomy for the sync pipeline.

Account-level and item-level errors are caught by the orchestrator and folded
into SyncRun statistics; only errors that stop the orchestrator itself reach
the caller as a fatal `sync-error`.
"""


class JobSyncError(Exception):
    """Base class for every error raised by jobsync."""

    code = "error"


class TransientFetchError(JobSyncError):
    """A page request to the mail transport failed (after retries)."""

    code = "transient_fetch"


class ProviderError(JobSyncError):
    """The generative backend is unreachable or answered with an error."""

    code = "provider_error"


class ClassifierFormatError(JobSyncError):
    """The generative model's output does not match the wire schema."""

    code = "format_error"

    def __init__(self, message: str, raw_output: str = ""):
        super().__init__(message)
        self.raw_output = raw_output


class BreakerOpenError(JobSyncError):
    """Call refused locally because the circuit breaker is open."""

    code = "breaker_open"

    def __init__(self, message: str = "Circuit breaker is open", retry_in: float = 0.0):
        super().__init__(message)
        self.retry_in = retry_in


class PromptBudgetError(JobSyncError):
    """The instruction template leaves no room for the email in the context window."""

    code = "prompt_budget"


class PersistenceError(JobSyncError):
    """A record store write failed for one item."""

    code = "persistence_error"


class CancellationRequested(JobSyncError):
    """Cooperative cancellation. Not a failure: the run ends as `cancelled`."""

    code = "cancelled"


class SyncInProgressError(JobSyncError):
    code = "sync_in_progress"


class AccountNotFoundError(JobSyncError):
    code = "account_not_found"


class ReviewEntryNotFoundError(JobSyncError):
    code = "not_found"


class ReviewEntryExpiredError(JobSyncError):
    code = "expired"
