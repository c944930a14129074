"""Error hierarchy for board operations and retry classification.

This hierarchy enables tenacity retry decorators to automatically classify
transient failures (should retry) vs permanent failures (should not retry).

Example usage with tenacity:
    @retry(retry=retry_if_exception_type(TransientError), stop=stop_after_attempt(3))
    def _put(self, path: str, value: Any) -> None:
        ...

Lock contention is not an error: LockManager.acquire() returns False.
"""


class BoardError(Exception):
    """Base exception for all board errors."""

    pass


class TransientError(BoardError):
    """Temporary failure that may succeed on retry.

    Examples: network timeouts, 503 Service Unavailable, dropped stream.
    """

    pass


class RateLimitError(TransientError):
    """Rate limit exceeded - needs longer backoff.

    Inherits from TransientError so tenacity will retry it.
    """

    pass


class StoreUnavailableError(TransientError):
    """The store connection is closed or unreachable."""

    pass


class TransactionContentionError(TransientError):
    """A transaction kept losing its compare-and-set and ran out of retries."""

    pass


class PermanentError(BoardError):
    """Failure that won't succeed on retry."""

    pass


class AuthenticationError(PermanentError):
    """Sign-in failed, or no signed-in teacher is available.

    Requires a fresh login, cannot be fixed by retry.
    """

    pass


class PermissionDeniedError(PermanentError):
    """The database rules rejected the request (HTTP 401/403)."""

    pass


class InvalidSlotError(PermanentError, ValueError):
    """Day or time slot is not part of the weekly grid."""

    pass


class SuggestionError(PermanentError):
    """The suggestion service is not configured or returned unusable output."""

    pass


class StoreWriteError(BoardError):
    """A schedule write did not reach the store.

    The underlying store error is chained as __cause__.
    """

    def __init__(self, message: str, *, path: str) -> None:
        super().__init__(message)
        self.path = path


class SaveFailedError(StoreWriteError):
    """Saving a schedule entry failed."""

    pass


class DeleteFailedError(StoreWriteError):
    """Deleting a schedule entry failed."""

    pass


class MigrationError(StoreWriteError):
    """Writing the migrated schedule failed; the legacy data is untouched."""

    pass
