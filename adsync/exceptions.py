"""
Sync Exceptions
===============

Error taxonomy for the ingestion core.

WHY THIS FILE EXISTS
--------------------
Every failure the worker sees must be classified before it can decide between
"retry later", "retry with the platform's advisory delay" and "stop and ask
the user to reconnect". The API client raises these, the upsert layer raises
these, and the worker maps each class to a queue transition:

- TransientNetworkError  -> retried with exponential backoff
- RateLimitError         -> retried after the advisory delay
- AuthError              -> connection inactive, job failed, no retry
- ValidationError        -> row skipped / job rejected, no retry
- DuplicateKeyConflict   -> resolved by re-applying the upsert
- PermanentFailure       -> job failed (dead-letter)

RELATED FILES
-------------
- adsync/services/meta_insights_client.py: Raises network/auth/rate errors
- adsync/services/insights_parser.py: Raises ValidationError per row
- adsync/services/sync_worker.py: Catches and maps to queue transitions
"""

from typing import Optional


class SyncError(Exception):
    """
    Base exception for the ingestion core.

    WHAT:
        Parent class for every classified failure.

    WHY:
        Lets the worker separate classified failures from programming errors
        with a single except clause.
    """

    retryable = False

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider


class TransientNetworkError(SyncError):
    """Timeouts, connection resets and 5xx responses."""

    retryable = True


class RateLimitError(SyncError):
    """
    The platform throttled this account or app.

    WHAT:
        Carries the advisory delay (seconds) when the platform sent one via
        Retry-After or the business-use-case usage header.

    WHY:
        Retrying before the platform's window resets only extends the block.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        provider: Optional[str] = None,
    ):
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class AuthError(SyncError):
    """
    Expired, revoked or under-scoped access token.

    Fatal for the connection: the user has to reconnect, so retrying would
    only burn attempts.
    """

    retryable = False


class ValidationError(SyncError):
    """Malformed job spec or malformed API row."""

    retryable = False

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class DuplicateKeyConflict(SyncError):
    """A concurrent writer inserted the same natural key first."""

    retryable = True


class PermanentFailure(SyncError):
    """The job cannot succeed (bad request, missing connection, retries exhausted)."""

    retryable = False


class JobCancelled(SyncError):
    """Cancellation was requested and observed at a page boundary."""

    retryable = False
