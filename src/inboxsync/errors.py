"""
Error taxonomy for the sync pipeline.

Provider errors carry enough information for the retry policy in
``inboxsync.provider``; the remaining errors are raised by the mapper,
the store and the orchestrator and handled at the conversation / pass
boundaries.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by the sync pipeline."""


class ProviderError(SyncError):
    """Non-retryable provider response (4xx other than auth and rate limit)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthError(ProviderError):
    """Bad or expired provider credentials.  Fatal for the account."""


class RateLimitError(ProviderError):
    """Provider answered 429.  Retried after ``retry_after`` seconds."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = 429,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class UnavailableError(ProviderError):
    """Network failure, timeout or 5xx.  Retried with backoff."""


class MappingError(SyncError):
    """Provider payload too malformed to map; the record is skipped."""


class ConflictError(SyncError):
    """Database write or read the store could not complete (constraint, privilege, schema)."""


class AccountNotFoundError(SyncError):
    """The requested account is not listed (or not connected) at the provider."""


class SyncInProgressError(SyncError):
    """A pass for the same (workspace, account) pair is already running."""

    def __init__(self, workspace_id: str, account_id: str) -> None:
        super().__init__(
            f"Sync already in progress for workspace={workspace_id} account={account_id}"
        )
        self.workspace_id = workspace_id
        self.account_id = account_id
