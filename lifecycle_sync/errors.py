"""Exceptions raised by lifecycle_sync."""

from __future__ import annotations


class LifecycleSyncError(Exception):
    """Base class for errors raised by this package."""


class ConfigurationError(LifecycleSyncError):
    """Raised when required configuration is missing or malformed."""


class JobCancelledError(LifecycleSyncError):
    """Raised at a cooperative checkpoint once a job's scope is cancelled or expired."""

    def __init__(self, job_id: str, reason: str) -> None:
        super().__init__(f"Sync job {job_id} cancelled: {reason}")
        self.job_id = job_id
        self.reason = reason
