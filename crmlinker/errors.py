"""
Error taxonomy for record reconciliation.

Only UpstreamTransient and StorageFatal are meant to reach the work queue as
job failures. The rest are turned into tagged outcomes or recovered locally.
"""

from typing import Optional


class LinkerError(Exception):
    """Base class for all crmlinker errors."""
    pass


class ConfigError(LinkerError):
    """Required configuration is missing or invalid."""
    pass


class SourceNotFound(LinkerError):
    """The CRM record does not exist or is not accessible."""

    def __init__(self, record_id: str, reason: str = "not found"):
        super().__init__(f"CRM record {record_id}: {reason}")
        self.record_id = record_id
        self.reason = reason


class InsufficientKeyFields(LinkerError):
    """The record has neither a website nor an address to key on."""

    def __init__(self, record_id: str):
        super().__init__(f"CRM record {record_id} has no website and no address")
        self.record_id = record_id


class UpstreamTransient(LinkerError):
    """Network trouble or a retryable HTTP status from the CRM API."""
    pass


class RateLimited(UpstreamTransient):
    """The CRM API answered 429."""
    pass


class UpstreamError(LinkerError):
    """Non-retryable HTTP failure from the CRM API (auth, bad request...)."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class DuplicateKeyConflict(LinkerError):
    """An insert lost the race on the (website, address) unique constraint."""

    def __init__(self, key):
        super().__init__(f"Link record already exists for key {key!r}")
        self.key = key


class StorageFatal(LinkerError):
    """Any other storage failure. Fails the job, never the worker."""
    pass
