"""
Error types for the listing sync pipeline.

Only ReadFailure and QuotaExceeded (plus GeocodingError) are fatal to a
stage. Write failures are absorbed by the batched sync engine and show up
as failed-row counts.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for pipeline failures."""

    error_code = "SYNC_ERROR"


class ConfigError(SyncError):
    """Raised for missing credentials or unusable configuration."""

    error_code = "CONFIG_ERROR"


class ReadFailure(SyncError):
    """A paginated read from a store failed; the run must abort."""

    error_code = "READ_FAILURE"

    def __init__(self, message: str, table: Optional[str] = None, offset: Optional[int] = None):
        super().__init__(message)
        self.table = table
        self.offset = offset


class WriteFailure(SyncError):
    """An upsert failed. Retryable failures are transient network/timeout errors."""

    error_code = "WRITE_FAILURE"

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class QuotaExceeded(SyncError):
    """An external service reported sustained rate-limit exhaustion."""

    error_code = "QUOTA_EXCEEDED"


class GeocodingError(SyncError):
    """The geocoding service answered with a status other than OK / ZERO_RESULTS."""

    error_code = "GEOCODING_ERROR"

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message)
        self.status = status
