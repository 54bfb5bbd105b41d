"""Error types raised across the timetable sync pipeline."""
from enum import Enum


class FetchError(Exception):
    """Raised when feed bytes could not be retrieved."""


class ByteStoreError(Exception):
    """Raised when the persistent byte store is unavailable."""


class CacheError(Exception):
    """Raised when a snapshot could not be persisted."""


class SyncFailureReason(str, Enum):
    NO_DATA_OFFLINE = 'no_data_offline'
    FETCH_FAILED_NO_CACHE = 'fetch_failed_no_cache'


class SyncError(Exception):
    """Outward-facing failure: no usable schedule data at all."""

    def __init__(self, reason: SyncFailureReason, subscription_key: str, message: str = ''):
        self.reason = reason
        self.subscription_key = subscription_key
        super().__init__(
            message or f"No schedule available for '{subscription_key}' ({reason.value})"
        )


class NoDataOffline(SyncError):
    """Offline and nothing cached for the subscription."""

    def __init__(self, subscription_key: str):
        super().__init__(
            SyncFailureReason.NO_DATA_OFFLINE,
            subscription_key,
            f"Offline and no cached schedule for '{subscription_key}'",
        )


class FetchFailedNoCache(SyncError):
    """Fetch failed and nothing cached for the subscription."""

    def __init__(self, subscription_key: str, cause: Exception):
        self.cause = cause
        super().__init__(
            SyncFailureReason.FETCH_FAILED_NO_CACHE,
            subscription_key,
            f"Failed to fetch schedule for '{subscription_key}' and no cache exists: {cause}",
        )
