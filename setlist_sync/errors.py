"""
Error kinds for the synchronization and voting engine.

Store and catalog failures are caught at the component boundary where they
occur and turned into degraded results. QuotaExceeded is the only error that
reaches callers on purpose.
"""

from typing import Optional


class SetlistSyncError(Exception):
    """Base class for all setlist-sync errors"""
    pass


class NotFound(SetlistSyncError):
    """Entity absent in the store (treated as "needs fetch", never fatal)"""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} {entity_id} not found")


class StoreError(SetlistSyncError):
    """Any persistent-store failure other than a permission denial"""

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)


class PermissionDenied(StoreError):
    """Store rejected a write for lack of privileges (Postgres SQLSTATE 42501)"""

    CODE = "42501"

    def __init__(self, message: str = "permission denied"):
        super().__init__(message, code=self.CODE)


class ExternalSourceUnavailable(SetlistSyncError):
    """Catalog or ticketing fetch failed"""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"{source} unavailable: {reason}")


class QuotaExceeded(SetlistSyncError):
    """Anonymous participant used up their votes for this show"""

    def __init__(self, show_id: str, limit: int):
        self.show_id = show_id
        self.limit = limit
        super().__init__(
            f"Anonymous vote limit of {limit} reached for show {show_id}; log in to keep voting"
        )


class InvalidInput(SetlistSyncError):
    """Missing or malformed caller input (add-song without a track id)"""
    pass


class CircuitBreakerOpenException(SetlistSyncError):
    """Exception raised when circuit breaker is open"""
    pass


class RetryExhausted(SetlistSyncError):
    """Raised when maximum retry attempts have been exhausted"""

    def __init__(self, attempts: int, last_error: Exception):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Retry exhausted after {attempts} attempts. Last error: {last_error}"
        )
