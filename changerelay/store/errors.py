class StoreError(RuntimeError):
    """Base exception for store adapter failures."""


class DoesNotExistError(StoreError):
    """Raised when a table, column or bookkeeping row the caller asked for is absent."""


class StoreTimeoutError(StoreError):
    """Raised when a copy or apply exceeds the timeout supplied by the caller."""
