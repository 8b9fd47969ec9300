from __future__ import annotations


class StoreError(Exception):
    """Base class for every failure raised by the chat store."""


class SchemaMismatchError(StoreError):
    """The on-disk structure does not match the expected schema."""


class ConstraintViolationError(StoreError):
    def __init__(self, operation: str, detail: str):
        super().__init__(f"{operation} violated a constraint: {detail}")
        self.operation = operation
        self.detail = detail


class TransactionFailedError(StoreError):
    def __init__(self, operation: str, detail: str):
        super().__init__(f"{operation} failed and was rolled back: {detail}")
        self.operation = operation
        self.detail = detail


class ResourceBusyError(StoreError):
    """The database stayed locked after the configured number of retries."""


class ReadCancelledError(StoreError):
    """A list operation was cancelled by its caller before it finished."""
