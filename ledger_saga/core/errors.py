"""
Error taxonomy for the consistency orchestrator.

ValidationError is raised before any I/O and is never retried.
StorageError names the failing store and operation.
ConsistencyError carries the record id and what did not match.
"""

from typing import Iterable, Optional, Tuple


class LedgerSagaError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(LedgerSagaError):
    """Bad input, rejected before touching any store."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class StorageError(LedgerSagaError):
    """A store failed while performing an operation."""

    def __init__(
        self,
        message: str,
        store: str,
        operation: str,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.store = store
        self.operation = operation
        self.code = code

    def __str__(self) -> str:
        base = super().__str__()
        tag = f"{self.store}.{self.operation}"
        if self.code:
            tag += f":{self.code}"
        return f"[{tag}] {base}"


class UploadError(StorageError):
    """Transport or auth failure while uploading to the media store."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message, store="media", operation="upload", code=code)


class ConsistencyError(LedgerSagaError):
    """Post-write mismatch between stores."""

    def __init__(self, record_id: str, discrepancies: Iterable[str]):
        self.record_id = record_id
        self.discrepancies: Tuple[str, ...] = tuple(discrepancies)
        super().__init__(
            f"Record {record_id} is inconsistent: " + "; ".join(self.discrepancies)
        )
