from __future__ import annotations

from typing import Optional


class CleanerError(Exception):
    """Base class for queue cleaner failures."""


class ConfigError(CleanerError):
    """User configuration cannot be applied safely (e.g. malformed pattern JSON)."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class FetchError(CleanerError):
    """The remote queue could not be fetched."""


class LedgerError(CleanerError):
    """The strike ledger could not be read or written."""


class RemovalError(CleanerError):
    """A single queue item could not be removed."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ManualImportError(CleanerError):
    """An import-by-download-id attempt was rejected or failed."""

    def __init__(self, message: str, status: Optional[int] = 422) -> None:
        super().__init__(message)
        self.status = status


class ArrRequestError(CleanerError):
    """HTTP call to an *arr instance failed after retries."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def not_found(self) -> bool:
        return self.status == 404
