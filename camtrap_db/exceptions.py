"""
Custom exception hierarchy for the camera-trap metadata store.

Store operations raise these internally; the public entry points of the
engines convert every StoreError into a failed Result so that expected
failures never cross the store boundary as exceptions. UnknownFieldError
is a programmer error and is allowed to propagate.
"""
from enum import Enum
from typing import Iterable, List, Optional


class ErrorKind(Enum):
    """Every failure and warning a store operation can report."""
    SCHEMA_TYPE_CONFLICT = "SchemaTypeConflict"
    SCHEMA_MISMATCH = "SchemaMismatch"
    SCHEMA_COSMETIC_DRIFT = "SchemaCosmeticDrift"
    CHOICES_REMOVED = "ChoicesRemoved"
    METADATA_LEVEL_MISMATCH = "MetadataLevelMismatch"
    CATEGORY_CONFLICT = "CategoryConflict"
    CSV_UNREADABLE = "CsvUnreadable"
    CSV_HEADER_INVALID = "CsvHeaderInvalid"
    CSV_VALUE_INVALID = "CsvValueInvalid"
    DUPLICATE_COUNT_MISMATCH = "DuplicateCountMismatch"
    DATE_TIME_NOT_UPDATED = "DateTimeNotUpdated"
    STORE_UNREADABLE = "StoreUnreadable"
    STORE_CORRUPT = "StoreCorrupt"
    DESTINATION_EXISTS = "DestinationExists"
    CANCELLED = "Cancelled"

    @property
    def fatal(self) -> bool:
        return self not in _NON_FATAL


_NON_FATAL = {
    ErrorKind.SCHEMA_COSMETIC_DRIFT,
    ErrorKind.CHOICES_REMOVED,
    ErrorKind.DUPLICATE_COUNT_MISMATCH,
    ErrorKind.DATE_TIME_NOT_UPDATED,
}


class CamtrapDbError(Exception):
    """Base exception for all camera-trap store errors."""
    pass


class UnknownFieldError(CamtrapDbError, KeyError):
    """Raised when a caller names a data label the schema does not have."""

    def __init__(self, label: str):
        super().__init__(label)
        self.label = label

    def __str__(self):
        return f"Unknown data label: {self.label}"


class StoreError(CamtrapDbError):
    """An expected failure that is reported to callers as a Result."""
    kind = ErrorKind.STORE_CORRUPT

    def __init__(self, message: str, lines: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.lines: List[str] = list(lines) if lines else [message]


class SchemaTypeConflict(StoreError):
    """Raised when a data label has different value types in two schemas."""
    kind = ErrorKind.SCHEMA_TYPE_CONFLICT


class SchemaMismatch(StoreError):
    """Raised when two schemas do not carry the same data labels."""
    kind = ErrorKind.SCHEMA_MISMATCH


class MetadataLevelMismatch(StoreError):
    """Raised when folder-level metadata tables cannot be lined up."""
    kind = ErrorKind.METADATA_LEVEL_MISMATCH


class CsvUnreadable(StoreError):
    """Raised when a CSV file cannot be read or holds no data rows."""
    kind = ErrorKind.CSV_UNREADABLE


class CsvHeaderInvalid(StoreError):
    """Raised when a CSV header lacks required columns or has unknown ones."""
    kind = ErrorKind.CSV_HEADER_INVALID


class CsvValueInvalid(StoreError):
    """Raised when CSV values do not fit their field's value type."""
    kind = ErrorKind.CSV_VALUE_INVALID


class StoreUnreadable(StoreError):
    """Raised when a store file cannot be opened as a database."""
    kind = ErrorKind.STORE_UNREADABLE


class StoreCorrupt(StoreError):
    """Raised when a store file lacks the tables of the store format."""
    kind = ErrorKind.STORE_CORRUPT


class DestinationExists(StoreError):
    """Raised when an operation would overwrite an existing store file."""
    kind = ErrorKind.DESTINATION_EXISTS


class OperationCancelled(StoreError):
    """Raised when a cancellation token is observed between batches."""
    kind = ErrorKind.CANCELLED
