"""Exception hierarchy for the table exporter.

Faults fall into two classes. Row-level faults are caught per record, counted
and logged. Anything derived from RestartExportError is run-fatal: the run is
not marked successful and the caller is expected to resubmit it.
"""

from __future__ import annotations


class ExporterError(Exception):
    """Base exception for all exporter-related errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(ExporterError):
    """Raised when configuration is missing or invalid."""
    pass


class AuthenticationError(ExporterError):
    """Raised when authentication fails."""
    pass


class BadRequestError(ExporterError):
    """Raised when a run request can't be parsed or validated. Never redriven."""
    pass


class APIError(ExporterError):
    """Base exception for table service errors."""
    pass


class APIConnectionError(APIError):
    """Raised when unable to connect to the table service."""
    pass


class APITimeoutError(APIError):
    """Raised when a table service request times out."""
    pass


class APIResponseError(APIError):
    """Raised when the table service returns an unexpected response."""
    pass


class UploadNotReadyError(APIError):
    """Raised while an asynchronous bulk upload job is still running."""
    pass


class StorageError(ExporterError):
    """Base exception for storage-related errors."""
    pass


class LocalStorageError(StorageError):
    """Raised when staging file operations fail."""
    pass


class AzureStorageError(StorageError):
    """Raised when Azure storage operations fail."""
    pass


class RegistryError(ExporterError):
    """Raised when the table registry can't be read or written."""
    pass


class RecordStoreError(ExporterError):
    """Raised when records or upload schemas can't be read."""
    pass


class RecordError(ExporterError):
    """Row-level fault scoped to a single record."""
    pass


class RecordDataError(RecordError):
    """Raised when a record's payload can't be converted into a row."""
    pass


class SchemaNotFoundError(RecordError):
    """Raised when no upload schema exists for a record."""
    pass


class RowBufferError(ExporterError):
    """Base exception for row buffer faults."""
    pass


class BufferInitError(RowBufferError):
    """The buffer failed to initialize. Stored on the buffer and re-raised on every use."""
    pass


class BufferWriteError(RowBufferError):
    """The staging file reported a write or flush failure."""
    pass


class TableCreationError(ExporterError):
    """Raised when the remote table can't be created as requested."""
    pass


class RestartExportError(ExporterError):
    """Run-fatal fault. The whole run must be resubmitted."""
    pass


class UploadMismatchError(RestartExportError):
    """Raised when the remote row count doesn't match the staged line count."""
    pass


class DestinationUnavailableError(RestartExportError):
    """Raised when the table service is not writable."""
    pass
