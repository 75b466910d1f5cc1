"""Errors raised by the ingestion pipeline."""


class IngestionError(Exception):
    """Base class for upload failures reported back to the caller."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(IngestionError):
    """The uploaded file is unusable: bad filename, no data sheet, no rows."""


class StorageError(IngestionError):
    """Persisting the upload failed. Nothing from the upload was kept."""
