"""Error taxonomy shared by the pipeline and the API."""

from __future__ import annotations


class DealsError(Exception):
    """Base class for expected pipeline failures."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DealsError):
    status_code = 400


class DownloadError(DealsError):
    status_code = 502


class StorageError(DealsError):
    status_code = 500


class PersistenceError(DealsError):
    status_code = 500


class ExtractionUnavailable(DealsError):
    """No extraction provider is configured."""

    status_code = 503


class ExtractionFailed(DealsError):
    """Every configured provider errored."""

    status_code = 502


class SchemaViolation(DealsError):
    """A provider answered, but not in the agreed output shape."""

    status_code = 502


class RateLimitExceeded(DealsError):
    status_code = 429

    def __init__(self, message: str, *, retry_after: int, limit: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.limit = limit


class NotFoundError(DealsError):
    status_code = 404
