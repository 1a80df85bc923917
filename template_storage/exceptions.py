"""Template storage specific exceptions."""

from __future__ import annotations

from typing import Optional

from template_storage.types import ValidationResult


class TemplateStorageError(Exception):
    """Base class for template storage errors."""


class ArchiveExtractionError(TemplateStorageError):
    """Raised when an uploaded file cannot be read as a ZIP archive."""


class InvalidArchiveError(TemplateStorageError):
    """Raised when an archive failed validation and must not be uploaded."""

    def __init__(self, validation: ValidationResult):
        self.validation = validation
        summary = "; ".join(validation.errors) or "archive failed validation"
        super().__init__(summary)


class BackendUnavailableError(TemplateStorageError):
    """Raised when the selected backend is missing credentials or configuration."""


class StorageTypeMismatchError(TemplateStorageError):
    """Raised when a template is addressed through a backend other than its own."""


class NoFilesFoundError(TemplateStorageError):
    """Raised when no files could be located or retrieved for a template."""


class StorageOperationError(TemplateStorageError):
    """Raised when a bucket operation fails as a whole (listing, bulk delete)."""


class RepositoryApiError(TemplateStorageError):
    """Raised when the repository hosting API returns an error response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RepositoryNotFoundError(RepositoryApiError):
    """Raised when the repository or path does not exist."""


class TemplateNotFoundError(TemplateStorageError):
    """Raised when the requested template record cannot be found."""


class PurchaseError(TemplateStorageError):
    """Raised when a purchase does not entitle the caller to a download."""
