"""
Unified storage adapter over the bucket and repository backends.

This is the only module that knows both backends exist; everything else asks
it for the backend that owns a template. A template keeps the backend it was
first stored with.
"""

from __future__ import annotations

import logging
from typing import Optional

from template_storage.archive import find_index_file, validate_archive
from template_storage.backends import FileLink, StorageBackend
from template_storage.bucket import BucketBackend
from template_storage.downloader import ReconstructedArchive, reconstruct_template_zip
from template_storage.exceptions import (
    BackendUnavailableError,
    InvalidArchiveError,
    StorageTypeMismatchError,
)
from template_storage.pool import CancelToken
from template_storage.repository import RepositoryBackend
from template_storage.types import (
    ExtractedFile,
    ProgressCallback,
    StorageType,
    TemplateRecord,
    UploadResult,
    ValidationResult,
)

logger = logging.getLogger(__name__)


class StorageAdapter:
    def __init__(
        self,
        bucket: Optional[BucketBackend] = None,
        repository: Optional[RepositoryBackend] = None,
    ):
        self.bucket = bucket
        self.repository = repository

    def backend_for(self, storage_type: StorageType) -> StorageBackend:
        backends: dict[StorageType, Optional[StorageBackend]] = {
            StorageType.BUCKET: self.bucket,
            StorageType.REPOSITORY: self.repository,
        }
        backend = backends.get(storage_type)
        if backend is None:
            raise BackendUnavailableError(
                f"Storage backend '{storage_type.value}' is not configured"
            )
        return backend

    @staticmethod
    def resolve_storage_type(
        template: TemplateRecord, requested: "StorageType | str | None" = None
    ) -> StorageType:
        """
        Pick the backend for a template.

        Templates that already have a storage type keep it; asking for the
        other backend raises StorageTypeMismatchError.
        """
        existing = StorageType.parse(template.storage_type)
        wanted = StorageType.parse(requested)
        if existing and wanted and existing != wanted:
            raise StorageTypeMismatchError(
                f"Template {template.id} is stored in '{existing.value}', "
                f"not '{wanted.value}'"
            )
        return existing or wanted or StorageType.BUCKET

    def upload_template_files(
        self,
        template: TemplateRecord,
        files: list[ExtractedFile],
        storage_type: "StorageType | str | None" = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
        validation: Optional[ValidationResult] = None,
    ) -> UploadResult:
        validation = validation or validate_archive(files)
        if not validation.valid:
            raise InvalidArchiveError(validation)

        resolved = self.resolve_storage_type(template, storage_type)
        backend = self.backend_for(resolved)
        logger.info(
            "Uploading %d files for template %s to %s",
            len(files),
            template.id,
            resolved.value,
        )
        result = backend.upload(template, files, on_progress=on_progress, cancel=cancel)
        result.index_file_path = find_index_file(files)
        return result

    def reconstruct(
        self,
        template: TemplateRecord,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ReconstructedArchive:
        backend = self.backend_for(self.resolve_storage_type(template))
        return reconstruct_template_zip(backend, template, on_progress)

    def download_template_as_zip(
        self,
        template: TemplateRecord,
        on_progress: Optional[ProgressCallback] = None,
    ) -> bytes:
        return self.reconstruct(template, on_progress).data

    def list_template_files(self, template: TemplateRecord) -> list[str]:
        return self.backend_for(self.resolve_storage_type(template)).list_files(template)

    def download_links(self, template: TemplateRecord) -> list[FileLink]:
        return self.backend_for(self.resolve_storage_type(template)).download_links(template)

    def delete_template_files(self, template: TemplateRecord) -> None:
        storage_type = self.resolve_storage_type(template)
        self.backend_for(storage_type).delete(template)
        logger.info("Deleted stored files for template %s (%s)", template.id, storage_type.value)

    def preview_url_for(
        self,
        template: TemplateRecord,
        storage_type: StorageType,
        index_file_path: Optional[str],
    ) -> Optional[str]:
        if not index_file_path:
            return None
        return self.backend_for(storage_type).public_url(template, index_file_path)

    def get_live_preview_url(self, template: TemplateRecord) -> Optional[str]:
        if template.live_preview_url:
            return template.live_preview_url
        if StorageType.parse(template.storage_type) == StorageType.REPOSITORY and (
            template.github_repo_name and self.repository is not None
        ):
            return self.repository.raw_url(template.github_repo_name, "index.html")
        return None

    def get_storage_url(self, template: TemplateRecord) -> Optional[str]:
        if StorageType.parse(template.storage_type) != StorageType.REPOSITORY:
            return None
        if template.github_repo_url:
            return template.github_repo_url
        if template.github_repo_name and self.repository is not None:
            return self.repository.repo_url(template.github_repo_name)
        return None

    def signed_url(self, template: TemplateRecord, path: str) -> str:
        if self.resolve_storage_type(template) != StorageType.BUCKET:
            raise StorageTypeMismatchError(
                f"Template {template.id} is not stored in the bucket"
            )
        if self.bucket is None:
            raise BackendUnavailableError("Storage backend 'bucket' is not configured")
        return self.bucket.signed_url(template, path)
