"""
End-to-end template workflows: archive upload into a backend and purchased
downloads rebuilt from whatever layout a template was stored in.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from template_storage.adapter import StorageAdapter
from template_storage.archive import extract_archive, validate_archive
from template_storage.backends import FileLink
from template_storage.db import DbClient
from template_storage.downloader import ReconstructedArchive
from template_storage.exceptions import (
    InvalidArchiveError,
    NoFilesFoundError,
    PurchaseError,
    TemplateNotFoundError,
    TemplateStorageError,
)
from template_storage.pool import CancelToken
from template_storage.types import (
    ExtractedFile,
    JobStatus,
    PurchaseRecord,
    StorageType,
    TemplateRecord,
    UploadJobRecord,
    UploadResult,
    ValidationResult,
)

logger = logging.getLogger(__name__)

STATIC_HTML_DEMO = "static_html"
MAX_JOB_ERRORS = 20


@dataclass
class PendingUpload:
    """A validated archive waiting for its background upload."""

    job: UploadJobRecord
    template: TemplateRecord
    storage_type: StorageType
    files: list[ExtractedFile]
    validation: ValidationResult
    cancel: CancelToken


class TemplatePackagingService:
    def __init__(self, db: DbClient, adapter: StorageAdapter):
        self.db = db
        self.adapter = adapter
        self._cancel_tokens: dict[str, CancelToken] = {}
        self._lock = threading.Lock()

    def get_template(self, template_id: int) -> TemplateRecord:
        template = self.db.get_template(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template {template_id} not found")
        return template

    @staticmethod
    def prepare_archive(data: bytes) -> tuple[list[ExtractedFile], ValidationResult]:
        files = extract_archive(data)
        return files, validate_archive(files)

    def begin_upload(
        self,
        template_id: int,
        data: bytes,
        storage_type: "StorageType | str | None" = None,
    ) -> PendingUpload:
        """
        Validate an archive and register an upload job for it.

        Everything that can reject the request happens here, before any file
        is written: unknown template, unreadable or invalid archive, a storage
        type that conflicts with the template's, or an unconfigured backend.
        """
        template = self.get_template(template_id)
        files, validation = self.prepare_archive(data)
        if not validation.valid:
            logger.info(
                "Rejected archive for template %s: %s", template_id, validation.errors
            )
            raise InvalidArchiveError(validation)

        resolved = self.adapter.resolve_storage_type(template, storage_type)
        self.adapter.backend_for(resolved)

        job = self.db.create_upload_job(template.id, resolved)
        cancel = CancelToken()
        with self._lock:
            self._cancel_tokens[job.job_id] = cancel
        logger.info(
            "Queued upload job %s: %d files (%d bytes) for template %s to %s",
            job.job_id,
            validation.file_count,
            validation.total_size,
            template.id,
            resolved.value,
        )
        return PendingUpload(
            job=job,
            template=template,
            storage_type=resolved,
            files=files,
            validation=validation,
            cancel=cancel,
        )

    def run_upload(self, pending: PendingUpload) -> UploadResult:
        job_id = pending.job.job_id
        self.db.update_job_progress(
            job_id, status=JobStatus.UPLOADING, stage="UPLOADING", progress_percent=0.0
        )

        def on_progress(percent: int) -> None:
            self.db.update_job_progress(job_id, progress_percent=float(percent))

        try:
            result = self.adapter.upload_template_files(
                pending.template,
                pending.files,
                pending.storage_type,
                on_progress=on_progress,
                cancel=pending.cancel,
                validation=pending.validation,
            )
        except TemplateStorageError as exc:
            logger.exception("Upload job %s failed", job_id)
            self.db.update_job_progress(
                job_id, status=JobStatus.FAILED, stage="FAILED", errors=[str(exc)]
            )
            raise
        finally:
            with self._lock:
                self._cancel_tokens.pop(job_id, None)

        status = JobStatus.from_upload(result.status)
        self.db.update_job_progress(
            job_id,
            status=status,
            stage=status.name,
            uploaded_files=result.uploaded_files,
            failed_files=result.failed_files,
            errors=result.errors[:MAX_JOB_ERRORS],
        )
        if result.success:
            self._record_upload(pending, result)
        else:
            logger.warning(
                "Upload job %s finished as %s (%d uploaded, %d failed); template %s left unchanged",
                job_id,
                status.name,
                result.uploaded_files,
                result.failed_files,
                pending.template.id,
            )
        return result

    def upload_archive(
        self,
        template_id: int,
        data: bytes,
        storage_type: "StorageType | str | None" = None,
    ) -> UploadResult:
        return self.run_upload(self.begin_upload(template_id, data, storage_type))

    def _record_upload(self, pending: PendingUpload, result: UploadResult) -> None:
        template = pending.template
        changes: dict = {
            "storage_type": pending.storage_type,
            "storage_path": result.storage_path,
            "demo_type": STATIC_HTML_DEMO,
            "file_count": pending.validation.file_count,
            "total_size": pending.validation.total_size,
        }
        if pending.storage_type == StorageType.REPOSITORY:
            changes["github_repo_name"] = self.adapter.repository.repo_name_for(template)
            changes["github_repo_url"] = result.repository_url
        preview = self.adapter.preview_url_for(
            template, pending.storage_type, result.index_file_path
        )
        if preview:
            changes["live_preview_url"] = preview
        self.db.update_template(template.id, **changes)
        logger.info("Template %s now stored in %s", template.id, pending.storage_type.value)

    def cancel_upload(self, job_id: str) -> bool:
        """Signal a running job to stop; False when it is not running here."""
        with self._lock:
            token = self._cancel_tokens.get(job_id)
        if token is None:
            return False
        token.cancel()
        logger.info("Cancellation requested for upload job %s", job_id)
        return True

    def delete_template_files(self, template_id: int) -> TemplateRecord:
        template = self.get_template(template_id)
        self.adapter.delete_template_files(template)
        return self.db.update_template(
            template.id,
            storage_path=None,
            github_repo_url=None,
            live_preview_url=None,
            file_count=0,
            total_size=0,
        )

    def _authorize_download(
        self, template_id: int, purchase_id: int, customer_email: str
    ) -> tuple[PurchaseRecord, TemplateRecord]:
        purchase = self.db.get_purchase(purchase_id)
        if (
            purchase is None
            or purchase.template_id != template_id
            or purchase.customer_email.lower() != (customer_email or "").strip().lower()
            or purchase.status != "completed"
        ):
            raise PurchaseError("Purchase not found or not completed")
        if purchase.limit_reached:
            raise PurchaseError("Download limit reached")
        template = self.get_template(template_id)
        if not template.download_enabled:
            raise PurchaseError("Download is disabled for this template")
        return purchase, template

    def _record_download(self, purchase: PurchaseRecord) -> PurchaseRecord:
        recorded = self.db.record_download(purchase.id)
        if recorded is None:
            raise PurchaseError("Download limit reached")
        return recorded

    def download_for_purchase(
        self, template_id: int, purchase_id: int, customer_email: str
    ) -> ReconstructedArchive:
        purchase, template = self._authorize_download(
            template_id, purchase_id, customer_email
        )
        archive = self.adapter.reconstruct(template)
        self._record_download(purchase)
        if archive.probed and archive.located_path and not template.storage_path:
            self.db.update_template(template.id, storage_path=archive.located_path)
            logger.info(
                "Recorded storage path %s for template %s", archive.located_path, template.id
            )
        return archive

    def download_links_for_purchase(
        self, template_id: int, purchase_id: int, customer_email: str
    ) -> tuple[TemplateRecord, list[FileLink], PurchaseRecord]:
        purchase, template = self._authorize_download(
            template_id, purchase_id, customer_email
        )
        links = self.adapter.download_links(template)
        if not links:
            raise NoFilesFoundError(f"No source files found for template {template.id}")
        return template, links, self._record_download(purchase)
