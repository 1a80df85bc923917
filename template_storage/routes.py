"""
HTTP routes for the template storage API.
"""

from __future__ import annotations

import logging

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    Response,
    UploadFile,
)

from template_storage.archive import find_index_file, format_file_size
from template_storage.db import DbClient
from template_storage.dependencies import get_db_client, get_packaging_service
from template_storage.exceptions import (
    ArchiveExtractionError,
    BackendUnavailableError,
    InvalidArchiveError,
    NoFilesFoundError,
    PurchaseError,
    RepositoryApiError,
    RepositoryNotFoundError,
    StorageOperationError,
    StorageTypeMismatchError,
    TemplateNotFoundError,
    TemplateStorageError,
)
from template_storage.schemas import (
    CancelUploadResponse,
    DownloadLink,
    DownloadLinksResponse,
    PreviewUrlResponse,
    SignUrlResponse,
    TemplateFilesResponse,
    TemplateResponse,
    UploadAcceptedResponse,
    UploadStatusResponse,
    ValidationSummary,
)
from template_storage.service import PendingUpload, TemplatePackagingService
from template_storage.types import ExtractedFile, UploadJobRecord, ValidationResult

logger = logging.getLogger(__name__)

router = APIRouter()

# Checked in order; subclasses come before their bases.
ERROR_STATUS = [
    (TemplateNotFoundError, 404),
    (NoFilesFoundError, 404),
    (RepositoryNotFoundError, 404),
    (ArchiveExtractionError, 400),
    (InvalidArchiveError, 400),
    (PurchaseError, 403),
    (StorageTypeMismatchError, 409),
    (BackendUnavailableError, 503),
    (RepositoryApiError, 502),
    (StorageOperationError, 502),
]


def _http_error(exc: TemplateStorageError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status_code = 500
    if isinstance(exc, InvalidArchiveError):
        detail = {
            "message": "Invalid ZIP file",
            "errors": exc.validation.errors,
            "warnings": exc.validation.warnings,
        }
        return HTTPException(status_code=status_code, detail=detail)
    return HTTPException(status_code=status_code, detail=str(exc))


def _summary(files: list[ExtractedFile], validation: ValidationResult) -> ValidationSummary:
    return ValidationSummary(
        valid=validation.valid,
        errors=validation.errors,
        warnings=validation.warnings,
        file_count=validation.file_count,
        total_size=validation.total_size,
        total_size_display=format_file_size(validation.total_size),
        index_file_path=find_index_file(files),
    )


def _job_status(job: UploadJobRecord) -> UploadStatusResponse:
    return UploadStatusResponse(
        job_id=job.job_id,
        template_id=job.template_id,
        storage_type=job.storage_type.value,
        status=job.status.name,
        stage=job.stage,
        progress_percent=job.progress_percent,
        uploaded_files=job.uploaded_files,
        failed_files=job.failed_files,
        errors=job.errors,
    )


def _require_zip(file: UploadFile) -> None:
    if not file.filename or not file.filename.lower().endswith(".zip"):
        raise HTTPException(status_code=400, detail="ZIP file required")


def run_upload_job(service: TemplatePackagingService, pending: PendingUpload) -> None:
    try:
        service.run_upload(pending)
    except TemplateStorageError as exc:
        # Already recorded on the job as FAILED.
        logger.warning("Upload job %s did not complete: %s", pending.job.job_id, exc)


@router.post("/templates/validate", response_model=ValidationSummary)
async def validate_template_archive(file: UploadFile = File(...)):
    _require_zip(file)
    data = await file.read()
    try:
        files, validation = TemplatePackagingService.prepare_archive(data)
    except InvalidArchiveError as exc:
        return _summary([], exc.validation)
    except ArchiveExtractionError as exc:
        raise _http_error(exc) from exc
    return _summary(files, validation)


@router.post(
    "/templates/{template_id}/upload",
    response_model=UploadAcceptedResponse,
    status_code=202,
)
async def upload_template_archive(
    template_id: int,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    storage_type: str | None = Form(None),
    service: TemplatePackagingService = Depends(get_packaging_service),
):
    """
    Validate the archive now and store its files in a background task.
    """
    _require_zip(file)
    data = await file.read()
    try:
        pending = service.begin_upload(template_id, data, storage_type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown storage type: {storage_type}") from exc
    except TemplateStorageError as exc:
        raise _http_error(exc) from exc

    background_tasks.add_task(run_upload_job, service, pending)
    return UploadAcceptedResponse(
        job_id=pending.job.job_id,
        template_id=pending.template.id,
        storage_type=pending.storage_type.value,
        status=pending.job.status.name,
        validation=_summary(pending.files, pending.validation),
    )


@router.get("/upload-status/{job_id}", response_model=UploadStatusResponse)
def upload_status(job_id: str, db: DbClient = Depends(get_db_client)):
    job = db.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_status(job)


@router.post("/upload-status/{job_id}/cancel", response_model=CancelUploadResponse)
def cancel_upload(
    job_id: str,
    db: DbClient = Depends(get_db_client),
    service: TemplatePackagingService = Depends(get_packaging_service),
):
    job = db.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    cancelled = service.cancel_upload(job_id)
    if not cancelled:
        raise HTTPException(status_code=409, detail=f"Job already {job.status.name}")
    return CancelUploadResponse(job_id=job_id, cancelled=True, status=job.status.name)


@router.get("/templates/{template_id}/files", response_model=TemplateFilesResponse)
def list_template_files(
    template_id: int,
    service: TemplatePackagingService = Depends(get_packaging_service),
):
    try:
        template = service.get_template(template_id)
        storage_type = service.adapter.resolve_storage_type(template)
        files = service.adapter.list_template_files(template)
    except TemplateStorageError as exc:
        raise _http_error(exc) from exc
    return TemplateFilesResponse(
        template_id=template.id, storage_type=storage_type.value, files=files
    )


@router.delete("/templates/{template_id}/files", response_model=TemplateResponse)
def delete_template_files(
    template_id: int,
    service: TemplatePackagingService = Depends(get_packaging_service),
):
    try:
        template = service.delete_template_files(template_id)
    except TemplateStorageError as exc:
        raise _http_error(exc) from exc
    return TemplateResponse(**template.as_dict())


@router.get("/templates/{template_id}/preview-url", response_model=PreviewUrlResponse)
def template_preview_url(
    template_id: int,
    service: TemplatePackagingService = Depends(get_packaging_service),
):
    try:
        template = service.get_template(template_id)
    except TemplateStorageError as exc:
        raise _http_error(exc) from exc
    return PreviewUrlResponse(
        template_id=template.id,
        live_preview_url=service.adapter.get_live_preview_url(template),
        storage_url=service.adapter.get_storage_url(template),
    )


@router.get("/templates/{template_id}/download")
def download_template(
    template_id: int,
    purchase_id: int = Query(...),
    email: str = Query(..., min_length=3),
    service: TemplatePackagingService = Depends(get_packaging_service),
):
    try:
        archive = service.download_for_purchase(template_id, purchase_id, email)
    except TemplateStorageError as exc:
        raise _http_error(exc) from exc
    headers = {
        "Content-Disposition": f'attachment; filename="{archive.filename}"',
        "X-Template-File-Count": str(archive.file_count),
    }
    if archive.errors:
        headers["X-Template-Skipped-Files"] = str(len(archive.errors))
    return Response(content=archive.data, media_type="application/zip", headers=headers)


@router.get("/templates/{template_id}/download-links", response_model=DownloadLinksResponse)
def template_download_links(
    template_id: int,
    purchase_id: int = Query(...),
    email: str = Query(..., min_length=3),
    service: TemplatePackagingService = Depends(get_packaging_service),
):
    try:
        template, links, purchase = service.download_links_for_purchase(
            template_id, purchase_id, email
        )
    except TemplateStorageError as exc:
        raise _http_error(exc) from exc
    return DownloadLinksResponse(
        template_id=template.id,
        template_title=template.title,
        files=[DownloadLink(path=link.path, url=link.url) for link in links],
        download_count=purchase.download_count,
    )


@router.get("/templates/{template_id}/signed-url", response_model=SignUrlResponse)
def template_signed_url(
    template_id: int,
    path: str = Query(..., min_length=1, description="File path inside the source folder"),
    service: TemplatePackagingService = Depends(get_packaging_service),
):
    try:
        template = service.get_template(template_id)
        url = service.adapter.signed_url(template, path)
    except TemplateStorageError as exc:
        raise _http_error(exc) from exc
    return SignUrlResponse(url=url)
