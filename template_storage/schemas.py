"""
Pydantic schemas for the template storage API.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class ValidationSummary(BaseModel):
    valid: bool
    errors: list[str]
    warnings: list[str]
    file_count: int
    total_size: int
    total_size_display: str
    index_file_path: Optional[str] = None


class UploadAcceptedResponse(BaseModel):
    job_id: str
    template_id: int
    storage_type: str
    status: str
    validation: ValidationSummary


class UploadStatusResponse(BaseModel):
    job_id: str
    template_id: int
    storage_type: str
    status: str
    stage: Optional[str] = None
    progress_percent: Optional[float] = None
    uploaded_files: int = 0
    failed_files: int = 0
    errors: list[str] = []


class CancelUploadResponse(BaseModel):
    job_id: str
    cancelled: bool
    status: str


class TemplateResponse(BaseModel):
    id: int
    title: str
    storage_type: Optional[str] = None
    storage_path: Optional[str] = None
    github_repo_name: Optional[str] = None
    github_repo_url: Optional[str] = None
    live_preview_url: Optional[str] = None
    demo_type: Optional[str] = None
    file_count: int = 0
    total_size: int = 0
    download_enabled: bool = True


class TemplateFilesResponse(BaseModel):
    template_id: int
    storage_type: str
    files: list[str]


class PreviewUrlResponse(BaseModel):
    template_id: int
    live_preview_url: Optional[str] = None
    storage_url: Optional[str] = None


class SignUrlResponse(BaseModel):
    url: str


class DownloadLink(BaseModel):
    path: str
    url: str


class DownloadLinksResponse(BaseModel):
    template_id: int
    template_title: str
    files: list[DownloadLink]
    download_count: int
