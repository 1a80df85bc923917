"""
Shared enums and result types used across the storage backends and the API.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional


ProgressCallback = Callable[[int], None]


class StorageType(str, Enum):
    BUCKET = "bucket"
    REPOSITORY = "repository"

    @classmethod
    def parse(cls, value: "str | StorageType | None") -> Optional["StorageType"]:
        """Accept current values plus the names older rows were written with."""
        if value is None or value == "":
            return None
        if isinstance(value, StorageType):
            return value
        normalized = str(value).strip().lower()
        legacy = {"supabase": cls.BUCKET, "github": cls.REPOSITORY}
        if normalized in legacy:
            return legacy[normalized]
        return cls(normalized)


class StorageFolder(str, Enum):
    SOURCE = "source"
    DEMO = "demo"
    SCREENSHOTS = "screenshots"


class UploadStatus(Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class JobStatus(Enum):
    WAITING = "WAITING"
    UPLOADING = "UPLOADING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @classmethod
    def from_upload(cls, status: UploadStatus) -> "JobStatus":
        return cls(status.value)


@dataclass(frozen=True)
class ExtractedFile:
    """One archive entry held in memory."""

    name: str
    path: str
    content: bytes
    size: int


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    total_size: int = 0
    file_count: int = 0


@dataclass
class UploadResult:
    """
    Outcome of storing a batch of files.

    A run succeeds only when nothing failed and it was not cancelled; partial
    runs keep their counts so callers can report them.
    """

    uploaded_files: int = 0
    failed_files: int = 0
    errors: list[str] = field(default_factory=list)
    index_file_path: Optional[str] = None
    repository_url: Optional[str] = None
    storage_path: Optional[str] = None
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.failed_files == 0 and not self.cancelled

    @property
    def status(self) -> UploadStatus:
        if self.cancelled:
            return UploadStatus.CANCELLED
        if self.failed_files == 0:
            return UploadStatus.SUCCESS
        if self.uploaded_files > 0:
            return UploadStatus.PARTIAL
        return UploadStatus.FAILED

    def record_failure(self, path: str, error: Exception | str) -> None:
        self.failed_files += 1
        self.errors.append(f"Failed to upload {path}: {error}")


@dataclass
class StoredObject:
    """
    A bucket listing entry. Folders come back with ``id`` set to None.
    """

    name: str
    id: Optional[str] = None
    size: int = 0
    last_modified: str = ""
    content_type: Optional[str] = None

    @property
    def is_file(self) -> bool:
        return self.id is not None and self.name != EMPTY_FOLDER_PLACEHOLDER

    @property
    def is_folder(self) -> bool:
        return self.id is None and self.name != EMPTY_FOLDER_PLACEHOLDER


EMPTY_FOLDER_PLACEHOLDER = ".emptyFolderPlaceholder"


@dataclass
class TemplateRecord:
    id: int
    title: str
    storage_type: Optional[StorageType] = None
    storage_path: Optional[str] = None
    github_repo_name: Optional[str] = None
    github_repo_url: Optional[str] = None
    live_preview_url: Optional[str] = None
    demo_type: Optional[str] = None
    file_count: int = 0
    total_size: int = 0
    download_enabled: bool = True
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "storage_type": self.storage_type.value if self.storage_type else None,
            "storage_path": self.storage_path,
            "github_repo_name": self.github_repo_name,
            "github_repo_url": self.github_repo_url,
            "live_preview_url": self.live_preview_url,
            "demo_type": self.demo_type,
            "file_count": self.file_count,
            "total_size": self.total_size,
            "download_enabled": self.download_enabled,
        }


@dataclass
class PurchaseRecord:
    id: int
    template_id: int
    customer_email: str
    status: str = "pending"
    download_count: int = 0
    download_limit: Optional[int] = None
    last_downloaded_at: Optional[float] = None

    @property
    def limit_reached(self) -> bool:
        return (
            self.download_limit is not None
            and self.download_count >= self.download_limit
        )


@dataclass
class UploadJobRecord:
    job_id: str
    template_id: int
    storage_type: StorageType
    status: JobStatus = JobStatus.WAITING
    stage: str = "WAITING"
    progress_percent: float = 0.0
    uploaded_files: int = 0
    failed_files: int = 0
    errors: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "template_id": self.template_id,
            "storage_type": self.storage_type.value,
            "status": self.status.name,
            "stage": self.stage,
            "progress_percent": self.progress_percent,
            "uploaded_files": self.uploaded_files,
            "failed_files": self.failed_files,
            "errors": list(self.errors),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
