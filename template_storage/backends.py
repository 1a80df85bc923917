"""
The interface every storage backend implements.

The adapter talks to backends only through this protocol, so a third backend
is one new class plus one StorageType member.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

from template_storage.pool import CancelToken
from template_storage.types import (
    ExtractedFile,
    ProgressCallback,
    TemplateRecord,
    UploadResult,
)


@dataclass
class DownloadedFiles:
    """Files fetched back from a backend, keyed by their path inside the template."""

    files: list[tuple[str, bytes]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    located_path: Optional[str] = None
    probed: bool = False


@dataclass(frozen=True)
class FileLink:
    path: str
    url: str


class StorageBackend(Protocol):
    def upload(
        self,
        template: TemplateRecord,
        files: list[ExtractedFile],
        *,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> UploadResult:
        ...

    def list_files(self, template: TemplateRecord) -> list[str]:
        ...

    def delete(self, template: TemplateRecord) -> None:
        ...

    def download_files(
        self,
        template: TemplateRecord,
        *,
        on_progress: Optional[ProgressCallback] = None,
    ) -> DownloadedFiles:
        ...

    def download_links(self, template: TemplateRecord) -> list[FileLink]:
        """Direct, time-limited or public, URLs for every stored file."""
        ...

    def public_url(self, template: TemplateRecord, path: str) -> str:
        ...

    def storage_url(self, template: TemplateRecord) -> Optional[str]:
        ...
