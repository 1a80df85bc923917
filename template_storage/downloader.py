"""
Locate a template's stored files and rebuild a ZIP archive from them.

Older uploads left bucket templates in different layouts: files at the
template root, under ``{id}/source``, or inside one extra nested folder. When
a template has no recorded ``storage_path`` the locator probes those layouts
in order; once a layout is found its path can be recorded so later downloads
skip the probing.
"""

from __future__ import annotations

import io
import logging
import re
import zipfile
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Optional

from template_storage.backends import StorageBackend
from template_storage.exceptions import NoFilesFoundError
from template_storage.pool import ProgressTracker
from template_storage.types import (
    EMPTY_FOLDER_PLACEHOLDER,
    ProgressCallback,
    StorageFolder,
    StoredObject,
    TemplateRecord,
)

if TYPE_CHECKING:
    from template_storage.bucket import BucketClient

logger = logging.getLogger(__name__)

STANDARD_FOLDERS = {folder.value for folder in StorageFolder}
UNSAFE_NAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


@dataclass
class BucketLocation:
    prefix: str
    files: list[tuple[str, str]] = field(default_factory=list)
    probed: bool = False
    record_path: Optional[str] = None


def _is_real_file(entry: StoredObject) -> bool:
    basename = entry.name.rsplit("/", 1)[-1]
    return entry.id is not None and basename != EMPTY_FOLDER_PLACEHOLDER


def _collect(client: "BucketClient", prefix: str, relative_prefix: str = "") -> list[tuple[str, str]]:
    return [
        (f"{relative_prefix}{entry.name}", f"{prefix}/{entry.name}")
        for entry in client.list_recursive(prefix)
        if _is_real_file(entry)
    ]


def locate_bucket_files(
    client: "BucketClient",
    template_id: int,
    storage_path: Optional[str] = None,
    folder: StorageFolder = StorageFolder.SOURCE,
) -> BucketLocation:
    """
    Find the files of a bucket-backed template.

    A recorded storage_path is authoritative. Without one, probe the template
    root, then ``{id}/{folder}``, then the subfolders found along the way.
    """
    if storage_path:
        prefix = storage_path.rstrip("/")
        return BucketLocation(prefix=prefix, files=_collect(client, prefix), record_path=prefix)

    root = str(template_id)
    root_entries = client.list_folder(root)
    if any(_is_real_file(entry) for entry in root_entries):
        files = [
            (entry.name, f"{root}/{entry.name}")
            for entry in root_entries
            if _is_real_file(entry)
        ]
        for entry in root_entries:
            if entry.is_folder and entry.name not in STANDARD_FOLDERS:
                files.extend(_collect(client, f"{root}/{entry.name}", f"{entry.name}/"))
        logger.info("Template %s: files found at the template root", template_id)
        return BucketLocation(prefix=root, files=files, probed=True)

    source = f"{root}/{StorageFolder(folder).value}"
    source_entries = client.list_folder(source)
    if any(_is_real_file(entry) for entry in source_entries):
        logger.info("Template %s: files found under %s", template_id, source)
        return BucketLocation(
            prefix=source, files=_collect(client, source), probed=True, record_path=source
        )

    base = source
    folders = [entry.name for entry in source_entries if entry.is_folder]
    if not folders:
        base = root
        folders = [
            entry.name
            for entry in root_entries
            if entry.is_folder and entry.name not in STANDARD_FOLDERS
        ]

    files: list[tuple[str, str]] = []
    populated: list[str] = []
    for name in folders:
        found = _collect(client, f"{base}/{name}", f"{name}/")
        if found:
            populated.append(name)
            files.extend(found)

    record_path = None
    if base == source and files:
        record_path = source
    elif len(populated) == 1:
        record_path = f"{base}/{populated[0]}"
    logger.info(
        "Template %s: %d files found in %d nested folders under %s",
        template_id,
        len(files),
        len(populated),
        base,
    )
    return BucketLocation(prefix=base, files=files, probed=True, record_path=record_path)


def sanitize_folder_name(title: str) -> str:
    cleaned = UNSAFE_NAME_CHARS.sub("", title or "")
    cleaned = re.sub(r"\s+", " ", cleaned).strip(" .")
    return cleaned or "template"


def archive_filename(title: str) -> str:
    stem = re.sub(r"[^a-z0-9]", "-", title or "", flags=re.IGNORECASE).lower()
    return f"{stem or 'template'}.zip"


def build_zip(files: Iterable[tuple[str, bytes]], root_folder: str) -> bytes:
    root = sanitize_folder_name(root_folder)
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for relative_path, content in sorted(files, key=lambda item: item[0]):
            archive.writestr(f"{root}/{relative_path.lstrip('/')}", content)
    return buffer.getvalue()


@dataclass
class ReconstructedArchive:
    data: bytes
    filename: str
    file_count: int
    errors: list[str] = field(default_factory=list)
    located_path: Optional[str] = None
    probed: bool = False


def reconstruct_template_zip(
    backend: StorageBackend,
    template: TemplateRecord,
    on_progress: Optional[ProgressCallback] = None,
) -> ReconstructedArchive:
    """
    Fetch every file of a template from its backend and pack them into a ZIP.

    Individual files that fail are skipped; NoFilesFoundError is raised only
    when nothing at all could be retrieved.
    """
    tracker = ProgressTracker(on_progress)
    tracker.report(10)
    downloaded = backend.download_files(
        template,
        on_progress=lambda percent: tracker.report(30 + percent * 0.6),
    )
    if not downloaded.files:
        raise NoFilesFoundError(f"No files found for template {template.id}")

    tracker.report(90)
    data = build_zip(downloaded.files, template.title)
    tracker.report(100)
    logger.info(
        "Rebuilt archive for template %s: %d files, %d skipped",
        template.id,
        len(downloaded.files),
        len(downloaded.errors),
    )
    return ReconstructedArchive(
        data=data,
        filename=archive_filename(template.title),
        file_count=len(downloaded.files),
        errors=downloaded.errors,
        located_path=downloaded.located_path,
        probed=downloaded.probed,
    )
