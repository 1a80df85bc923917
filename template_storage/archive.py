"""
ZIP extraction and validation for template uploads.

Archives are unpacked in memory. Validation never stops at the first problem:
the caller always receives every violation in one pass, and an archive with
any error must not reach a storage backend.
"""

from __future__ import annotations

import io
import logging
import re
import zipfile
import zlib
from typing import Iterable, Optional

from template_storage.exceptions import ArchiveExtractionError, InvalidArchiveError
from template_storage.types import ExtractedFile, ValidationResult

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 100 * 1024 * 1024
MAX_TOTAL_SIZE = 500 * 1024 * 1024
MAX_FILE_COUNT = 1000

ALLOWED_EXTENSIONS = (
    # Web files
    ".html", ".htm", ".css", ".js", ".jsx", ".ts", ".tsx", ".json", ".xml",
    # Images
    ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico",
    # Fonts
    ".woff", ".woff2", ".ttf", ".eot", ".otf",
    # Documents
    ".md", ".txt", ".pdf",
    # Config files
    ".yml", ".yaml", ".toml", ".env.example",
)

# Matched against the whole base name rather than its suffix.
ALLOWED_FILENAMES = (
    "package.json", "package-lock.json", "yarn.lock", "pnpm-lock.yaml",
    "vite.config.js", "vite.config.ts", "webpack.config.js", "tsconfig.json",
    ".gitignore", "readme.md", "license",
)

BLOCKED_PATTERNS = (
    re.compile(r"\.exe$", re.IGNORECASE),
    re.compile(r"\.dll$", re.IGNORECASE),
    re.compile(r"\.bat$", re.IGNORECASE),
    re.compile(r"\.sh$", re.IGNORECASE),
    re.compile(r"\.cmd$", re.IGNORECASE),
    # Raw .env files; .env.example stays allowed.
    re.compile(r"\.env$", re.IGNORECASE),
    re.compile(r"node_modules", re.IGNORECASE),
    re.compile(r"\.git/", re.IGNORECASE),
)

SKIPPED_PREFIXES = ("__MACOSX/", ".")


def _normalize_path(raw_path: str) -> str:
    return raw_path.replace("\\", "/")


def _is_skipped(path: str) -> bool:
    # Parent-directory entries are kept so validation can reject them.
    if path.split("/", 1)[0] == "..":
        return False
    return path.startswith(SKIPPED_PREFIXES)


def _is_unsafe_path(path: str) -> bool:
    if path.startswith("/") or re.match(r"^[A-Za-z]:", path):
        return True
    return ".." in path.split("/")


def _too_many_files(count: int) -> str:
    return f"Too many files. Maximum {MAX_FILE_COUNT} files allowed, found {count}"


def _file_too_large(name: str) -> str:
    return f'File "{name}" exceeds maximum size of {MAX_FILE_SIZE // (1024 * 1024)}MB'


def _total_too_large() -> str:
    return f"Total size exceeds maximum of {MAX_TOTAL_SIZE // (1024 * 1024)}MB"


def _check_declared_sizes(entries: list[tuple[zipfile.ZipInfo, str]]) -> None:
    """
    Reject an archive whose central directory already breaks the size limits.

    Reads never inflate past an entry's declared size, so this bounds the
    memory extraction can use.
    """
    errors: list[str] = []
    if len(entries) > MAX_FILE_COUNT:
        errors.append(_too_many_files(len(entries)))
    total_size = 0
    for info, path in entries:
        total_size += info.file_size
        if info.file_size > MAX_FILE_SIZE:
            errors.append(_file_too_large(path.rsplit("/", 1)[-1] or path))
    if total_size > MAX_TOTAL_SIZE:
        errors.append(_total_too_large())
    if errors:
        logger.warning("Archive rejected before extraction: %s", "; ".join(errors))
        raise InvalidArchiveError(
            ValidationResult(
                valid=False,
                errors=errors,
                total_size=total_size,
                file_count=len(entries),
            )
        )


def extract_archive(data: bytes) -> list[ExtractedFile]:
    """
    Unpack every regular file of a ZIP archive held in memory.

    Directory entries, macOS resource forks and dot-entries at the archive root
    are left out. Raises ArchiveExtractionError for unreadable archives and
    InvalidArchiveError, before reading any content, when the declared sizes or
    the entry count exceed the limits.
    """
    extracted: list[ExtractedFile] = []
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            entries = []
            for info in archive.infolist():
                path = _normalize_path(info.filename)
                if info.is_dir() or path.endswith("/") or _is_skipped(path):
                    continue
                entries.append((info, path))
            _check_declared_sizes(entries)

            for info, path in entries:
                content = archive.read(info)
                extracted.append(
                    ExtractedFile(
                        name=path.rsplit("/", 1)[-1] or path,
                        path=path,
                        content=content,
                        size=len(content),
                    )
                )
    except (zipfile.BadZipFile, zlib.error, RuntimeError, NotImplementedError, EOFError) as exc:
        raise ArchiveExtractionError(f"Failed to extract ZIP file: {exc}") from exc

    logger.info("Extracted %d files from archive", len(extracted))
    return extracted


def _has_allowed_extension(name: str) -> bool:
    lowered = name.lower()
    if lowered in ALLOWED_FILENAMES:
        return True
    return lowered.endswith(ALLOWED_EXTENSIONS)


def _is_blocked(path: str) -> bool:
    return any(pattern.search(path) for pattern in BLOCKED_PATTERNS)


def validate_archive(files: list[ExtractedFile]) -> ValidationResult:
    errors: list[str] = []
    warnings: list[str] = []
    total_size = 0

    if not files:
        errors.append("ZIP file is empty")

    if len(files) > MAX_FILE_COUNT:
        errors.append(_too_many_files(len(files)))

    for file in files:
        total_size += file.size

        if file.size > MAX_FILE_SIZE:
            errors.append(_file_too_large(file.name))

        if _is_unsafe_path(file.path):
            errors.append(f'File "{file.path}" has an unsafe path')

        if _is_blocked(file.path):
            errors.append(f'File "{file.path}" is not allowed for security reasons')

        if not _has_allowed_extension(file.name):
            warnings.append(
                f'File "{file.name}" has an uncommon extension and may not be supported'
            )

    if total_size > MAX_TOTAL_SIZE:
        errors.append(_total_too_large())

    return ValidationResult(
        valid=not errors,
        errors=errors,
        warnings=warnings,
        total_size=total_size,
        file_count=len(files),
    )


def find_index_file(files: Iterable[ExtractedFile]) -> Optional[str]:
    """Return the path of index.html, preferring one at the archive root."""
    candidates = [f for f in files if f.name.lower() == "index.html"]
    for candidate in candidates:
        if "/" not in candidate.path:
            return candidate.path
    return candidates[0].path if candidates else None


def format_file_size(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    exponent = 0
    while size >= 1024 ** (exponent + 1) and exponent < len(units) - 1:
        exponent += 1
    value = round(size / (1024 ** exponent), 2)
    if value == int(value):
        value = int(value)
    return f"{value} {units[exponent]}"
