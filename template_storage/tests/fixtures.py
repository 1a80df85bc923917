"""Builders shared by the template storage tests."""

from __future__ import annotations

import io
import zipfile
from typing import Optional

from template_storage.adapter import StorageAdapter
from template_storage.bucket import BucketBackend, InMemoryBucketClient
from template_storage.config import BucketConfig, RepositoryConfig
from template_storage.repository import InMemoryRepositoryClient, RepositoryBackend
from template_storage.types import ExtractedFile

PUBLIC_BASE = "https://cdn.example.test/template-files"


def make_zip(entries: dict) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, content in entries.items():
            if isinstance(content, str):
                content = content.encode("utf-8")
            archive.writestr(name, content)
    return buffer.getvalue()


def make_zero_filled_zip(name: str, size: int) -> bytes:
    """A small archive holding one entry of ``size`` zero bytes."""
    buffer = io.BytesIO()
    chunk = b"\0" * (1024 * 1024)
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        with archive.open(name, "w") as entry:
            remaining = size
            while remaining > 0:
                entry.write(chunk[: min(len(chunk), remaining)])
                remaining -= len(chunk)
    return buffer.getvalue()


def read_zip(data: bytes) -> dict:
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        return {name: archive.read(name) for name in archive.namelist()}


def make_file(path: str, content: bytes = b"x", size: Optional[int] = None) -> ExtractedFile:
    return ExtractedFile(
        name=path.rsplit("/", 1)[-1],
        path=path,
        content=content,
        size=len(content) if size is None else size,
    )


SITE_FILES = {
    "index.html": "<html><body>Hello</body></html>",
    "css/style.css": "body { color: red; }",
    "js/app.js": "console.log('hi');",
    "images/logo.png": b"\x89PNG\r\n\x1a\n",
}


def site_files() -> list[ExtractedFile]:
    files = []
    for path, content in SITE_FILES.items():
        data = content.encode("utf-8") if isinstance(content, str) else content
        files.append(make_file(path, data))
    return files


class FailingBucketClient(InMemoryBucketClient):
    """Rejects writes to keys ending with one of ``fail_suffixes``."""

    def __init__(self, fail_suffixes=("bad.js",)):
        super().__init__()
        self.fail_suffixes = tuple(fail_suffixes)

    def put_object(self, key: str, body: bytes, content_type: str) -> None:
        if key.endswith(self.fail_suffixes):
            raise OSError("connection reset")
        super().put_object(key, body, content_type)


def bucket_backend(client: Optional[InMemoryBucketClient] = None, **config) -> BucketBackend:
    config.setdefault("public_base_url", PUBLIC_BASE)
    return BucketBackend(client or InMemoryBucketClient(), BucketConfig(**config))


def repository_backend(
    client: Optional[InMemoryRepositoryClient] = None, **config
) -> RepositoryBackend:
    client = client or InMemoryRepositoryClient(owner="acme-templates")
    config.setdefault("owner", client.owner)
    return RepositoryBackend(client, RepositoryConfig(token=None, **config))


def build_adapter(
    bucket: Optional[BucketBackend] = None,
    repository: Optional[RepositoryBackend] = None,
    with_repository: bool = True,
) -> StorageAdapter:
    return StorageAdapter(
        bucket=bucket or bucket_backend(),
        repository=repository or (repository_backend() if with_repository else None),
    )
