"""
Object-storage backend for template files (S3-compatible) and an in-memory double.

Keys follow ``{templateId}/{folder}/{relativePath}`` where folder is one of
source, demo or screenshots.
"""

from __future__ import annotations

import hashlib
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from template_storage.archive import find_index_file
from template_storage.backends import DownloadedFiles, FileLink
from template_storage.config import BucketConfig
from template_storage.downloader import locate_bucket_files
from template_storage.exceptions import StorageOperationError
from template_storage.mime import DEFAULT_MIME_TYPE, get_mime_type
from template_storage.pool import (
    CancelToken,
    Counter,
    ProgressTracker,
    TaskOutcome,
    run_bounded,
)
from template_storage.types import (
    EMPTY_FOLDER_PLACEHOLDER,
    ExtractedFile,
    ProgressCallback,
    StorageFolder,
    StoredObject,
    TemplateRecord,
    UploadResult,
)

logger = logging.getLogger(__name__)

LIST_LIMIT = 1000
DELETE_CHUNK = 1000


class BucketClient(Protocol):
    """Defines the object storage operations the backend needs."""

    def put_object(self, key: str, body: bytes, content_type: str) -> None:
        ...

    def get_object(self, key: str) -> bytes:
        ...

    def list_folder(self, prefix: str) -> list[StoredObject]:
        """One level below ``prefix``; folders come back with ``id=None``."""
        ...

    def list_recursive(self, prefix: str) -> list[StoredObject]:
        """Every object below ``prefix``, named by its path relative to it."""
        ...

    def remove(self, keys: list[str]) -> None:
        ...

    def presign_get(self, key: str, expires_in: int = 3600) -> str:
        ...


@dataclass
class InMemoryBucketClient:
    """Test double for bucket interactions."""

    base_url: str = "https://example.test/storage"
    stored_objects: dict = None

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}

    def put_object(self, key: str, body: bytes, content_type: str) -> None:
        self.stored_objects[key] = (bytes(body), content_type)

    def get_object(self, key: str) -> bytes:
        stored = self.stored_objects.get(key)
        if stored is None:
            raise FileNotFoundError(key)
        return stored[0]

    def content_type(self, key: str) -> Optional[str]:
        stored = self.stored_objects.get(key)
        return stored[1] if stored else None

    def _entry(self, name: str, key: str) -> StoredObject:
        body, content_type = self.stored_objects[key]
        return StoredObject(
            name=name,
            id=hashlib.md5(key.encode("utf-8")).hexdigest(),
            size=len(body),
            content_type=content_type,
        )

    def list_folder(self, prefix: str) -> list[StoredObject]:
        base = prefix.rstrip("/") + "/"
        files: dict[str, StoredObject] = {}
        folders: dict[str, StoredObject] = {}
        for key in self.stored_objects:
            if not key.startswith(base):
                continue
            remainder = key[len(base):]
            if "/" in remainder:
                folder = remainder.split("/", 1)[0]
                folders.setdefault(folder, StoredObject(name=folder))
            elif remainder:
                files[remainder] = self._entry(remainder, key)
        entries = list(files.values()) + list(folders.values())
        return sorted(entries, key=lambda entry: entry.name)[:LIST_LIMIT]

    def list_recursive(self, prefix: str) -> list[StoredObject]:
        base = prefix.rstrip("/") + "/"
        entries = [
            self._entry(key[len(base):], key)
            for key in self.stored_objects
            if key.startswith(base) and len(key) > len(base)
        ]
        return sorted(entries, key=lambda entry: entry.name)

    def remove(self, keys: list[str]) -> None:
        for key in keys:
            self.stored_objects.pop(key, None)

    def presign_get(self, key: str, expires_in: int = 3600) -> str:
        return f"{self.base_url}/{key}?op=get&expires={expires_in}"


@dataclass
class S3BucketClient:
    """
    S3-compatible bucket client (hosted storage APIs that speak the S3 protocol).
    """

    bucket: str
    region: str
    endpoint: Optional[str]
    access_key_id: str
    secret_access_key: str

    def __post_init__(self):
        # Virtual-hosted style: bucket name in the host.
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def put_object(self, key: str, body: bytes, content_type: str) -> None:
        self._client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=content_type or DEFAULT_MIME_TYPE,
            CacheControl="max-age=3600",
        )

    def get_object(self, key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                raise FileNotFoundError(key) from exc
            raise
        return response["Body"].read()

    @staticmethod
    def _to_stored_object(item: dict, name: str) -> StoredObject:
        last_modified = item.get("LastModified")
        if isinstance(last_modified, datetime):
            last_modified = last_modified.astimezone(timezone.utc).isoformat()
        return StoredObject(
            name=name,
            id=(item.get("ETag") or item["Key"]).strip('"'),
            size=item.get("Size", 0),
            last_modified=last_modified or "",
        )

    def list_folder(self, prefix: str) -> list[StoredObject]:
        base = prefix.rstrip("/") + "/"
        paginator = self._client.get_paginator("list_objects_v2")
        entries: list[StoredObject] = []
        try:
            for page in paginator.paginate(
                Bucket=self.bucket,
                Prefix=base,
                Delimiter="/",
                PaginationConfig={"MaxItems": LIST_LIMIT},
            ):
                for common in page.get("CommonPrefixes", []):
                    folder = common["Prefix"][len(base):].rstrip("/")
                    if folder:
                        entries.append(StoredObject(name=folder))
                for item in page.get("Contents", []):
                    name = item["Key"][len(base):]
                    if name:
                        entries.append(self._to_stored_object(item, name))
        except (BotoCoreError, ClientError) as exc:
            raise StorageOperationError(f"Failed to list files: {exc}") from exc
        return sorted(entries, key=lambda entry: entry.name)

    def list_recursive(self, prefix: str) -> list[StoredObject]:
        base = prefix.rstrip("/") + "/"
        paginator = self._client.get_paginator("list_objects_v2")
        entries: list[StoredObject] = []
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=base):
                for item in page.get("Contents", []):
                    name = item["Key"][len(base):]
                    if name and not name.endswith("/"):
                        entries.append(self._to_stored_object(item, name))
        except (BotoCoreError, ClientError) as exc:
            raise StorageOperationError(f"Failed to list files: {exc}") from exc
        return sorted(entries, key=lambda entry: entry.name)

    def remove(self, keys: list[str]) -> None:
        for start in range(0, len(keys), DELETE_CHUNK):
            chunk = keys[start:start + DELETE_CHUNK]
            try:
                response = self._client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": key} for key in chunk], "Quiet": True},
                )
            except (BotoCoreError, ClientError) as exc:
                raise StorageOperationError(f"Failed to delete files: {exc}") from exc
            failures = response.get("Errors") or []
            if failures:
                first = failures[0]
                raise StorageOperationError(
                    f"Failed to delete {len(failures)} files, first {first.get('Key')}: "
                    f"{first.get('Message')}"
                )

    def presign_get(self, key: str, expires_in: int = 3600) -> str:
        return self._client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )


class BucketBackend:
    """Stores template files in the bucket namespace of each template."""

    def __init__(self, client: BucketClient, config: BucketConfig):
        self.client = client
        self.config = config

    @staticmethod
    def folder_path(template_id: int, folder: StorageFolder = StorageFolder.SOURCE) -> str:
        return f"{template_id}/{StorageFolder(folder).value}"

    def object_key(
        self,
        template_id: int,
        path: str,
        folder: StorageFolder = StorageFolder.SOURCE,
    ) -> str:
        return f"{self.folder_path(template_id, folder)}/{path.lstrip('/')}"

    def upload_file(
        self,
        template_id: int,
        file: ExtractedFile,
        folder: StorageFolder = StorageFolder.SOURCE,
    ) -> str:
        key = self.object_key(template_id, file.path, folder)
        self.client.put_object(key, file.content, get_mime_type(file.name))
        return key

    def upload_files(
        self,
        template_id: int,
        files: list[ExtractedFile],
        folder: StorageFolder = StorageFolder.SOURCE,
        *,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> UploadResult:
        """
        Upload files in batches, collecting per-file failures.

        Overall progress is ``(batch / batches) * 100 + batch_progress / batches``.
        """
        result = UploadResult(
            index_file_path=find_index_file(files),
            storage_path=self.folder_path(template_id, folder),
        )
        tracker = ProgressTracker(on_progress)
        batch_size = max(1, self.config.batch_size)
        total_batches = math.ceil(len(files) / batch_size)

        for batch_index in range(total_batches):
            if cancel is not None and cancel.cancelled:
                result.cancelled = True
                break
            batch = files[batch_index * batch_size:(batch_index + 1) * batch_size]
            done_in_batch = Counter()

            def on_done(outcome: TaskOutcome[ExtractedFile]) -> None:
                batch_progress = done_in_batch.increment() / len(batch) * 100
                tracker.report(
                    (batch_index / total_batches) * 100 + batch_progress / total_batches
                )

            outcomes = run_bounded(
                batch,
                lambda file: self.upload_file(template_id, file, folder),
                workers=self.config.workers,
                cancel=cancel,
                on_done=on_done,
            )
            for outcome in outcomes:
                if outcome.skipped:
                    result.cancelled = True
                elif outcome.error is not None:
                    logger.warning(
                        "Failed to upload %s for template %s: %s",
                        outcome.item.path,
                        template_id,
                        outcome.error,
                    )
                    result.record_failure(outcome.item.path, outcome.error)
                else:
                    result.uploaded_files += 1

        if not result.cancelled:
            tracker.report(100)
        logger.info(
            "Bucket upload for template %s: %d uploaded, %d failed%s",
            template_id,
            result.uploaded_files,
            result.failed_files,
            " (cancelled)" if result.cancelled else "",
        )
        return result

    def list_folder(
        self, template_id: int, folder: StorageFolder = StorageFolder.SOURCE
    ) -> list[StoredObject]:
        entries = self.client.list_folder(self.folder_path(template_id, folder))
        return [entry for entry in entries if entry.name != EMPTY_FOLDER_PLACEHOLDER]

    def delete_file(
        self,
        template_id: int,
        path: str,
        folder: StorageFolder = StorageFolder.SOURCE,
    ) -> None:
        self.client.remove([self.object_key(template_id, path, folder)])

    def delete_prefix(self, prefix: str) -> int:
        prefix = prefix.rstrip("/")
        entries = self.client.list_recursive(prefix)
        if not entries:
            return 0
        self.client.remove([f"{prefix}/{entry.name}" for entry in entries])
        logger.info("Deleted %d objects under %s", len(entries), prefix)
        return len(entries)

    def delete_folder(self, template_id: int, folder: StorageFolder) -> int:
        return self.delete_prefix(self.folder_path(template_id, folder))

    def folder_size(
        self, template_id: int, folder: StorageFolder = StorageFolder.SOURCE
    ) -> int:
        entries = self.client.list_recursive(self.folder_path(template_id, folder))
        return sum(entry.size for entry in entries if entry.is_file)

    def has_files(self, template_id: int) -> bool:
        try:
            return any(entry.is_file for entry in self.client.list_recursive(
                self.folder_path(template_id, StorageFolder.SOURCE)
            ))
        except StorageOperationError:
            logger.exception("Could not check files for template %s", template_id)
            return False

    def file_public_url(
        self,
        template_id: int,
        path: str,
        folder: StorageFolder = StorageFolder.DEMO,
    ) -> str:
        return f"{self.config.public_base_url}/{self.object_key(template_id, path, folder)}"

    def source_prefix(self, template: TemplateRecord) -> str:
        """Prefix the template's source files live under."""
        return (template.storage_path or self.folder_path(template.id)).rstrip("/")

    def signed_url(
        self, template: TemplateRecord, path: str, expires_in: Optional[int] = None
    ) -> str:
        key = f"{self.source_prefix(template)}/{path.lstrip('/')}"
        return self.client.presign_get(
            key, expires_in=expires_in or self.config.signed_url_ttl_seconds
        )

    # StorageBackend

    def upload(
        self,
        template: TemplateRecord,
        files: list[ExtractedFile],
        *,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> UploadResult:
        return self.upload_files(
            template.id,
            files,
            StorageFolder.SOURCE,
            on_progress=on_progress,
            cancel=cancel,
        )

    def list_files(self, template: TemplateRecord) -> list[str]:
        location = locate_bucket_files(self.client, template.id, template.storage_path)
        return [relative for relative, _key in location.files]

    def delete(self, template: TemplateRecord) -> None:
        # Legacy layouts keep files outside the standard folders.
        removed = self.delete_prefix(str(template.id))
        recorded = (template.storage_path or "").rstrip("/")
        if recorded and not recorded.startswith(f"{template.id}/"):
            removed += self.delete_prefix(recorded)
        logger.info("Removed %d stored objects of template %s", removed, template.id)

    def download_files(
        self,
        template: TemplateRecord,
        *,
        on_progress: Optional[ProgressCallback] = None,
    ) -> DownloadedFiles:
        location = locate_bucket_files(self.client, template.id, template.storage_path)
        downloaded = DownloadedFiles(
            located_path=location.record_path,
            probed=location.probed,
        )
        tracker = ProgressTracker(on_progress)
        total = len(location.files)
        finished = Counter()

        def on_done(outcome: TaskOutcome[tuple[str, str]]) -> None:
            tracker.report(finished.increment() / total * 100)

        outcomes = run_bounded(
            location.files,
            lambda entry: self.client.get_object(entry[1]),
            workers=self.config.workers,
            on_done=on_done,
        )
        for outcome in outcomes:
            relative, key = outcome.item
            if outcome.error is not None:
                logger.warning("Failed to download %s: %s", key, outcome.error)
                downloaded.errors.append(f"Failed to download {relative}: {outcome.error}")
                continue
            downloaded.files.append((relative, outcome.value))
        return downloaded

    def download_links(self, template: TemplateRecord) -> list[FileLink]:
        location = locate_bucket_files(self.client, template.id, template.storage_path)
        ttl = self.config.signed_url_ttl_seconds
        return [
            FileLink(path=relative, url=self.client.presign_get(key, expires_in=ttl))
            for relative, key in location.files
        ]

    def public_url(self, template: TemplateRecord, path: str) -> str:
        return f"{self.config.public_base_url}/{self.source_prefix(template)}/{path.lstrip('/')}"

    def storage_url(self, template: TemplateRecord) -> Optional[str]:
        return None
