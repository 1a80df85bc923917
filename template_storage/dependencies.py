"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import logging
from typing import Optional

from template_storage.adapter import StorageAdapter
from template_storage.bucket import BucketBackend, BucketClient, InMemoryBucketClient, S3BucketClient
from template_storage.config import (
    Settings,
    bucket_config_from_settings,
    get_settings,
    repository_config_from_settings,
)
from template_storage.db import DbClient, InMemoryDbClient, SqlDbClient
from template_storage.repository import (
    GitHubRepositoryClient,
    InMemoryRepositoryClient,
    RepositoryBackend,
)
from template_storage.service import TemplatePackagingService

logger = logging.getLogger(__name__)

_db_client: DbClient | None = None
_storage_adapter: StorageAdapter | None = None
_packaging_service: TemplatePackagingService | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so job/status state persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = SqlDbClient(settings.database_url)
    return _db_client


def _bucket_client(settings: Settings) -> BucketClient:
    if settings.use_in_memory_backends:
        return InMemoryBucketClient()
    if not (settings.aws_access_key_id and settings.aws_secret_access_key):
        logger.warning("Bucket credentials not set; template files are kept in memory")
        return InMemoryBucketClient()
    return S3BucketClient(
        bucket=settings.storage_bucket,
        region=settings.storage_region or "",
        endpoint=settings.storage_endpoint,
        access_key_id=settings.aws_access_key_id,
        secret_access_key=settings.aws_secret_access_key,
    )


def _repository_backend() -> Optional[RepositoryBackend]:
    settings = get_settings()
    config = repository_config_from_settings(settings)
    if settings.use_in_memory_backends:
        return RepositoryBackend(InMemoryRepositoryClient(owner=config.owner), config)
    if not config.token:
        logger.info("GITHUB_TOKEN not set; repository storage disabled")
        return None
    client = GitHubRepositoryClient(
        config.token,
        config.owner,
        api_url=config.api_url,
        owner_is_org=config.owner_is_org,
    )
    return RepositoryBackend(client, config)


def get_storage_adapter() -> StorageAdapter:
    global _storage_adapter
    if _storage_adapter:
        return _storage_adapter

    settings = get_settings()
    bucket = BucketBackend(_bucket_client(settings), bucket_config_from_settings(settings))
    _storage_adapter = StorageAdapter(bucket=bucket, repository=_repository_backend())
    return _storage_adapter


def get_packaging_service() -> TemplatePackagingService:
    """
    Singleton service; it owns the cancel tokens of running upload jobs.
    """
    global _packaging_service
    if _packaging_service:
        return _packaging_service
    _packaging_service = TemplatePackagingService(get_db_client(), get_storage_adapter())
    return _packaging_service
