"""
Configuration and settings for the template storage service.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings, loaded once at startup."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", frozen=True
    )

    api_prefix: str = Field(default="/api")

    # Database holding template, purchase and upload job rows
    database_url: Optional[str] = Field(default=None, validation_alias="DATABASE_URL")

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, validation_alias="TEMPLATE_STORAGE_USE_IN_MEMORY_BACKENDS"
    )

    # S3-compatible object storage
    storage_endpoint: Optional[str] = Field(
        default=None, validation_alias="STORAGE_ENDPOINT"
    )
    storage_region: Optional[str] = Field(default=None, validation_alias="STORAGE_REGION")
    storage_bucket: str = Field(default="template-files", validation_alias="STORAGE_BUCKET")
    storage_public_base_url: Optional[str] = Field(
        default=None, validation_alias="STORAGE_PUBLIC_BASE_URL"
    )
    aws_access_key_id: Optional[str] = Field(
        default=None, validation_alias="AWS_ACCESS_KEY_ID"
    )
    aws_secret_access_key: Optional[str] = Field(
        default=None, validation_alias="AWS_SECRET_ACCESS_KEY"
    )
    signed_url_ttl_seconds: int = Field(
        default=3600, validation_alias="SIGNED_URL_TTL_SECONDS"
    )

    # Upload pool
    upload_batch_size: int = Field(default=10, validation_alias="UPLOAD_BATCH_SIZE")
    upload_workers: int = Field(default=4, validation_alias="UPLOAD_WORKERS")

    # Source repository hosting (GitHub)
    github_token: Optional[str] = Field(default=None, validation_alias="GITHUB_TOKEN")
    github_owner: str = Field(
        default="dexlanka-templates", validation_alias="GITHUB_OWNER"
    )
    github_owner_is_org: bool = Field(
        default=True, validation_alias="GITHUB_OWNER_IS_ORG"
    )
    github_repo_prefix: str = Field(
        default="template-", validation_alias="GITHUB_REPO_PREFIX"
    )
    github_branch: str = Field(default="main", validation_alias="GITHUB_BRANCH")
    github_api_url: str = Field(
        default="https://api.github.com", validation_alias="GITHUB_API_URL"
    )
    github_upload_workers: int = Field(default=1, validation_alias="GITHUB_UPLOAD_WORKERS")


@dataclass(frozen=True)
class BucketConfig:
    """Explicit configuration handed to the bucket backend."""

    bucket: str = "template-files"
    public_base_url: str = "https://example.test/storage/v1/object/public/template-files"
    signed_url_ttl_seconds: int = 3600
    batch_size: int = 10
    workers: int = 4


@dataclass(frozen=True)
class RepositoryConfig:
    """Explicit configuration handed to the repository backend."""

    token: Optional[str]
    owner: str = "dexlanka-templates"
    repo_prefix: str = "template-"
    branch: str = "main"
    owner_is_org: bool = True
    api_url: str = "https://api.github.com"
    # Concurrent commits to one branch are rejected by the contents API.
    workers: int = 1


def bucket_config_from_settings(settings: Settings) -> BucketConfig:
    public_base = settings.storage_public_base_url
    if not public_base and settings.storage_endpoint:
        public_base = f"{settings.storage_endpoint.rstrip('/')}/{settings.storage_bucket}"
    elif not public_base:
        region = settings.storage_region or "us-east-1"
        public_base = f"https://{settings.storage_bucket}.s3.{region}.amazonaws.com"
    return BucketConfig(
        bucket=settings.storage_bucket,
        public_base_url=public_base.rstrip("/"),
        signed_url_ttl_seconds=settings.signed_url_ttl_seconds,
        batch_size=settings.upload_batch_size,
        workers=settings.upload_workers,
    )


def repository_config_from_settings(settings: Settings) -> RepositoryConfig:
    return RepositoryConfig(
        token=settings.github_token,
        owner=settings.github_owner,
        repo_prefix=settings.github_repo_prefix,
        branch=settings.github_branch,
        owner_is_org=settings.github_owner_is_org,
        api_url=settings.github_api_url.rstrip("/"),
        workers=settings.github_upload_workers,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
