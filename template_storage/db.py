"""
Database abstraction for templates, purchases and upload jobs, with an
in-memory implementation for development and tests.
"""

from __future__ import annotations

import itertools
import threading
import time
import uuid
from dataclasses import replace
from typing import Dict, Optional, Protocol

from sqlalchemy import JSON, Boolean, Column, Float, Integer, String, create_engine, or_, select
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from template_storage.exceptions import TemplateNotFoundError
from template_storage.types import (
    JobStatus,
    PurchaseRecord,
    StorageType,
    TemplateRecord,
    UploadJobRecord,
)

TEMPLATE_FIELDS = {
    "title",
    "storage_type",
    "storage_path",
    "github_repo_name",
    "github_repo_url",
    "live_preview_url",
    "demo_type",
    "file_count",
    "total_size",
    "download_enabled",
}


def _check_fields(changes: dict) -> None:
    unknown = set(changes) - TEMPLATE_FIELDS
    if unknown:
        raise ValueError(f"Unknown template fields: {', '.join(sorted(unknown))}")


class DbClient(Protocol):
    """Interface for database access."""

    def create_template(self, title: str, **fields) -> TemplateRecord:
        ...

    def get_template(self, template_id: int) -> Optional[TemplateRecord]:
        ...

    def update_template(self, template_id: int, **changes) -> TemplateRecord:
        """Set only the given columns; raises TemplateNotFoundError."""
        ...

    def list_templates(self, limit: Optional[int] = None) -> list[TemplateRecord]:
        ...

    def create_purchase(
        self,
        template_id: int,
        customer_email: str,
        *,
        status: str = "completed",
        download_limit: Optional[int] = None,
    ) -> PurchaseRecord:
        ...

    def get_purchase(self, purchase_id: int) -> Optional[PurchaseRecord]:
        ...

    def record_download(self, purchase_id: int) -> Optional[PurchaseRecord]:
        """Count one download; None when the purchase is missing or at its limit."""
        ...

    def create_upload_job(
        self, template_id: int, storage_type: StorageType
    ) -> UploadJobRecord:
        ...

    def get_job(self, job_id: str) -> Optional[UploadJobRecord]:
        ...

    def update_job_progress(
        self,
        job_id: str,
        *,
        status: Optional[JobStatus] = None,
        stage: Optional[str] = None,
        progress_percent: Optional[float] = None,
        uploaded_files: Optional[int] = None,
        failed_files: Optional[int] = None,
        errors: Optional[list[str]] = None,
    ) -> None:
        ...


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.templates: Dict[int, TemplateRecord] = {}
        self.purchases: Dict[int, PurchaseRecord] = {}
        self.jobs: Dict[str, UploadJobRecord] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.templates.clear()
            self.purchases.clear()
            self.jobs.clear()
            self._ids = itertools.count(1)

    def create_template(self, title: str, **fields) -> TemplateRecord:
        _check_fields(fields)
        if "storage_type" in fields:
            fields["storage_type"] = StorageType.parse(fields["storage_type"])
        with self._lock:
            record = TemplateRecord(id=next(self._ids), title=title, **fields)
            self.templates[record.id] = record
            return replace(record)

    def get_template(self, template_id: int) -> Optional[TemplateRecord]:
        record = self.templates.get(template_id)
        return replace(record) if record else None

    def update_template(self, template_id: int, **changes) -> TemplateRecord:
        _check_fields(changes)
        if "storage_type" in changes:
            changes["storage_type"] = StorageType.parse(changes["storage_type"])
        with self._lock:
            record = self.templates.get(template_id)
            if record is None:
                raise TemplateNotFoundError(f"Template {template_id} not found")
            updated = replace(record, updated_at=time.time(), **changes)
            self.templates[template_id] = updated
            return replace(updated)

    def list_templates(self, limit: Optional[int] = None) -> list[TemplateRecord]:
        records = [replace(record) for record in sorted(self.templates.values(), key=lambda r: r.id)]
        return records[:limit] if limit is not None else records

    def create_purchase(
        self,
        template_id: int,
        customer_email: str,
        *,
        status: str = "completed",
        download_limit: Optional[int] = None,
    ) -> PurchaseRecord:
        with self._lock:
            record = PurchaseRecord(
                id=next(self._ids),
                template_id=template_id,
                customer_email=customer_email,
                status=status,
                download_limit=download_limit,
            )
            self.purchases[record.id] = record
            return replace(record)

    def get_purchase(self, purchase_id: int) -> Optional[PurchaseRecord]:
        record = self.purchases.get(purchase_id)
        return replace(record) if record else None

    def record_download(self, purchase_id: int) -> Optional[PurchaseRecord]:
        with self._lock:
            record = self.purchases.get(purchase_id)
            if record is None or record.limit_reached:
                return None
            record.download_count += 1
            record.last_downloaded_at = time.time()
            return replace(record)

    def create_upload_job(
        self, template_id: int, storage_type: StorageType
    ) -> UploadJobRecord:
        record = UploadJobRecord(
            job_id=uuid.uuid4().hex,
            template_id=template_id,
            storage_type=storage_type,
        )
        self.jobs[record.job_id] = record
        return replace(record, errors=list(record.errors))

    def get_job(self, job_id: str) -> Optional[UploadJobRecord]:
        job = self.jobs.get(job_id)
        return replace(job, errors=list(job.errors)) if job else None

    def update_job_progress(
        self,
        job_id: str,
        *,
        status: Optional[JobStatus] = None,
        stage: Optional[str] = None,
        progress_percent: Optional[float] = None,
        uploaded_files: Optional[int] = None,
        failed_files: Optional[int] = None,
        errors: Optional[list[str]] = None,
    ) -> None:
        with self._lock:
            job = self.jobs.get(job_id)
            if not job:
                return
            if status:
                job.status = status
            if stage:
                job.stage = stage
            if progress_percent is not None:
                job.progress_percent = progress_percent
            if uploaded_files is not None:
                job.uploaded_files = uploaded_files
            if failed_files is not None:
                job.failed_files = failed_files
            if errors is not None:
                job.errors = list(errors)
            job.updated_at = time.time()


class SqlDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    @staticmethod
    def _to_template(row: "TemplateRow") -> TemplateRecord:
        return TemplateRecord(
            id=row.id,
            title=row.title,
            storage_type=StorageType.parse(row.storage_type),
            storage_path=row.storage_path,
            github_repo_name=row.github_repo_name,
            github_repo_url=row.github_repo_url,
            live_preview_url=row.live_preview_url,
            demo_type=row.demo_type,
            file_count=row.file_count or 0,
            total_size=row.total_size or 0,
            download_enabled=bool(row.download_enabled),
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_purchase(row: "PurchaseRow") -> PurchaseRecord:
        return PurchaseRecord(
            id=row.id,
            template_id=row.template_id,
            customer_email=row.customer_email,
            status=row.status,
            download_count=row.download_count or 0,
            download_limit=row.download_limit,
            last_downloaded_at=row.last_downloaded_at,
        )

    @staticmethod
    def _to_job(row: "UploadJobRow") -> UploadJobRecord:
        return UploadJobRecord(
            job_id=row.job_id,
            template_id=row.template_id,
            storage_type=StorageType.parse(row.storage_type),
            status=JobStatus(row.status),
            stage=row.stage,
            progress_percent=row.progress_percent,
            uploaded_files=row.uploaded_files,
            failed_files=row.failed_files,
            errors=list(row.errors or []),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _column_values(fields: dict) -> dict:
        values = dict(fields)
        if "storage_type" in values:
            parsed = StorageType.parse(values["storage_type"])
            values["storage_type"] = parsed.value if parsed else None
        return values

    def create_template(self, title: str, **fields) -> TemplateRecord:
        _check_fields(fields)
        with self.Session() as session:
            row = TemplateRow(title=title, updated_at=time.time(), **self._column_values(fields))
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_template(row)

    def get_template(self, template_id: int) -> Optional[TemplateRecord]:
        with self.Session() as session:
            row = session.get(TemplateRow, template_id)
            return self._to_template(row) if row else None

    def update_template(self, template_id: int, **changes) -> TemplateRecord:
        _check_fields(changes)
        with self.Session() as session:
            row = session.get(TemplateRow, template_id)
            if not row:
                raise TemplateNotFoundError(f"Template {template_id} not found")
            for name, value in self._column_values(changes).items():
                setattr(row, name, value)
            row.updated_at = time.time()
            session.commit()
            session.refresh(row)
            return self._to_template(row)

    def list_templates(self, limit: Optional[int] = None) -> list[TemplateRecord]:
        with self.Session() as session:
            stmt = select(TemplateRow).order_by(TemplateRow.id.asc())
            if limit is not None:
                stmt = stmt.limit(limit)
            return [self._to_template(row) for row in session.execute(stmt).scalars()]

    def create_purchase(
        self,
        template_id: int,
        customer_email: str,
        *,
        status: str = "completed",
        download_limit: Optional[int] = None,
    ) -> PurchaseRecord:
        with self.Session() as session:
            row = PurchaseRow(
                template_id=template_id,
                customer_email=customer_email,
                status=status,
                download_count=0,
                download_limit=download_limit,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_purchase(row)

    def get_purchase(self, purchase_id: int) -> Optional[PurchaseRecord]:
        with self.Session() as session:
            row = session.get(PurchaseRow, purchase_id)
            return self._to_purchase(row) if row else None

    def record_download(self, purchase_id: int) -> Optional[PurchaseRecord]:
        now = time.time()
        with self.Session() as session:
            updated = (
                session.query(PurchaseRow)
                .filter(
                    PurchaseRow.id == purchase_id,
                    or_(
                        PurchaseRow.download_limit == None,
                        PurchaseRow.download_count < PurchaseRow.download_limit,
                    ),
                )
                .update(
                    {
                        PurchaseRow.download_count: PurchaseRow.download_count + 1,
                        PurchaseRow.last_downloaded_at: now,
                    },
                    synchronize_session=False,
                )
            )
            session.commit()
            if not updated:
                return None
            row = session.get(PurchaseRow, purchase_id)
            return self._to_purchase(row)

    def create_upload_job(
        self, template_id: int, storage_type: StorageType
    ) -> UploadJobRecord:
        now = time.time()
        with self.Session() as session:
            row = UploadJobRow(
                job_id=uuid.uuid4().hex,
                template_id=template_id,
                storage_type=StorageType(storage_type).value,
                status=JobStatus.WAITING.value,
                stage="WAITING",
                progress_percent=0.0,
                uploaded_files=0,
                failed_files=0,
                errors=[],
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_job(row)

    def get_job(self, job_id: str) -> Optional[UploadJobRecord]:
        with self.Session() as session:
            row = session.get(UploadJobRow, job_id)
            if not row:
                return None
            return self._to_job(row)

    def update_job_progress(
        self,
        job_id: str,
        *,
        status: Optional[JobStatus] = None,
        stage: Optional[str] = None,
        progress_percent: Optional[float] = None,
        uploaded_files: Optional[int] = None,
        failed_files: Optional[int] = None,
        errors: Optional[list[str]] = None,
    ) -> None:
        with self.Session() as session:
            job = session.get(UploadJobRow, job_id)
            if not job:
                return
            if status:
                job.status = status.value
            if stage:
                job.stage = stage
            if progress_percent is not None:
                job.progress_percent = progress_percent
            if uploaded_files is not None:
                job.uploaded_files = uploaded_files
            if failed_files is not None:
                job.failed_files = failed_files
            if errors is not None:
                job.errors = list(errors)
            job.updated_at = time.time()
            session.commit()


Base = declarative_base()


class TemplateRow(Base):
    __tablename__ = "templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False)
    storage_type = Column(String, nullable=True, index=True)
    storage_path = Column(String, nullable=True)
    github_repo_name = Column(String, nullable=True)
    github_repo_url = Column(String, nullable=True)
    live_preview_url = Column(String, nullable=True)
    demo_type = Column(String, nullable=True)
    file_count = Column(Integer, nullable=False, default=0)
    total_size = Column(Integer, nullable=False, default=0)
    download_enabled = Column(Boolean, nullable=False, default=True)
    updated_at = Column(Float, nullable=False)


class PurchaseRow(Base):
    __tablename__ = "purchases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_id = Column(Integer, nullable=False, index=True)
    customer_email = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending")
    download_count = Column(Integer, nullable=False, default=0)
    download_limit = Column(Integer, nullable=True)
    last_downloaded_at = Column(Float, nullable=True)


class UploadJobRow(Base):
    __tablename__ = "upload_jobs"

    job_id = Column(String, primary_key=True)
    template_id = Column(Integer, nullable=False, index=True)
    storage_type = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)
    stage = Column(String, nullable=False, default="WAITING")
    progress_percent = Column(Float, nullable=False, default=0.0)
    uploaded_files = Column(Integer, nullable=False, default=0)
    failed_files = Column(Integer, nullable=False, default=0)
    errors = Column(JSON, nullable=False, default=list)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
