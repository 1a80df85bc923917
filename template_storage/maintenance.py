"""
One-time migration of legacy bucket layouts.

Templates uploaded before ``storage_path`` existed are probed once and the
located prefix is written back, so downloads read the recorded path directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from template_storage.bucket import BucketClient
from template_storage.db import DbClient
from template_storage.downloader import locate_bucket_files
from template_storage.types import StorageType, TemplateRecord

logger = logging.getLogger(__name__)


@dataclass
class BackfillReport:
    scanned: int = 0
    updated: list[tuple[int, str]] = field(default_factory=list)
    unresolved: list[int] = field(default_factory=list)
    empty: list[int] = field(default_factory=list)


def needs_storage_path(template: TemplateRecord) -> bool:
    storage_type = StorageType.parse(template.storage_type)
    return storage_type in (None, StorageType.BUCKET) and not template.storage_path


def backfill_storage_paths(
    db: DbClient,
    client: BucketClient,
    *,
    dry_run: bool = False,
    limit: Optional[int] = None,
) -> BackfillReport:
    report = BackfillReport()
    for template in db.list_templates():
        if not needs_storage_path(template):
            continue
        if limit is not None and report.scanned >= limit:
            break
        report.scanned += 1

        location = locate_bucket_files(client, template.id)
        if location.record_path:
            report.updated.append((template.id, location.record_path))
            if not dry_run:
                db.update_template(template.id, storage_path=location.record_path)
            logger.info("Template %s -> %s", template.id, location.record_path)
        elif location.files:
            # Root or multi-folder layouts have no single prefix to record.
            report.unresolved.append(template.id)
            logger.warning(
                "Template %s: %d files found but no single folder to record",
                template.id,
                len(location.files),
            )
        else:
            report.empty.append(template.id)
            logger.warning("Template %s: no stored files found", template.id)
    return report
