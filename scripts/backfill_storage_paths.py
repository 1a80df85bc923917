"""
Record storage_path for bucket templates stored in a legacy folder layout.

Run once after deploying; downloads then read the recorded path instead of
probing the bucket.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from template_storage.dependencies import get_db_client, get_storage_adapter
from template_storage.maintenance import backfill_storage_paths


logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Backfill template storage paths")
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Max number of templates to probe",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report the paths that would be recorded without saving",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")
    adapter = get_storage_adapter()
    if adapter.bucket is None:
        logger.error("Bucket storage is not configured")
        return 1

    report = backfill_storage_paths(
        get_db_client(),
        adapter.bucket.client,
        dry_run=args.dry_run,
        limit=args.limit,
    )
    logger.info(
        "Scanned %d templates: %d %s, %d unresolved, %d empty",
        report.scanned,
        len(report.updated),
        "would be updated" if args.dry_run else "updated",
        len(report.unresolved),
        len(report.empty),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
