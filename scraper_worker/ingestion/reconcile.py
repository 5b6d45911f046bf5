"""
Content store / ledger reconciliation.

Two maintenance operations that bring the ledger back in line with what
the content store actually holds:

- reconcile_storage: register blobs that exist in the store but have no
  Asset row (e.g. an upload whose metadata step never completed, or files
  copied into the bucket by hand). Keys are parsed with the storage key
  grammar; the Segment is created when missing and the Asset is attached
  with the role implied by its filename.
- backfill_content_types: fill in the content type of Asset rows that
  were registered without one, from the extension of their key.

Both support a dry run that only reports what would change.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict, List, Optional

from scraper_worker.db.ledger import MetadataLedger
from scraper_worker.db.models import SegmentKind, UploadSource
from scraper_worker.errors import WorkerError
from scraper_worker.logger import log_function
from scraper_worker.storage.base import BaseStorage
from scraper_worker.storage.keys import (
    MANIFEST_FILENAMES,
    RAW_PREFIX,
    classify_filename,
    format_ordinal,
    parse_storage_key,
)
from scraper_worker.utils.content_type import detect_content_type, guess_content_type_from_key
from scraper_worker.utils.hash import digest


logger = logging.getLogger("scraper_worker.reconcile")


@dataclass
class ReconcileReport:
    prefix: str
    dry_run: bool = False
    scanned: int = 0
    manifests: int = 0
    unparsed: int = 0
    already_registered: int = 0
    registered: int = 0
    failed: int = 0
    registered_keys: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)


@dataclass
class BackfillReport:
    dry_run: bool = False
    found: int = 0
    updated: int = 0
    by_content_type: Dict[str, int] = field(default_factory=dict)


@log_function(logger_name="scraper_worker.reconcile", log_args=True, log_execution_time=True)
def reconcile_storage(
    storage: BaseStorage,
    ledger: MetadataLedger,
    prefix: str = f"{RAW_PREFIX}/",
    dry_run: bool = False,
    bucket: Optional[str] = None,
) -> ReconcileReport:
    """
    Register every stored blob under ``prefix`` that has no Asset row.

    Args:
        storage: Content store to walk
        ledger: Metadata ledger to complete
        prefix: Key prefix to reconcile (e.g. ``raw/manhwa/<workId>/``)
        dry_run: Only count the blobs that would be registered
        bucket: Bucket recorded on new Asset rows

    Returns:
        ReconcileReport
    """
    report = ReconcileReport(prefix=prefix, dry_run=dry_run)
    keys = storage.list(prefix)
    known = ledger.list_asset_keys(prefix)
    logger.info(f"Reconciling {len(keys)} stored objects under {prefix!r} ({len(known)} registered)")

    for key in keys:
        report.scanned += 1
        if PurePosixPath(key).name in MANIFEST_FILENAMES:
            report.manifests += 1
            continue

        parsed = parse_storage_key(key)
        if parsed is None:
            logger.debug(f"Skipping key outside the segment layout: {key}")
            report.unparsed += 1
            continue

        if key in known:
            report.already_registered += 1
            continue

        if dry_run:
            logger.info(f"[DRY RUN] Would register {key}")
            report.registered += 1
            report.registered_keys.append(key)
            continue

        try:
            _register_blob(storage, ledger, parsed, bucket)
        except WorkerError as e:
            logger.error(f"Failed to register {key}: {e}")
            report.failed += 1
            report.failures[key] = str(e)
            continue

        report.registered += 1
        report.registered_keys.append(key)

    logger.info(
        f"Reconciliation of {prefix!r} done: {report.registered} registered, "
        f"{report.already_registered} already known, {report.failed} failed"
    )
    return report


def _register_blob(storage: BaseStorage, ledger: MetadataLedger, parsed, bucket: Optional[str]) -> str:
    edition = ledger.get_edition(parsed.edition_id)
    if edition is None:
        raise WorkerError(f"Edition {parsed.edition_id} does not exist")
    if edition.work_id != parsed.work_id:
        raise WorkerError(
            f"Edition {parsed.edition_id} belongs to work {edition.work_id}, not {parsed.work_id}"
        )

    segment_kind = SegmentKind(parsed.segment_kind)
    segment = ledger.find_segment(edition.id, segment_kind, parsed.ordinal)
    if segment is not None:
        segment_id = segment.id
    else:
        logger.warning(
            f"Segment {segment_kind.value} {format_ordinal(parsed.ordinal)} of edition "
            f"{edition.id} not found, creating it"
        )
        segment_id = ledger.upsert_segment(
            edition.id,
            segment_kind,
            parsed.ordinal,
            title=f"{segment_kind.value.capitalize()} {format_ordinal(parsed.ordinal)}",
        )

    data = storage.get(parsed.key)
    sha256, byte_length = digest(data)
    asset_kind, role = classify_filename(parsed.filename)

    asset_id = ledger.register_asset(
        parsed.key,
        asset_kind,
        byte_length=byte_length,
        sha256=sha256,
        content_type=detect_content_type(data, parsed.filename),
        upload_source=UploadSource.IMPORT,
        bucket=bucket,
    )
    ledger.attach_asset(segment_id, asset_id, role)
    logger.info(f"Registered {parsed.key} as asset {asset_id} of segment {segment_id}")
    return asset_id


@log_function(logger_name="scraper_worker.reconcile", log_execution_time=True)
def backfill_content_types(
    ledger: MetadataLedger, dry_run: bool = False, limit: Optional[int] = None
) -> BackfillReport:
    """
    Assign a content type to Asset rows that have none.

    Args:
        ledger: Metadata ledger
        dry_run: Only report the content types that would be assigned
        limit: Maximum number of rows to process

    Returns:
        BackfillReport with the distribution of assigned content types
    """
    report = BackfillReport(dry_run=dry_run)
    assets = ledger.list_assets_missing_content_type(limit=limit)
    report.found = len(assets)
    if not assets:
        logger.info("All assets already have a content type")
        return report

    counts = Counter()
    for asset in assets:
        content_type = guess_content_type_from_key(asset.storage_key)
        counts[content_type] += 1
        if dry_run:
            logger.debug(f"[DRY RUN] {asset.storage_key} -> {content_type}")
            continue
        ledger.update_asset_content_type(asset.id, content_type)
        report.updated += 1

    report.by_content_type = dict(counts.most_common())
    logger.info(
        f"Content types {'to assign' if dry_run else 'assigned'} for {report.found} assets: "
        f"{report.by_content_type}"
    )
    return report
