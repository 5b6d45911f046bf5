#!/usr/bin/env python3
"""
CLI interface for the scraper worker.

Runs the ingestion pipeline inline or through the job queue:
    1. Discover the segments of a work page (scrape-work)
    2. Ingest one segment's images, subtitles and text (scrape-segment)
    3. Ingest every pending segment of an edition (bulk-scrape)
    4. Download the episode subtitles of an edition from OpenSubtitles
       (bulk-subtitles)
    5. Queue jobs and run the polling Job Runner (enqueue, jobs-run)
    6. Bring the ledger back in line with the content store (reconcile,
       backfill-content-types)

Usage:
    python -m scraper_worker scrape-work --url URL --media manhwa --provider asura \\
        --template wp-manga --title "Solo Leveling"
    python -m scraper_worker scrape-segment --url URL --segment-id ID --template wp-manga --download
    python -m scraper_worker bulk-scrape --edition-id ID --template wp-manga --limit 10
    python -m scraper_worker bulk-subtitles --edition-id ID --series-name "Solo Leveling" --languages en
    python -m scraper_worker enqueue segment --url URL --segment-id ID --template wp-manga
    python -m scraper_worker jobs-run --poll 5
    python -m scraper_worker reconcile --edition-id ID --dry-run
"""

import sys
import argparse
import json
from pathlib import Path
from typing import Optional

from scraper_worker.config import WorkerConfig
from scraper_worker.db import MediaKind, MetadataLedger, create_db_engine, create_session_factory, init_database
from scraper_worker.errors import ConfigError, IngestionError, WorkerError
from scraper_worker.ingestion import (
    HtmlUnitFetcher,
    OpenSubtitlesClient,
    backfill_content_types,
    list_templates,
    reconcile_storage,
)
from scraper_worker.logger import setup_logging
from scraper_worker.pipeline import (
    AssetUploader,
    BulkSegmentScraper,
    FetchSubtitlesParams,
    JobRunner,
    ScrapeSegmentParams,
    ScrapeWorkParams,
    SegmentIngestor,
    SubtitleDownloader,
    WorkDiscoverer,
    enqueue_job,
    resolve_edition,
)
from scraper_worker.storage import RAW_PREFIX, create_storage
from scraper_worker.utils.retry import RetryPolicy


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


class WorkerContext:
    """
    Components wired from one WorkerConfig.

    Each component is built on first use, so commands that only touch the
    ledger never need content-store credentials.
    """

    def __init__(self, cfg: WorkerConfig):
        self.cfg = cfg
        self._ledger = None
        self._engine = None
        self._storage = None
        self._fetcher = None
        self._subtitle_client = None

    @property
    def engine(self):
        if self._engine is None:
            if not self.cfg.database_url:
                raise ConfigError("DATABASE_URL is required")
            self._engine = create_db_engine(self.cfg.database_url)
        return self._engine

    @property
    def ledger(self) -> MetadataLedger:
        if self._ledger is None:
            self._ledger = MetadataLedger(create_session_factory(self.engine))
        return self._ledger

    @property
    def storage(self):
        if self._storage is None:
            self._storage = create_storage(self.cfg)
        return self._storage

    @property
    def fetcher(self) -> HtmlUnitFetcher:
        if self._fetcher is None:
            self._fetcher = HtmlUnitFetcher.from_config(self.cfg)
        return self._fetcher

    @property
    def subtitle_client(self) -> OpenSubtitlesClient:
        if self._subtitle_client is None:
            self._subtitle_client = OpenSubtitlesClient.from_config(self.cfg)
        return self._subtitle_client

    def store_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.cfg.upload_max_attempts,
            base_delay=self.cfg.upload_base_delay,
            max_delay=self.cfg.max_backoff,
        )

    def segment_ingestor(self) -> SegmentIngestor:
        return SegmentIngestor(
            ledger=self.ledger,
            storage=self.storage,
            fetcher=self.fetcher,
            uploader=AssetUploader.from_config(self.cfg, self.storage, self.ledger),
            rate_limit_seconds=self.cfg.rate_limit_seconds,
            templates_dir=self.cfg.templates_dir,
        )

    def work_discoverer(self) -> WorkDiscoverer:
        return WorkDiscoverer(
            ledger=self.ledger,
            storage=self.storage,
            fetcher=self.fetcher,
            store_policy=self.store_policy(),
            templates_dir=self.cfg.templates_dir,
        )

    def subtitle_downloader(self) -> SubtitleDownloader:
        return SubtitleDownloader(
            ledger=self.ledger,
            client=self.subtitle_client,
            uploader=AssetUploader.from_config(self.cfg, self.storage, self.ledger),
            segment_delay=self.cfg.subtitle_segment_delay,
        )


def print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def print_error(message: str) -> None:
    print(f"✗ Error: {message}", file=sys.stderr)


# ---------------------------------------------------------------------- #
# Commands
# ---------------------------------------------------------------------- #


def cmd_scrape_work(args: argparse.Namespace, ctx: WorkerContext) -> int:
    params = ScrapeWorkParams(
        url=args.url,
        media=MediaKind(args.media),
        provider=args.provider,
        template=args.template,
        title=args.title,
    )
    result = ctx.work_discoverer().discover(params)
    print_json({"jobId": result.job_id, **result.to_output()})
    print(f"✓ {result.segment_count} segments discovered for {args.title!r}")
    return EXIT_OK


def cmd_scrape_segment(args: argparse.Namespace, ctx: WorkerContext) -> int:
    params = ScrapeSegmentParams(
        url=args.url,
        segment_id=args.segment_id,
        template=args.template,
        download=args.download,
    )
    result = ctx.segment_ingestor().ingest(params)
    print_json({"jobId": result.job_id, **result.to_output()})
    print(f"✓ Segment {result.segment_id}: {result.success_count} stored, {result.failed_count} failed")
    return EXIT_OK


def cmd_bulk_scrape(args: argparse.Namespace, ctx: WorkerContext) -> int:
    scraper = BulkSegmentScraper(
        ledger=ctx.ledger,
        ingestor=ctx.segment_ingestor(),
        segment_delay=ctx.cfg.bulk_segment_delay,
    )
    result = scraper.run(
        args.template, edition_id=args.edition_id, work_id=args.work_id, limit=args.limit
    )
    print_json(result.to_dict())
    return EXIT_FAILURE if result.failed else EXIT_OK


def _subtitle_params(args: argparse.Namespace, ctx: WorkerContext) -> FetchSubtitlesParams:
    return FetchSubtitlesParams(
        edition_id=resolve_edition(ctx.ledger, args.edition_id, args.work_id),
        series_name=args.series_name,
        languages=args.languages or ctx.cfg.subtitle_languages,
        limit=args.limit,
    )


def cmd_bulk_subtitles(args: argparse.Namespace, ctx: WorkerContext) -> int:
    result = ctx.subtitle_downloader().run(_subtitle_params(args, ctx))
    print_json({"jobId": result.job_id, **result.to_output()})
    print(
        f"✓ {result.succeeded} subtitles stored, {result.failed} failed, {result.skipped} skipped"
        + (" (download quota exhausted)" if result.quota_exhausted else "")
    )
    return EXIT_FAILURE if result.failed else EXIT_OK


def cmd_enqueue(args: argparse.Namespace, ctx: WorkerContext) -> int:
    if args.kind == "work":
        params = ScrapeWorkParams(
            url=args.url,
            media=MediaKind(args.media),
            provider=args.provider,
            template=args.template,
            title=args.title,
        )
    elif args.kind == "subtitles":
        params = _subtitle_params(args, ctx)
    else:
        params = ScrapeSegmentParams(
            url=args.url,
            segment_id=args.segment_id,
            template=args.template,
            download=args.download,
        )
    job_id = enqueue_job(ctx.ledger, params)
    print(f"✓ Queued {params.kind.value} job {job_id}")
    return EXIT_OK


def cmd_jobs_run(args: argparse.Namespace, ctx: WorkerContext) -> int:
    runner = JobRunner(
        ledger=ctx.ledger,
        segment_ingestor=ctx.segment_ingestor(),
        work_discoverer=ctx.work_discoverer(),
        poll_interval=args.poll if args.poll is not None else ctx.cfg.poll_interval,
        batch_size=args.batch_size,
        subtitle_downloader=ctx.subtitle_downloader() if ctx.cfg.opensubtitles_api_key else None,
    )
    if args.once:
        found = runner.run_once()
        print(f"✓ {found} queued jobs found, {runner.stats.succeeded} succeeded, {runner.stats.failed} failed")
        return EXIT_FAILURE if runner.stats.failed else EXIT_OK

    runner.run_forever()
    return EXIT_OK


def cmd_reconcile(args: argparse.Namespace, ctx: WorkerContext) -> int:
    prefix = args.prefix
    if args.edition_id:
        edition = ctx.ledger.get_edition(args.edition_id)
        if edition is None:
            print_error(f"Edition not found: {args.edition_id}")
            return EXIT_FAILURE
        prefix = f"{RAW_PREFIX}/{edition.media.value}/{edition.work_id}/{edition.id}/"

    report = reconcile_storage(
        ctx.storage,
        ctx.ledger,
        prefix=prefix or f"{RAW_PREFIX}/",
        dry_run=args.dry_run,
        bucket=ctx.cfg.r2_bucket if ctx.cfg.storage_backend == "cloud" else None,
    )
    print_json(
        {
            "prefix": report.prefix,
            "dryRun": report.dry_run,
            "scanned": report.scanned,
            "manifests": report.manifests,
            "unparsed": report.unparsed,
            "alreadyRegistered": report.already_registered,
            "registered": report.registered,
            "failed": report.failed,
            "failures": report.failures,
        }
    )
    return EXIT_FAILURE if report.failed else EXIT_OK


def cmd_backfill_content_types(args: argparse.Namespace, ctx: WorkerContext) -> int:
    report = backfill_content_types(ctx.ledger, dry_run=args.dry_run, limit=args.limit)
    print_json(
        {
            "dryRun": report.dry_run,
            "found": report.found,
            "updated": report.updated,
            "byContentType": report.by_content_type,
        }
    )
    return EXIT_OK


def cmd_templates(args: argparse.Namespace, ctx: WorkerContext) -> int:
    names = list_templates(ctx.cfg.templates_dir)
    if not names:
        print("No templates found")
        return EXIT_OK
    for name in names:
        print(f"  - {name}")
    return EXIT_OK


def cmd_validate(args: argparse.Namespace, ctx: WorkerContext) -> int:
    errors = ctx.cfg.validate()
    if errors:
        print("✗ Invalid configuration:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        return EXIT_FAILURE
    print("✓ Configuration is valid")
    return EXIT_OK


def cmd_init_db(args: argparse.Namespace, ctx: WorkerContext) -> int:
    init_database(ctx.engine)
    print("✓ Database tables created")
    return EXIT_OK


COMMANDS = {
    "scrape-work": cmd_scrape_work,
    "scrape-segment": cmd_scrape_segment,
    "bulk-scrape": cmd_bulk_scrape,
    "bulk-subtitles": cmd_bulk_subtitles,
    "enqueue": cmd_enqueue,
    "jobs-run": cmd_jobs_run,
    "reconcile": cmd_reconcile,
    "backfill-content-types": cmd_backfill_content_types,
    "templates": cmd_templates,
    "validate": cmd_validate,
    "init-db": cmd_init_db,
}


# ---------------------------------------------------------------------- #
# Argument parsing
# ---------------------------------------------------------------------- #


def _add_work_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--url", required=True, help="Work page URL (segment list)")
    parser.add_argument(
        "--media",
        required=True,
        choices=[m.value for m in MediaKind],
        help="Media kind of the edition",
    )
    parser.add_argument("--provider", required=True, help="Provider (source site) identifier")
    parser.add_argument("--template", required=True, help="Extraction template name")
    parser.add_argument("--title", required=True, help="Work title (upsert key)")


def _add_segment_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--url", required=True, help="Segment page URL")
    parser.add_argument("--segment-id", required=True, metavar="ID", help="Segment id in the ledger")
    parser.add_argument("--template", required=True, help="Extraction template name")
    parser.add_argument(
        "--download",
        action="store_true",
        help="Download and store the assets (default: only store the manifest)",
    )


def _add_subtitle_arguments(parser: argparse.ArgumentParser) -> None:
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--edition-id", metavar="ID", help="Edition to process")
    target.add_argument("--work-id", metavar="ID", help="Work whose single edition is processed")
    parser.add_argument("--series-name", required=True, help="Series name used in the subtitle search")
    parser.add_argument(
        "--languages", help="Comma-separated language codes (default: )"
    )
    parser.add_argument("--limit", type=int, metavar="N", help="Process at most N segments")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scraper-worker",
        description="Scraper Worker - Discovers, fetches and stores the assets of works hosted on third-party sites",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exit codes:
  0    Success
  1    Job failure or invalid configuration
  130  Interrupted

Notes:
  - Configuration is read from the environment (and .env when present)
  - Logs written to $LOG_DIR/worker.log (default: logs/worker.log)
  - Inline commands create their own job; enqueue leaves it for jobs-run
        """,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging output",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    work = subparsers.add_parser("scrape-work", help="Discover the segments of a work page")
    _add_work_arguments(work)

    segment = subparsers.add_parser("scrape-segment", help="Ingest the assets of one segment")
    _add_segment_arguments(segment)

    bulk = subparsers.add_parser("bulk-scrape", help="Ingest every pending segment of an edition")
    target = bulk.add_mutually_exclusive_group(required=True)
    target.add_argument("--edition-id", metavar="ID", help="Edition to process")
    target.add_argument("--work-id", metavar="ID", help="Work whose single edition is processed")
    bulk.add_argument("--template", required=True, help="Extraction template name")
    bulk.add_argument("--limit", type=int, metavar="N", help="Process at most N segments")

    subtitles = subparsers.add_parser(
        "bulk-subtitles", help="Download OpenSubtitles files for the episodes of an edition"
    )
    _add_subtitle_arguments(subtitles)

    enqueue = subparsers.add_parser("enqueue", help="Queue a job for the Job Runner")
    enqueue_kinds = enqueue.add_subparsers(dest="kind", metavar="KIND")
    enqueue_kinds.required = True
    _add_work_arguments(enqueue_kinds.add_parser("work", help="Queue a scrape:work job"))
    _add_segment_arguments(enqueue_kinds.add_parser("segment", help="Queue a scrape:segment job"))
    _add_subtitle_arguments(enqueue_kinds.add_parser("subtitles", help="Queue a subtitles:edition job"))

    jobs_run = subparsers.add_parser("jobs-run", help="Poll and run queued jobs")
    jobs_run.add_argument(
        "--poll",
        type=float,
        metavar="S",
        help="Seconds between polls of an empty queue (default: $POLL_INTERVAL)",
    )
    jobs_run.add_argument("--once", action="store_true", help="Run a single poll cycle and exit")
    jobs_run.add_argument(
        "--batch-size", type=int, default=1, metavar="N", help="Jobs fetched per poll (default: 1)"
    )

    reconcile = subparsers.add_parser(
        "reconcile", help="Register stored blobs that have no asset row"
    )
    scope = reconcile.add_mutually_exclusive_group()
    scope.add_argument("--prefix", help=f"Key prefix to walk (default: {RAW_PREFIX}/)")
    scope.add_argument("--edition-id", metavar="ID", help="Reconcile the keys of one edition")
    reconcile.add_argument("--dry-run", action="store_true", help="Report without registering")

    backfill = subparsers.add_parser(
        "backfill-content-types", help="Assign content types to assets that have none"
    )
    backfill.add_argument("--dry-run", action="store_true", help="Report without updating")
    backfill.add_argument("--limit", type=int, metavar="N", help="Process at most N assets")

    subparsers.add_parser("templates", help="List the available extraction templates")
    subparsers.add_parser("validate", help="Validate the configuration")
    subparsers.add_parser("init-db", help="Create the ledger tables")

    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the worker CLI."""
    args = build_parser().parse_args(argv)

    try:
        cfg = WorkerConfig.from_env()
    except ConfigError as e:
        print_error(str(e))
        return EXIT_FAILURE

    logger = setup_logging(
        logger_name="scraper_worker",
        log_file=str(Path(cfg.log_dir) / "worker.log"),
        verbose=args.verbose,
    )

    if args.command not in ("validate", "templates", "init-db", "backfill-content-types"):
        errors = cfg.validate()
        if errors:
            for error in errors:
                print_error(error)
            print("Run 'scraper-worker validate' for details", file=sys.stderr)
            return EXIT_FAILURE

    if args.command == "bulk-subtitles":
        errors = cfg.validate_subtitles()
        if errors:
            for error in errors:
                print_error(error)
            return EXIT_FAILURE

    logger.info(f"Command {args.command} started")
    ctx = WorkerContext(cfg)
    try:
        code = COMMANDS[args.command](args, ctx)
    except KeyboardInterrupt:
        logger.warning(f"Command {args.command} interrupted")
        print("\n✗ Interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED
    except IngestionError as e:
        logger.error(f"Command {args.command} failed: {e}")
        job = f" (job {e.job_id})" if e.job_id else ""
        print(f"\n✗ JOB FAILED{job}: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except WorkerError as e:
        logger.error(f"Command {args.command} failed: {e}")
        print_error(str(e))
        return EXIT_FAILURE

    logger.info(f"Command {args.command} finished with exit code {code}")
    return code


if __name__ == "__main__":
    sys.exit(main())
