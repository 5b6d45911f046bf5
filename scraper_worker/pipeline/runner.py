"""
Job Runner: polls the ledger for queued Jobs and dispatches them by kind.

Jobs are taken oldest first (FIFO) and claimed with a conditional update,
so several runners can poll the same ledger without dispatching a Job
twice. Handlers record their own terminal state; the runner only fails a
Job itself when no handler could run it (unknown kind or invalid input).

Modes:
    run_once()     one poll cycle, for cron-style scheduling
    run_forever()  poll until SIGINT/SIGTERM or stop(); an in-flight Job
                   always completes before the loop exits
"""

import logging
import signal
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from scraper_worker.db.ledger import JobRecord, MetadataLedger
from scraper_worker.db.models import JobKind, JobStatus
from scraper_worker.errors import IngestionError, JobInputError
from .jobs import FetchSubtitlesParams, ScrapeSegmentParams, ScrapeWorkParams, parse_job_input
from .segment import SegmentIngestor
from .subtitles import SubtitleDownloader
from .work import WorkDiscoverer


logger = logging.getLogger("scraper_worker.runner")


@dataclass
class RunnerStats:
    polls: int = 0
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0


class JobRunner:
    def __init__(
        self,
        ledger: MetadataLedger,
        segment_ingestor: SegmentIngestor,
        work_discoverer: WorkDiscoverer,
        poll_interval: float = 5.0,
        batch_size: int = 1,
        sleep: Optional[Callable[[float], None]] = None,
        subtitle_downloader: Optional[SubtitleDownloader] = None,
    ):
        self.ledger = ledger
        self.segment_ingestor = segment_ingestor
        self.work_discoverer = work_discoverer
        # Optional: needs OpenSubtitles credentials
        self.subtitle_downloader = subtitle_downloader
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.stats = RunnerStats()
        self._stop_event = threading.Event()
        # Waiting on the stop event lets stop() cut an idle sleep short
        self.sleep = sleep or self._stop_event.wait

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set()

    def stop(self) -> None:
        """Ask the loop to exit after the current Job."""
        self._stop_event.set()

    def poll_once(self) -> int:
        """
        Fetch up to ``batch_size`` queued Jobs and process them in order.

        Returns:
            int: Number of queued Jobs found

        Raises:
            LedgerError: If the queue cannot be read
        """
        self.stats.polls += 1
        jobs = self.ledger.get_queued_jobs(self.batch_size)
        for job in jobs:
            self.process_job(job)
        return len(jobs)

    def process_job(self, job: JobRecord) -> Optional[JobStatus]:
        """Claim and run one Job; returns its terminal status, or None if not claimed."""
        if not self.ledger.claim_job(job.id):
            return None

        self.stats.dispatched += 1
        logger.info(f"Processing job {job.id} ({job.kind}, attempt {job.attempt + 1})")

        try:
            params = parse_job_input(job.kind, job.input)
            if params.kind == JobKind.FETCH_SUBTITLES and self.subtitle_downloader is None:
                raise JobInputError("Subtitle jobs need OPENSUBTITLES_API_KEY to be configured")
        except JobInputError as e:
            logger.error(f"Job {job.id} has no runnable handler: {e}")
            self.ledger.finish_job(job.id, JobStatus.FAILED, error=str(e))
            self.stats.failed += 1
            return JobStatus.FAILED

        try:
            if params.kind == JobKind.SCRAPE_WORK:
                self._run_work(params, job.id)
            elif params.kind == JobKind.FETCH_SUBTITLES:
                self._run_subtitles(params, job.id)
            else:
                self._run_segment(params, job.id)
        except IngestionError as e:
            logger.error(f"Job {job.id} failed: {e}")
            self.stats.failed += 1
            return JobStatus.FAILED
        except Exception as e:
            logger.error(f"Job {job.id} raised an unexpected error: {e}", exc_info=True)
            self.stats.failed += 1
            return JobStatus.FAILED

        self.stats.succeeded += 1
        return JobStatus.SUCCESS

    def _run_work(self, params: ScrapeWorkParams, job_id: str) -> None:
        self.work_discoverer.discover(params, job_id=job_id)

    def _run_segment(self, params: ScrapeSegmentParams, job_id: str) -> None:
        self.segment_ingestor.ingest(params, job_id=job_id)

    def _run_subtitles(self, params: FetchSubtitlesParams, job_id: str) -> None:
        self.subtitle_downloader.run(params, job_id=job_id)

    def run_once(self) -> int:
        """Single poll cycle."""
        logger.info("Running one poll cycle")
        return self.poll_once()

    def run_forever(self, install_signal_handlers: bool = True) -> RunnerStats:
        """
        Poll until stopped.

        An empty queue or a failed poll (e.g. unreachable database) waits
        ``poll_interval`` seconds before the next cycle.
        """
        previous_handlers = {}
        if install_signal_handlers and threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                previous_handlers[signum] = signal.signal(signum, self._handle_signal)

        logger.info(f"Job runner started (poll interval {self.poll_interval}s)")
        try:
            while self.running:
                try:
                    found = self.poll_once()
                except Exception as e:
                    logger.error(f"Error during job polling: {e}", exc_info=True)
                    self.sleep(self.poll_interval)
                    continue

                if found == 0 and self.running:
                    self.sleep(self.poll_interval)
        finally:
            for signum, handler in previous_handlers.items():
                signal.signal(signum, handler)

        logger.info(
            f"Job runner stopped: {self.stats.dispatched} jobs, {self.stats.succeeded} succeeded, "
            f"{self.stats.failed} failed"
        )
        return self.stats

    def _handle_signal(self, signum, frame) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, stopping job runner")
        self.stop()
