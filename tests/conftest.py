from pathlib import Path

import pytest

from scraper_worker.config import WorkerConfig
from scraper_worker.db import MediaKind, MetadataLedger, SegmentKind, create_db_engine, create_session_factory, init_database
from scraper_worker.pipeline.uploader import AssetUploader
from scraper_worker.storage import LocalStorage
from scraper_worker.utils.retry import RetryPolicy
from tests.fakes import no_sleep


@pytest.fixture()
def ledger() -> MetadataLedger:
    engine = create_db_engine("sqlite://")
    init_database(engine)
    yield MetadataLedger(create_session_factory(engine))
    engine.dispose()


@pytest.fixture()
def storage(tmp_path: Path) -> LocalStorage:
    return LocalStorage(str(tmp_path / "store"))


@pytest.fixture()
def fast_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture()
def uploader(storage, ledger, fast_policy) -> AssetUploader:
    return AssetUploader(storage, ledger, policy=fast_policy, provider="local", sleep=no_sleep)


@pytest.fixture()
def worker_config(tmp_path: Path) -> WorkerConfig:
    return WorkerConfig(
        database_url="sqlite://",
        storage_backend="local",
        local_storage_dir=str(tmp_path / "store"),
        rate_limit_ms=0,
        fetch_base_delay=0.0,
        upload_base_delay=0.0,
        poll_interval=0.01,
        bulk_segment_delay=0.0,
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture()
def edition(ledger):
    """A manhwa edition with chapter 5; returns (work_id, edition_id, segment_id)."""
    work_id = ledger.upsert_work("Solo Leveling")
    edition_id = ledger.upsert_edition(
        work_id, MediaKind.MANHWA, "asura", canonical_url="https://example.com/manga/solo-leveling/"
    )
    segment_id = ledger.upsert_segment(
        edition_id,
        SegmentKind.CHAPTER,
        5,
        title="Chapter 5",
        canonical_url="https://example.com/manga/solo-leveling/chapter-5/",
    )
    return work_id, edition_id, segment_id
