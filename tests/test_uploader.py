import hashlib
from unittest.mock import Mock

from scraper_worker.db import AssetKind, AssetRole, UploadSource
from scraper_worker.errors import LedgerError, StorageError
from scraper_worker.pipeline.uploader import PHASE_REGISTER, PHASE_UPLOAD, AssetUploader
from scraper_worker.utils.retry import RetryPolicy
from tests.fakes import no_sleep


KEY = "raw/manhwa/W/E/chapter-5/page-001.jpg"
JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 300


def test_upload_stores_registers_and_attaches(uploader, storage, ledger, edition) -> None:
    _, _, segment_id = edition

    result = uploader.upload(JPEG, KEY, AssetKind.RAW_IMAGE, segment_id, AssetRole.PAGE)

    assert result.ok
    assert result.stored
    assert result.attempts == 1
    assert result.content_type == "image/jpeg"
    assert result.sha256 == hashlib.sha256(JPEG).hexdigest()
    assert storage.get(KEY) == JPEG

    asset = ledger.get_asset_by_key(KEY)
    assert asset.id == result.asset_id
    assert asset.byte_length == len(JPEG)
    assert asset.sha256 == result.sha256
    assert asset.upload_source == UploadSource.PIPELINE
    assert ledger.count_segment_assets(segment_id) == 1


def test_upload_twice_leaves_one_asset_and_one_link(uploader, ledger, edition) -> None:
    _, _, segment_id = edition

    first = uploader.upload(JPEG, KEY, AssetKind.RAW_IMAGE, segment_id, AssetRole.PAGE)
    second = uploader.upload(JPEG, KEY, AssetKind.RAW_IMAGE, segment_id, AssetRole.PAGE)

    assert first.ok and second.ok
    assert first.asset_id == second.asset_id
    assert ledger.list_asset_keys() == {KEY}
    assert ledger.count_segment_assets(segment_id) == 1


def test_text_payload_is_stored_utf8(uploader, storage, edition) -> None:
    _, _, segment_id = edition
    key = "raw/manhwa/W/E/chapter-5/text-01.txt"

    result = uploader.upload("Un texte accentué", key, AssetKind.CLEANED_TEXT, segment_id, AssetRole.TEXT)

    assert result.ok
    assert result.content_type == "text/plain"
    assert storage.get(key) == "Un texte accentué".encode("utf-8")
    assert result.byte_length == len("Un texte accentué".encode("utf-8"))


def test_register_failure_never_reuploads(storage, ledger, edition) -> None:
    _, _, segment_id = edition
    storage_spy = Mock(wraps=storage)
    failing_ledger = Mock(wraps=ledger)
    failing_ledger.register_asset.side_effect = LedgerError("database is locked")
    waits = []
    uploader = AssetUploader(
        storage_spy, failing_ledger, policy=RetryPolicy(max_attempts=5, base_delay=2.0), sleep=waits.append
    )

    result = uploader.upload(JPEG, KEY, AssetKind.RAW_IMAGE, segment_id, AssetRole.PAGE)

    assert not result.ok
    assert result.stored
    assert result.phase == PHASE_REGISTER
    assert result.attempts == 5
    assert storage_spy.put.call_count == 1
    assert failing_ledger.register_asset.call_count == 5
    assert waits == [2.0, 4.0, 8.0, 16.0]
    assert ledger.get_asset_by_key(KEY) is None


def test_register_recovers_after_transient_failure(storage, ledger, edition) -> None:
    _, _, segment_id = edition
    storage_spy = Mock(wraps=storage)
    flaky_ledger = Mock(wraps=ledger)
    flaky_ledger.register_asset.side_effect = _fail_then(ledger.register_asset, LedgerError("locked"))
    uploader = AssetUploader(storage_spy, flaky_ledger, policy=RetryPolicy(base_delay=0.0), sleep=no_sleep)

    result = uploader.upload(JPEG, KEY, AssetKind.RAW_IMAGE, segment_id, AssetRole.PAGE)

    assert result.ok
    assert result.attempts == 2
    assert storage_spy.put.call_count == 1
    assert ledger.count_segment_assets(segment_id) == 1


def test_upload_failure_exhausts_budget(ledger, edition) -> None:
    _, _, segment_id = edition
    broken_storage = Mock()
    broken_storage.put.side_effect = StorageError("503 Slow Down")
    uploader = AssetUploader(broken_storage, ledger, policy=RetryPolicy(max_attempts=3, base_delay=0.0), sleep=no_sleep)

    result = uploader.upload(JPEG, KEY, AssetKind.RAW_IMAGE, segment_id, AssetRole.PAGE)

    assert not result.ok
    assert not result.stored
    assert result.phase == PHASE_UPLOAD
    assert result.asset_id is None
    assert broken_storage.put.call_count == 3
    assert "Slow Down" in result.error
    assert ledger.get_asset_by_key(KEY) is None


def test_from_config(worker_config, storage, ledger) -> None:
    uploader = AssetUploader.from_config(worker_config, storage, ledger)
    assert uploader.policy.max_attempts == worker_config.upload_max_attempts
    assert uploader.provider == "local"
    assert uploader.bucket is None


def _fail_then(fn, error):
    calls = {"n": 0}

    def side_effect(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise error
        return fn(*args, **kwargs)

    return side_effect
