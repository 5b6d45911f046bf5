"""
Asset Uploader: store a payload, register it and attach it to a segment.

One call performs three dependent steps:

    upload   -> put the bytes in the content store under the storage key
    register -> insert (or reuse) the Asset row for that key
    attach   -> link the Asset to the Segment with a role

The steps run inside one retry loop. A failed attempt restarts from the top,
except that the upload is skipped once the store has confirmed it during
this call: a metadata failure never causes the blob to be written twice,
and registration/attachment are retried on their own. Register and attach
are idempotent, so retrying the whole call after a reported failure is safe.

Exhausting the retry budget returns a failed UploadResult instead of
raising, so batch callers keep going with their remaining items.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Callable, Optional, Union

from scraper_worker.db.ledger import DEFAULT_ASSET_PROVIDER, MetadataLedger
from scraper_worker.db.models import AssetKind, AssetRole, UploadSource
from scraper_worker.storage.base import BaseStorage
from scraper_worker.utils.content_type import detect_content_type
from scraper_worker.utils.hash import digest
from scraper_worker.utils.retry import RetryPolicy, retry_call


logger = logging.getLogger("scraper_worker.uploader")

PHASE_UPLOAD = "upload"
PHASE_REGISTER = "register"
PHASE_ATTACH = "attach"


@dataclass(frozen=True)
class UploadResult:
    """
    Outcome of one AssetUploader.upload() call.

    Attributes:
        ok: True when upload, registration and attachment all completed
        storage_key: Destination key
        sha256/byte_length: Fingerprint computed once for the call
        content_type: Content type the blob was stored with
        asset_id: Asset row id (set when registration succeeded)
        stored: True if the content store confirmed the put
        attempts: Number of attempts made
        phase: Phase of the last failure, None on success
        error: Text of the last failure, None on success
    """

    ok: bool
    storage_key: str
    sha256: str
    byte_length: int
    content_type: str
    asset_id: Optional[str] = None
    stored: bool = False
    attempts: int = 0
    phase: Optional[str] = None
    error: Optional[str] = None


class AssetUploader:
    def __init__(
        self,
        storage: BaseStorage,
        ledger: MetadataLedger,
        policy: Optional[RetryPolicy] = None,
        bucket: Optional[str] = None,
        provider: str = DEFAULT_ASSET_PROVIDER,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.storage = storage
        self.ledger = ledger
        self.policy = policy or RetryPolicy(max_attempts=5, base_delay=2.0)
        self.bucket = bucket
        self.provider = provider
        self.sleep = sleep

    @classmethod
    def from_config(cls, cfg, storage: BaseStorage, ledger: MetadataLedger) -> "AssetUploader":
        local = cfg.storage_backend == "local"
        return cls(
            storage=storage,
            ledger=ledger,
            policy=RetryPolicy(
                max_attempts=cfg.upload_max_attempts,
                base_delay=cfg.upload_base_delay,
                max_delay=cfg.max_backoff,
            ),
            bucket=None if local else cfg.r2_bucket,
            provider="local" if local else DEFAULT_ASSET_PROVIDER,
        )

    def upload(
        self,
        data: Union[bytes, str],
        storage_key: str,
        asset_kind: AssetKind,
        segment_id: str,
        role: AssetRole,
        filename: Optional[str] = None,
        upload_source: UploadSource = UploadSource.PIPELINE,
    ) -> UploadResult:
        """
        Store ``data`` under ``storage_key``, register it and attach it to a segment.

        Args:
            data: Payload bytes (text is stored UTF-8 encoded)
            storage_key: Destination key in the content store
            asset_kind: Kind recorded on the Asset row
            segment_id: Segment to attach the Asset to
            role: Role of the Asset within the Segment
            filename: Name used for extension-based content-type detection
                (defaults to the last component of the key)
            upload_source: Provenance recorded on a newly created Asset row

        Returns:
            UploadResult; ``ok`` is False after the retry budget is exhausted
        """
        sha256, byte_length = digest(data)
        body = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        content_type = detect_content_type(body, filename or PurePosixPath(storage_key).name)

        state = {"uploaded": False, "attempts": 0, "phase": None, "asset_id": None}

        def attempt() -> str:
            state["attempts"] += 1
            try:
                if not state["uploaded"]:
                    state["phase"] = PHASE_UPLOAD
                    self.storage.put(storage_key, body, content_type)
                    state["uploaded"] = True

                state["phase"] = PHASE_REGISTER
                asset_id = self.ledger.register_asset(
                    storage_key,
                    asset_kind,
                    byte_length=byte_length,
                    sha256=sha256,
                    content_type=content_type,
                    upload_source=upload_source,
                    bucket=self.bucket,
                    provider=self.provider,
                )
                state["asset_id"] = asset_id

                state["phase"] = PHASE_ATTACH
                self.ledger.attach_asset(segment_id, asset_id, role)
                return asset_id
            except Exception as e:
                logger.warning(
                    f"{state['phase']} step failed for {storage_key} "
                    f"(attempt {state['attempts']}/{self.policy.max_attempts}): {e}",
                    extra={
                        "storage_key": storage_key,
                        "phase": state["phase"],
                        "attempt": state["attempts"],
                        "uploaded": state["uploaded"],
                    },
                )
                raise

        try:
            asset_id = retry_call(
                attempt, policy=self.policy, operation=f"store_asset:{storage_key}", sleep=self.sleep
            )
        except Exception as e:
            logger.error(
                f"Giving up on {storage_key} after {state['attempts']} attempts "
                f"({state['phase']} failed): {e}"
            )
            return UploadResult(
                ok=False,
                storage_key=storage_key,
                sha256=sha256,
                byte_length=byte_length,
                content_type=content_type,
                asset_id=state["asset_id"],
                stored=state["uploaded"],
                attempts=state["attempts"],
                phase=state["phase"],
                error=str(e),
            )

        logger.info(f"Stored {storage_key} ({byte_length} bytes, {content_type}) as asset {asset_id}")
        return UploadResult(
            ok=True,
            storage_key=storage_key,
            sha256=sha256,
            byte_length=byte_length,
            content_type=content_type,
            asset_id=asset_id,
            stored=True,
            attempts=state["attempts"],
        )
