import logging
from typing import Optional, Union

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from scraper_worker.errors import ConfigError, StorageError
from .base import BaseStorage


logger = logging.getLogger("scraper_worker.storage")

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class CloudStorage(BaseStorage):
    """A client for an S3-compatible object store (Cloudflare R2).

    botocore's own retries are disabled: every call is wrapped by the
    worker's retry executor, so a single attempt here is a single attempt
    in the worker's accounting.
    """

    def __init__(
        self,
        endpoint: str,
        access_key_id: str,
        secret_access_key: str,
        bucket_name: str,
        timeout: float = 60.0,
        client=None,
    ):
        if not bucket_name:
            raise ConfigError("A bucket name is required for cloud storage")

        self.bucket_name = bucket_name
        self.endpoint = endpoint

        if client is None:
            if not endpoint or not access_key_id or not secret_access_key:
                raise ConfigError(
                    "Missing required settings for cloud storage client."
                    " Please ensure R2_ENDPOINT, R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY are set."
                )
            session = boto3.session.Session()
            client = session.client(
                "s3",
                region_name="auto",
                endpoint_url=endpoint,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                config=BotoConfig(
                    connect_timeout=timeout,
                    read_timeout=timeout,
                    retries={"max_attempts": 1, "mode": "standard"},
                ),
            )
        self.client = client

    @classmethod
    def from_config(cls, cfg) -> "CloudStorage":
        """Build the client from a WorkerConfig."""
        return cls(
            endpoint=cfg.r2_endpoint,
            access_key_id=cfg.r2_access_key_id,
            secret_access_key=cfg.r2_secret_access_key,
            bucket_name=cfg.r2_bucket,
            timeout=cfg.request_timeout,
        )

    def put(
        self,
        key: str,
        body: Union[bytes, str],
        content_type: Optional[str] = None,
    ) -> str:
        data = self._to_bytes(body)
        try:
            self.client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type or "application/octet-stream",
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to upload {key} to cloud storage: {e}")
            raise StorageError(f"Failed to upload {key}: {e}") from e

        logger.info(f"Uploaded {key} to cloud storage ({len(data)} bytes)")
        return key

    def get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket_name, Key=key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to download {key} from cloud storage: {e}")
            raise StorageError(f"Failed to download {key}: {e}") from e

    def list(self, prefix: str = "") -> list[str]:
        keys = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
                logger.debug(f"Listed {len(keys)} objects under {prefix!r} so far")
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to list objects under {prefix!r}: {e}")
            raise StorageError(f"Failed to list objects under {prefix!r}: {e}") from e

        logger.info(f"Listed {len(keys)} objects under {prefix!r}")
        return sorted(keys)

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to delete {key} from cloud storage: {e}")
            raise StorageError(f"Failed to delete {key}: {e}") from e
        logger.info(f"Deleted {key} from cloud storage")

    def exists(self, key: str) -> bool:
        """
        Check if a key exists in cloud storage.

        Returns:
            bool: True if the object exists, False on a not-found response.

        Raises:
            StorageError: For any other error.
        """
        try:
            self.client.head_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if str(e.response.get("Error", {}).get("Code")) in NOT_FOUND_CODES:
                return False
            raise StorageError(f"Failed to check {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to check {key}: {e}") from e
        return True
