"""
S3 Document Storage
═══════════════════

Async object access for uploaded PDFs (aioboto3). The pipeline reads the
original file by its stored key; cancellation cleanup deletes it.

Credentials come from the environment / instance role unless explicit keys
are configured; `s3_endpoint_url` points at LocalStack or MinIO in dev.
"""

from __future__ import annotations

import logging

import aioboto3
from botocore.exceptions import ClientError

from docsim.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_MISSING_CODES = ("NoSuchKey", "404", "NotFound")


class S3DocumentStorage:
    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        *,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        self.bucket = bucket
        self._region = region
        self._endpoint_url = endpoint_url or None
        self._session = aioboto3.Session(
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "S3DocumentStorage":
        cfg = settings or default_settings
        return cls(
            cfg.s3_bucket,
            cfg.aws_region,
            cfg.s3_endpoint_url,
            access_key_id=cfg.aws_access_key_id,
            secret_access_key=cfg.aws_secret_access_key,
        )

    def _client(self):
        return self._session.client(
            "s3", region_name=self._region, endpoint_url=self._endpoint_url,
        )

    async def get(self, path: str) -> bytes:
        """Download an object. Raises FileNotFoundError when the key is missing."""
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self.bucket, Key=path)
                body = await resp["Body"].read()
            except ClientError as exc:
                if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
                    raise FileNotFoundError(f"Object not found: {path}") from exc
                raise
        logger.debug("S3 get ok | key=%s size=%d", path, len(body))
        return body

    async def delete(self, path: str) -> None:
        """Permanently remove an object; deleting a missing key is a no-op."""
        async with self._client() as s3:
            await s3.delete_object(Bucket=self.bucket, Key=path)
        logger.info("S3 delete | bucket=%s key=%s", self.bucket, path)
