"""
Cloudflare R2 (S3-compatible) file store.
Uses boto3 for S3-compatible operations; implements the same
upload/delete contract as the provider Files API so the file lifecycle
manager can stage media there instead.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import boto3
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError

from noder.config import EngineConfig
from noder.errors import CleanupError, ConfigurationError, UploadError

logger = logging.getLogger(__name__)


def create_r2_client() -> BaseClient:
    """Build a boto3 S3 client for the configured R2 endpoint."""
    endpoint_url = EngineConfig.R2_ENDPOINT
    access_key_id = EngineConfig.R2_ACCESS_KEY_ID
    secret_access_key = EngineConfig.R2_SECRET_ACCESS_KEY

    if not endpoint_url:
        raise ConfigurationError("R2_ENDPOINT environment variable is required")
    if not access_key_id:
        raise ConfigurationError("R2_ACCESS_KEY_ID environment variable is required")
    if not secret_access_key:
        raise ConfigurationError("R2_SECRET_ACCESS_KEY environment variable is required")

    return boto3.client(
        "s3",
        endpoint_url=endpoint_url,
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        region_name="auto",
    )


class R2FileStore:
    """Stages workflow media in an R2 bucket and hands out presigned GET URLs."""

    def __init__(
        self,
        client: Optional[BaseClient] = None,
        bucket: Optional[str] = None,
        url_expiry_seconds: Optional[int] = None,
        prefix: str = "workflow-uploads",
    ):
        self._client = client
        self.bucket = bucket or EngineConfig.R2_BUCKET
        self.url_expiry_seconds = url_expiry_seconds or EngineConfig.R2_URL_EXPIRY_SECONDS
        self.prefix = prefix.strip("/")

    @property
    def client(self) -> BaseClient:
        if self._client is None:
            self._client = create_r2_client()
        return self._client

    async def upload_file(self, file_path: str, filename: str, content_type: str) -> dict[str, Any]:
        key = f"{self.prefix}/{uuid.uuid4().hex}/{filename}"

        def _upload() -> tuple[str, int]:
            with open(file_path, "rb") as fh:
                body = fh.read()
            self.client.put_object(Bucket=self.bucket, Key=key, Body=body, ContentType=content_type)
            url = self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.url_expiry_seconds,
            )
            return url, len(body)

        try:
            url, size = await asyncio.to_thread(_upload)
        except (BotoCoreError, ClientError, OSError) as e:
            raise UploadError(f"Failed to upload {filename} to R2: {e}") from e

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.url_expiry_seconds)
        logger.info("Uploaded %s to r2://%s/%s", filename, self.bucket, key)
        return {
            "id": key,
            "urls": {"get": url},
            "content_type": content_type,
            "size": size,
            "expires_at": expires_at.isoformat(),
        }

    async def delete_file(self, file_id: str) -> None:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=file_id)
        except (BotoCoreError, ClientError) as e:
            raise CleanupError(f"Failed to delete r2://{self.bucket}/{file_id}: {e}") from e
