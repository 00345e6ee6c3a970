"""S3-compatible object storage for finished shorts."""
import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from shortsmith.config import settings
from shortsmith.pipeline.errors import ErrorKind, PipelineError

logger = logging.getLogger(__name__)

# Error codes returned when a conditional put finds an existing object.
DUPLICATE_KEY_CODES = ("PreconditionFailed", "ConditionalRequestConflict")


class StorageError(PipelineError):
    """Storage backend rejected or failed an operation."""

    def __init__(self, message: str):
        super().__init__(ErrorKind.STORAGE_ERROR, message)


class DuplicateKeyError(StorageError):
    """An object already exists under the requested key."""
    pass


def create_s3_client():
    """Build an S3 client from settings (works for R2 and other S3 clones)."""
    session = boto3.session.Session()
    return session.client(
        "s3",
        endpoint_url=settings.storage_endpoint_url or None,
        aws_access_key_id=settings.storage_access_key_id or None,
        aws_secret_access_key=settings.storage_secret_access_key or None,
        config=Config(signature_version="s3v4", retries={"max_attempts": 1}),
        region_name=settings.storage_region,
    )


class ObjectStorage:
    """
    Thin async wrapper over a boto3 S3 client.

    Writes are conditional: an existing key is never overwritten.
    """

    def __init__(
        self,
        client: Any = None,
        bucket: str = None,
        public_base_url: Optional[str] = None,
        url_expiry: int = None,
    ):
        self._client = client
        self.bucket = bucket or settings.storage_bucket
        self.public_base_url = public_base_url if public_base_url is not None else settings.storage_public_base_url
        self.url_expiry = url_expiry or settings.storage_url_expiry_seconds

    @property
    def client(self):
        if self._client is None:
            self._client = create_s3_client()
        return self._client

    def url_for(self, key: str) -> str:
        """Public URL when a base URL is configured, else a presigned GET URL."""
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=self.url_expiry,
        )

    def _put_sync(self, key: str, path: Path, content_type: str) -> None:
        with open(path, "rb") as fh:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=fh,
                ContentType=content_type,
                CacheControl="public, max-age=31536000",
                IfNoneMatch="*",
            )

    async def put(self, key: str, path: str | Path, content_type: str) -> str:
        """
        Upload a local file under ``key``.

        Returns:
            URL of the stored object

        Raises:
            DuplicateKeyError: if the key is already taken
            StorageError: on any other backend failure
        """
        path = Path(path)
        try:
            await asyncio.to_thread(self._put_sync, key, path, content_type)
        except ClientError as exc:
            error = exc.response.get("Error", {})
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if error.get("Code") in DUPLICATE_KEY_CODES or status == 412:
                raise DuplicateKeyError(f"Storage object already exists: {key}") from exc
            raise StorageError(f"Storage upload failed for {key}: {error.get('Message') or exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Storage upload failed for {key}: {exc}") from exc

        try:
            return self.url_for(key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Storage URL generation failed for {key}: {exc}") from exc
