from pathlib import Path

import boto3
import structlog
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from preview_worker.core.config import settings
from preview_worker.core.exceptions import StorageError

logger = structlog.get_logger()


def original_key(path: str, bucket: str | None = None) -> str:
    """Strip a leading ``<bucket>/`` from a stored original path."""
    bucket = bucket or settings.original_bucket
    prefix = f"{bucket}/"
    if path.startswith(prefix):
        return path[len(prefix):]
    return path


class StorageService:
    """S3-compatible storage service (Supabase Storage or MinIO)."""

    def __init__(self, client=None) -> None:
        if client is None:
            endpoint = settings.storage_endpoint
            if not endpoint.startswith(("http://", "https://")):
                endpoint = f"http://{endpoint}"

            client = boto3.client(
                "s3",
                endpoint_url=endpoint,
                region_name=settings.storage_region,
                aws_access_key_id=settings.storage_access_key,
                aws_secret_access_key=settings.storage_secret_key,
                config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
            )
        self.client = client

    def download_file(self, bucket: str, key: str, destination: str) -> str:
        """Download an object to a local path."""
        Path(destination).parent.mkdir(parents=True, exist_ok=True)
        try:
            self.client.download_file(bucket, key, destination)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Download failed: {bucket}/{key}: {e}") from e
        logger.info("file_downloaded", bucket=bucket, key=key, size=Path(destination).stat().st_size)
        return destination

    def download(self, bucket: str, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Download failed: {bucket}/{key}: {e}") from e

    def exists(self, bucket: str, key: str) -> bool:
        try:
            self.client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError:
            return False

    def upload(self, bucket: str, key: str, data: bytes, content_type: str, upsert: bool = True) -> str:
        """Put an object, overwriting any existing one unless ``upsert`` is off."""
        if not upsert and self.exists(bucket, key):
            raise StorageError(f"Object already exists: {bucket}/{key}")
        try:
            self.client.put_object(Bucket=bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Upload failed: {bucket}/{key}: {e}") from e
        logger.info("file_uploaded", bucket=bucket, key=key, size=len(data), content_type=content_type)
        return key

    def list_keys(self, bucket: str, prefix: str) -> list[str]:
        try:
            pages = self.client.get_paginator("list_objects_v2").paginate(Bucket=bucket, Prefix=prefix)
            return [obj["Key"] for page in pages for obj in page.get("Contents", [])]
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Listing failed: {bucket}/{prefix}: {e}") from e

    def delete(self, bucket: str, keys: list[str]) -> None:
        """Remove objects in one batch request."""
        if not keys:
            return
        try:
            self.client.delete_objects(
                Bucket=bucket,
                Delete={"Objects": [{"Key": key} for key in keys], "Quiet": True},
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Delete failed: {bucket}: {e}") from e
        logger.info("files_deleted", bucket=bucket, keys=keys)
