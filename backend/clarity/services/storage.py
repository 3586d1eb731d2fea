"""S3 document store for uploaded files."""

import asyncio
import logging
import re

import boto3
from botocore.exceptions import ClientError

from clarity.config import get_settings
from clarity.exceptions import ProcessingError

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r'[/\\:*?"<>|]')


def sanitize_file_name(file_name: str) -> str:
    """Replace path and shell-hostile characters and cap the length at 255."""
    return _UNSAFE_FILENAME_CHARS.sub("_", file_name)[:255]


class S3DocumentStore:
    """Stores uploaded file bytes in an S3 bucket (or MinIO/LocalStack)."""

    def __init__(self):
        """Initialize S3 client with credentials from settings."""
        settings = get_settings()
        client_kwargs = {
            "aws_access_key_id": settings.aws_access_key_id or None,
            "aws_secret_access_key": settings.aws_secret_access_key or None,
            "region_name": settings.aws_s3_region,
        }
        # Support MinIO / LocalStack by pointing to a custom endpoint
        if settings.aws_s3_endpoint_url:
            client_kwargs["endpoint_url"] = settings.aws_s3_endpoint_url

        self.s3_client = boto3.client("s3", **client_kwargs)
        self.bucket = settings.aws_s3_bucket

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        """
        Upload bytes under `key`.

        Raises:
            ProcessingError: If the S3 operation fails
        """
        try:
            await asyncio.to_thread(
                self.s3_client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except ClientError as e:
            raise ProcessingError(f"Failed to store file: {e}") from e

    async def get(self, key: str) -> bytes:
        """
        Download the bytes stored under `key`.

        Raises:
            ProcessingError: If the S3 operation fails
        """
        try:
            response = await asyncio.to_thread(self.s3_client.get_object, Bucket=self.bucket, Key=key)
            return await asyncio.to_thread(response["Body"].read)
        except ClientError as e:
            raise ProcessingError(f"Failed to read stored file: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.s3_client.delete_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            raise ProcessingError(f"Failed to delete stored file: {e}") from e
