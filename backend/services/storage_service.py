# services/storage_service.py
import asyncio
import hashlib
import logging
import re
from functools import partial
from typing import Dict, Optional
from urllib.parse import quote
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from config import Settings
from models.errors import StorageFailure
from models.upload_models import StoredObject

logger = logging.getLogger(__name__)


def build_s3_client(settings: Settings):
    return boto3.client(
        "s3",
        region_name=settings.aws_region,
        aws_access_key_id=settings.aws_access_key,
        aws_secret_access_key=settings.aws_secret_key,
        config=boto3.session.Config(signature_version='s3v4')
    )


def sanitize_filename(filename: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]", "_", filename)
    cleaned = re.sub(r"_{2,}", "_", cleaned)
    return cleaned[:255] or "file"


class S3StorageService:
    """Object storage collaborator: persists finished uploads in S3"""

    def __init__(self, s3_client, bucket_name: str, prefix: str = "sessions", url_expiry: int = 3600):
        self.s3_client = s3_client
        self.bucket_name = bucket_name
        self.prefix = prefix
        self.url_expiry = url_expiry

    def object_key(self, session_token: str, filename: str) -> str:
        return f"{self.prefix}/{session_token}/{uuid4().hex}_{sanitize_filename(filename)}"

    async def _call(self, method, **kwargs):
        # boto3 is blocking; keep it off the event loop
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(method, **kwargs))

    async def store(self, data: bytes, metadata: Dict[str, str]) -> StoredObject:
        """Upload one assembled file and return its reference, size and sha256"""
        key = self.object_key(metadata["session_token"], metadata["file_name"])
        checksum = hashlib.sha256(data).hexdigest()

        try:
            await self._call(
                self.s3_client.put_object,
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=metadata.get("mime_type", "application/octet-stream"),
                Metadata={
                    "session-token": metadata["session_token"],
                    "original-filename": quote(metadata["file_name"]),
                    "sha256": checksum,
                },
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 upload failed for {key}: {e}")
            raise StorageFailure(f"Object storage rejected {metadata['file_name']}: {e}")

        logger.info(f"Stored {key} ({len(data)} bytes)")
        return StoredObject(storage_ref=key, actual_size=len(data), checksum=checksum)

    async def delete(self, storage_ref: str):
        try:
            await self._call(self.s3_client.delete_object, Bucket=self.bucket_name, Key=storage_ref)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to delete {storage_ref}: {e}")
            raise StorageFailure(f"Could not delete {storage_ref}: {e}")

    def presigned_url(self, storage_ref: str, filename: Optional[str] = None) -> str:
        params = {"Bucket": self.bucket_name, "Key": storage_ref}
        if filename:
            params["ResponseContentDisposition"] = f"attachment; filename*=UTF-8''{quote(filename)}"
        try:
            return self.s3_client.generate_presigned_url(
                "get_object",
                Params=params,
                ExpiresIn=self.url_expiry,
                HttpMethod="GET"
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 presigned URL error for {storage_ref}: {e}")
            raise StorageFailure(f"Could not sign a download URL for {storage_ref}: {e}")

    def ping(self) -> bool:
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"S3 health check failed: {e}")
            return False
