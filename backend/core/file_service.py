import uuid
from abc import ABC, abstractmethod
from typing import Optional
import boto3
from botocore.exceptions import ClientError
from fastapi import status
import logging

from core.config import settings
from core.error_handling import APIError

logger = logging.getLogger(__name__)


class AssetStore(ABC):
    """Binary asset storage returning durable URLs"""

    @abstractmethod
    def upload(self, data: bytes, folder: str, content_type: str = "image/png") -> str:
        """Store bytes and return their URL"""

    @abstractmethod
    def destroy(self, url: str) -> bool:
        """Release a stored asset; returns False when it could not be removed"""


class S3AssetStore(AssetStore):
    def __init__(self, s3_client=None, bucket_name: Optional[str] = None):
        self.s3_client = s3_client or boto3.client("s3", region_name=settings.aws_region)
        self.bucket_name = bucket_name or settings.asset_bucket_name
        self.max_file_size = settings.max_asset_size_bytes

    def _key_from_url(self, url: str) -> str:
        return url.split(f"{self.bucket_name}.s3.amazonaws.com/")[-1]

    def upload(self, data: bytes, folder: str, content_type: str = "image/png") -> str:
        if len(data) > self.max_file_size:
            raise APIError(
                f"File size exceeds maximum allowed size of {self.max_file_size} bytes",
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            )
        extension = content_type.split("/")[-1] if "/" in content_type else "bin"
        s3_key = f"{folder}/{uuid.uuid4()}.{extension}"
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=data,
                ContentType=content_type,
            )
        except ClientError as e:
            logger.error(f"S3 upload error: {e}")
            raise APIError(
                "Failed to upload file to storage",
                status_code=status.HTTP_502_BAD_GATEWAY,
            )
        return f"https://{self.bucket_name}.s3.amazonaws.com/{s3_key}"

    def destroy(self, url: str) -> bool:
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=self._key_from_url(url))
            return True
        except ClientError as e:
            logger.error(f"S3 delete error: {e}")
            return False
