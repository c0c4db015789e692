"""Object store access. S3Gateway talks to S3 (or any S3-compatible endpoint) through boto3."""
import logging
from typing import Iterator, Mapping, Optional, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from s3webp.config import Settings
from s3webp.conversion.models import SourceObject
from s3webp.errors import StorageError

logger = logging.getLogger("s3webp.storage")

LIST_PAGE_SIZE = 1000
_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_DENIED_CODES = {"403", "AccessDenied", "Forbidden"}


class ObjectStoreGateway(Protocol):
    def list_objects(self, bucket: str, prefix: str = "") -> list[SourceObject]: ...

    def download_object(self, bucket: str, key: str) -> bytes: ...

    def upload_object(
        self, bucket: str, key: str, data: bytes, content_type: str, metadata: Mapping[str, str]
    ) -> None: ...

    def object_exists(self, bucket: str, key: str) -> bool: ...


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3Gateway:
    """Thin boto3 wrapper. The client is shared by all worker threads."""

    def __init__(self, settings: Settings, client=None):
        self.settings = settings
        self.supported_extensions = {f.lower().lstrip(".") for f in settings.supported_formats}
        if client is None:
            kwargs = {
                "region_name": settings.region,
                # Transient failures are retried here, below the pipeline.
                "config": BotoConfig(retries={"max_attempts": settings.retry_attempts, "mode": "standard"}),
            }
            if settings.endpoint_url:
                kwargs["endpoint_url"] = settings.endpoint_url
            if settings.access_key_id and settings.secret_access_key:
                kwargs["aws_access_key_id"] = settings.access_key_id
                kwargs["aws_secret_access_key"] = settings.secret_access_key
            client = boto3.client("s3", **kwargs)
        self.client = client

    def is_image_key(self, key: str) -> bool:
        name = key.rsplit("/", 1)[-1]
        if "." not in name:
            return False
        return name.rsplit(".", 1)[-1].lower() in self.supported_extensions

    def iter_objects(self, bucket: str, prefix: str = "") -> Iterator[SourceObject]:
        paginator = self.client.get_paginator("list_objects_v2")
        pages = paginator.paginate(
            Bucket=bucket,
            Prefix=prefix or "",
            PaginationConfig={"PageSize": LIST_PAGE_SIZE},
        )
        try:
            for page in pages:
                for obj in page.get("Contents", []):
                    key = obj.get("Key")
                    size = obj.get("Size")
                    if not key or not size:
                        continue
                    if not self.is_image_key(key):
                        continue
                    yield SourceObject(
                        key=key,
                        size=int(size),
                        last_modified=obj.get("LastModified"),
                        etag=str(obj.get("ETag", "")).replace('"', ""),
                    )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to list images from bucket {bucket}: {e}") from e

    def list_objects(self, bucket: str, prefix: str = "") -> list[SourceObject]:
        objects = list(self.iter_objects(bucket, prefix))
        logger.info("Listed %s images in s3://%s/%s", len(objects), bucket, prefix)
        return objects

    def download_object(self, bucket: str, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=bucket, Key=key)
            body = response.get("Body")
            if body is None:
                raise StorageError(f"No body returned for object {key} in bucket {bucket}")
            try:
                return body.read()
            finally:
                body.close()
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to download image {key} from bucket {bucket}: {e}") from e

    def upload_object(
        self, bucket: str, key: str, data: bytes, content_type: str, metadata: Mapping[str, str]
    ) -> None:
        try:
            self.client.put_object(
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=dict(metadata),
                CacheControl=self.settings.cache_control,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to upload image {key} to bucket {bucket}: {e}") from e

    def object_exists(self, bucket: str, key: str) -> bool:
        """Exact-key HEAD; a prefix listing would match keys that merely share the prefix."""
        try:
            self.client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return False
            raise StorageError(f"Failed to check {key} in bucket {bucket}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to check {key} in bucket {bucket}: {e}") from e

    def check_bucket_access(self, bucket: str) -> bool:
        try:
            self.client.head_bucket(Bucket=bucket)
            return True
        except ClientError as e:
            if _error_code(e) in _DENIED_CODES:
                return False
            raise StorageError(f"Bucket permission check failed for {bucket}: {e}") from e

    def health_check(self, bucket: Optional[str] = None) -> dict:
        bucket = bucket or self.settings.bucket
        details = {"connection": False, "bucket_access": False}
        try:
            self.client.list_objects_v2(Bucket=bucket, MaxKeys=1)
            details["connection"] = True
            details["bucket_access"] = self.check_bucket_access(bucket)
        except (ClientError, BotoCoreError, StorageError) as e:
            logger.warning("Object store health check failed: %s", e)
        healthy = details["connection"] and details["bucket_access"]
        return {"status": "healthy" if healthy else "unhealthy", "details": details}
