"""S3 gateway against a stubbed boto3 client."""

from __future__ import annotations

import io
from datetime import datetime, timezone

import boto3
import pytest
from botocore.response import StreamingBody
from botocore.stub import Stubber

from s3webp.config import Settings
from s3webp.errors import StorageError
from s3webp.storage import S3Gateway

WHEN = datetime(2024, 5, 1, tzinfo=timezone.utc)


@pytest.fixture
def client():
    return boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


@pytest.fixture
def gateway(client) -> S3Gateway:
    return S3Gateway(Settings(bucket="test-bucket", supported_formats=("jpg", "jpeg", "png")), client=client)


def _entry(key: str, size: int = 123) -> dict:
    return {"Key": key, "Size": size, "LastModified": WHEN, "ETag": '"abc123"'}


def test_list_objects_paginates_and_filters(gateway: S3Gateway, client) -> None:
    with Stubber(client) as stub:
        stub.add_response(
            "list_objects_v2",
            {
                "IsTruncated": True,
                "NextContinuationToken": "page-2",
                "Contents": [_entry("a/one.JPG"), _entry("a/readme.txt"), _entry("a/empty.png", size=0)],
            },
            None,
        )
        stub.add_response(
            "list_objects_v2",
            {"IsTruncated": False, "Contents": [_entry("a/two.png", 456), _entry("a/noext")]},
            None,
        )
        objects = gateway.list_objects("test-bucket", "a/")

    assert [(o.key, o.size) for o in objects] == [("a/one.JPG", 123), ("a/two.png", 456)]
    assert objects[0].etag == "abc123"
    assert objects[0].last_modified == WHEN


def test_list_error_is_wrapped(gateway: S3Gateway, client) -> None:
    with Stubber(client) as stub:
        stub.add_client_error("list_objects_v2", service_error_code="AccessDenied", http_status_code=403)
        with pytest.raises(StorageError, match="Failed to list images from bucket test-bucket"):
            gateway.list_objects("test-bucket")


def test_download_reads_body(gateway: S3Gateway, client) -> None:
    data = b"\x89PNG" + b"0" * 200
    with Stubber(client) as stub:
        stub.add_response(
            "get_object",
            {"Body": StreamingBody(io.BytesIO(data), len(data))},
            {"Bucket": "test-bucket", "Key": "x.png"},
        )
        assert gateway.download_object("test-bucket", "x.png") == data


def test_upload_sends_metadata_and_cache_control(gateway: S3Gateway, client) -> None:
    with Stubber(client) as stub:
        stub.add_response(
            "put_object",
            {},
            {
                "Bucket": "test-bucket",
                "Key": "x.webp",
                "Body": b"webp",
                "ContentType": "image/webp",
                "Metadata": {"original-format": "png"},
                "CacheControl": "public, max-age=31536000",
            },
        )
        gateway.upload_object("test-bucket", "x.webp", b"webp", "image/webp", {"original-format": "png"})
        stub.assert_no_pending_responses()


def test_object_exists_uses_exact_key(gateway: S3Gateway, client) -> None:
    with Stubber(client) as stub:
        stub.add_response("head_object", {}, {"Bucket": "test-bucket", "Key": "photo.webp"})
        stub.add_client_error("head_object", service_error_code="404", http_status_code=404)
        stub.add_client_error("head_object", service_error_code="403", http_status_code=403)
        assert gateway.object_exists("test-bucket", "photo.webp") is True
        assert gateway.object_exists("test-bucket", "missing.webp") is False
        with pytest.raises(StorageError):
            gateway.object_exists("test-bucket", "forbidden.webp")


def test_health_check(gateway: S3Gateway, client) -> None:
    with Stubber(client) as stub:
        stub.add_response("list_objects_v2", {"IsTruncated": False}, None)
        stub.add_response("head_bucket", {}, {"Bucket": "test-bucket"})
        assert gateway.health_check()["status"] == "healthy"

        stub.add_client_error("list_objects_v2", service_error_code="NoSuchBucket", http_status_code=404)
        result = gateway.health_check()
        assert result["status"] == "unhealthy"
        assert result["details"] == {"connection": False, "bucket_access": False}


def test_image_key_filter() -> None:
    gw = S3Gateway(Settings(supported_formats=("png",)), client=object())
    assert gw.is_image_key("dir.jpg/pic.PNG")
    assert not gw.is_image_key("dir.png/readme")
    assert not gw.is_image_key("pic.jpg")
