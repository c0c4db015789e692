"""Shared fixtures: in-memory object store, controllable codec, sample images."""

from __future__ import annotations

import io
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Optional

import pytest
from PIL import Image

from s3webp.config import Settings
from s3webp.conversion.models import ImageMetadata, SourceObject
from s3webp.errors import CorruptedImageError, StorageError
from s3webp.ledger import ConversionLedger


def image_bytes(fmt: str = "PNG", mode: str = "RGB", size: tuple[int, int] = (48, 48)) -> bytes:
    """Noise image, large enough to pass the minimum-size check."""
    img = Image.effect_noise(size, 64).convert(mode)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


class FakeGateway:
    """Dict-backed object store that records every call."""

    def __init__(self, objects: Optional[Mapping[str, bytes]] = None):
        self.objects: dict[str, bytes] = dict(objects or {})
        self.uploads: dict[str, tuple[bytes, str, dict[str, str]]] = {}
        self.existing: set[str] = set()
        self.downloads: list[str] = []
        self.list_error: Optional[Exception] = None
        self.download_errors: dict[str, Exception] = {}
        self.exists_error: Optional[Exception] = None
        self.healthy = True
        self._lock = threading.Lock()

    def list_objects(self, bucket: str, prefix: str = "") -> list[SourceObject]:
        if self.list_error is not None:
            raise self.list_error
        return [
            SourceObject(key=k, size=len(v), etag=f"etag-{i}")
            for i, (k, v) in enumerate(sorted(self.objects.items()))
            if k.startswith(prefix)
        ]

    def download_object(self, bucket: str, key: str) -> bytes:
        with self._lock:
            self.downloads.append(key)
        if key in self.download_errors:
            raise self.download_errors[key]
        if key not in self.objects:
            raise StorageError(f"Failed to download image {key} from bucket {bucket}: NoSuchKey")
        return self.objects[key]

    def upload_object(
        self, bucket: str, key: str, data: bytes, content_type: str, metadata: Mapping[str, str]
    ) -> None:
        with self._lock:
            self.uploads[key] = (data, content_type, dict(metadata))

    def object_exists(self, bucket: str, key: str) -> bool:
        if self.exists_error is not None:
            raise self.exists_error
        return key in self.existing or key in self.uploads

    def health_check(self, bucket: Optional[str] = None) -> dict:
        status = "healthy" if self.healthy else "unhealthy"
        return {"status": status, "details": {"connection": self.healthy, "bucket_access": self.healthy}}


class FakeCodec:
    """Codec with predictable output sizes. Data starting with b"BAD" is corrupted."""

    def __init__(self, output_size: Optional[int] = None):
        self.output_size = output_size
        self.encode_errors: dict[bytes, Exception] = {}

    def decode_and_validate(self, data: bytes) -> ImageMetadata:
        if data.startswith(b"BAD"):
            raise CorruptedImageError("File integrity validation failed")
        return ImageMetadata("jpeg", 10, 10, len(data), "image/jpeg")

    def encode(self, data: bytes, quality: int) -> bytes:
        if data in self.encode_errors:
            raise self.encode_errors[data]
        size = self.output_size if self.output_size is not None else len(data) // 2
        return b"W" * size

    def self_test(self) -> None:
        return None


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        bucket="test-bucket",
        tracking_file=tmp_path / "logs" / "converted-images.json",
        dispatch_delay=0.0,
        concurrency=4,
    )


@pytest.fixture
def ledger(settings: Settings):
    led = ConversionLedger(settings.tracking_file, batch_size=settings.ledger_batch_size)
    yield led
    led.close()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def codec() -> FakeCodec:
    return FakeCodec()
