"""Per-object conversion: skip check, download, validate, encode, upload, record."""
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from s3webp.conversion.codec import ImageCodec
from s3webp.conversion.models import ConversionResult, ConversionStatus, SourceObject
from s3webp.errors import ImageProcessingError, LedgerWriteError, StorageError
from s3webp.ledger import ConversionLedger, new_record
from s3webp.storage import ObjectStoreGateway

logger = logging.getLogger("s3webp.pipeline")

TARGET_EXTENSION = "webp"
TARGET_CONTENT_TYPE = "image/webp"


def target_key_for(source_key: str, extension: str = TARGET_EXTENSION) -> str:
    """Swap the extension of the last path segment; append one if there is none.

    >>> target_key_for("a/b/photo.JPG")
    'a/b/photo.webp'
    >>> target_key_for("noext")
    'noext.webp'
    """
    head, sep, name = source_key.rpartition("/")
    dot = name.rfind(".")
    if dot != -1:
        name = name[:dot]
    return f"{head}{sep}{name}.{extension}"


def compression_ratio(original_size: int, converted_size: int) -> float:
    """Fraction of bytes saved; negative when the output grew."""
    if original_size <= 0:
        return 0.0
    return (original_size - converted_size) / original_size


class ConversionPipeline:
    """Converts one object at a time. process() never raises."""

    def __init__(
        self,
        gateway: ObjectStoreGateway,
        codec: ImageCodec,
        ledger: ConversionLedger,
        bucket: str,
        quality: int = 80,
        max_file_size: Optional[int] = None,
        dry_run: bool = False,
        check_store: bool = True,
    ):
        self.gateway = gateway
        self.codec = codec
        self.ledger = ledger
        self.bucket = bucket
        self.quality = quality
        self.max_file_size = max_file_size
        self.dry_run = dry_run
        self.check_store = check_store

    def skip_if_exists(self, source_key: str, target_key: str) -> bool:
        if self.ledger.is_converted(source_key):
            return True
        if not self.check_store:
            return False
        try:
            return self.gateway.object_exists(self.bucket, target_key)
        except StorageError as e:
            logger.warning("Existence check failed for %s, converting anyway: %s", target_key, e)
            return False

    def process(self, source: SourceObject) -> ConversionResult:
        started = time.monotonic()
        result = ConversionResult(
            source_key=source.key,
            target_key=target_key_for(source.key),
            original_size=source.size,
        )
        try:
            self._run(source, result)
        except Exception as e:
            result.status = ConversionStatus.FAILED
            result.error = str(e) or type(e).__name__
            if isinstance(e, (ImageProcessingError, StorageError, LedgerWriteError)):
                logger.warning("Conversion failed for %s: %s", source.key, result.error)
            else:
                logger.exception("Unexpected error converting %s", source.key)
        result.processing_time = time.monotonic() - started
        return result

    def _run(self, source: SourceObject, result: ConversionResult) -> None:
        if self.skip_if_exists(source.key, result.target_key):
            result.status = ConversionStatus.SKIPPED
            logger.debug("Skipping %s: already converted", source.key)
            return

        if self.max_file_size is not None and source.size > self.max_file_size:
            result.error = f"File too large: {source.size} bytes (max {self.max_file_size})"
            return

        data = self.gateway.download_object(self.bucket, source.key)
        meta = self.codec.decode_and_validate(data)
        encoded = self.codec.encode(data, self.quality)
        result.converted_size = len(encoded)
        result.compression_ratio = compression_ratio(result.original_size, result.converted_size)

        if self.dry_run:
            logger.info(
                "DRY RUN: would upload %s -> %s (%s -> %s bytes, %.1f%%)",
                source.key,
                result.target_key,
                result.original_size,
                result.converted_size,
                result.compression_ratio * 100,
                extra={"operation": "conversion.dryrun"},
            )
            result.status = ConversionStatus.SUCCESS
            return

        self.gateway.upload_object(
            self.bucket,
            result.target_key,
            encoded,
            TARGET_CONTENT_TYPE,
            {
                "original-format": meta.original_format,
                "original-size": str(result.original_size),
                "converted-size": str(result.converted_size),
                "compression-ratio": f"{result.compression_ratio:.4f}",
                "conversion-quality": str(self.quality),
                "conversion-timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
        try:
            self.ledger.mark_as_converted(new_record(
                source.key,
                result.target_key,
                result.original_size,
                result.converted_size,
                result.compression_ratio,
            ))
        except LedgerWriteError as e:
            raise LedgerWriteError(f"Uploaded {result.target_key} but could not record it: {e}") from e
        result.status = ConversionStatus.SUCCESS
        logger.info("Converted %s -> %s", source.key, result.target_key)
