"""Batch conversion over a bucket: list images, run them through the scheduler, report."""
import logging
import time
from typing import Optional

from s3webp.batch import BatchScheduler, ProgressFn
from s3webp.config import Settings
from s3webp.conversion.codec import ImageCodec
from s3webp.conversion.models import ConversionReport
from s3webp.conversion.pipeline import ConversionPipeline
from s3webp.ledger import ConversionLedger
from s3webp.storage import ObjectStoreGateway

logger = logging.getLogger("s3webp.service")


class BatchConversionService:
    """Handles listing and batch conversion with progress and error handling."""

    def __init__(
        self,
        settings: Settings,
        gateway: ObjectStoreGateway,
        codec: ImageCodec,
        ledger: ConversionLedger,
        dry_run: bool = False,
    ):
        self.settings = settings
        self.gateway = gateway
        self.ledger = ledger
        self.dry_run = dry_run
        self.pipeline = ConversionPipeline(
            gateway,
            codec,
            ledger,
            bucket=settings.bucket,
            quality=settings.quality,
            max_file_size=settings.max_file_size,
            dry_run=dry_run,
        )
        self.scheduler = BatchScheduler(self.pipeline.process, dispatch_delay=settings.dispatch_delay)
        logger.info(
            "BatchConversionService initialized (bucket=%s, concurrency=%s, dry_run=%s)",
            settings.bucket,
            settings.concurrency,
            dry_run,
        )

    def stop(self) -> None:
        self.scheduler.stop()

    def process_all_images(
        self,
        prefix: Optional[str] = None,
        concurrency: Optional[int] = None,
        on_progress: Optional[ProgressFn] = None,
    ) -> ConversionReport:
        """Never raises for listing or item errors; a failed listing yields a zero report with one error."""
        started = time.monotonic()
        prefix = self.settings.prefix if prefix is None else prefix
        try:
            images = self.gateway.list_objects(self.settings.bucket, prefix)
        except Exception as e:
            logger.exception("Listing s3://%s/%s failed", self.settings.bucket, prefix)
            report = ConversionReport(errors=[f"Batch conversion failed: {e}"])
            report.processing_duration = time.monotonic() - started
            return report

        if not images:
            logger.warning("No images found in s3://%s/%s", self.settings.bucket, prefix)
            report = ConversionReport()
            report.processing_duration = time.monotonic() - started
            return report

        report = self.scheduler.run_batch(images, concurrency or self.settings.concurrency, on_progress=on_progress)
        report.processing_duration = time.monotonic() - started

        if report.successful > 0:
            saved_mb = (report.total_size_before - report.total_size_after) / (1024 * 1024)
            logger.info(
                "Size reduction: %.2f MB saved (%.1f%%), %s -> %s bytes",
                saved_mb,
                report.average_compression_ratio * 100,
                report.total_size_before,
                report.total_size_after,
                extra={"operation": "batch.summary"},
            )
        return report
