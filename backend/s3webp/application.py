"""Wires settings, store, codec, ledger and batch service together; owns startup checks and shutdown."""
import logging
import shutil
import signal
import threading
import time
from typing import Optional

from s3webp.config import VERSION, Settings
from s3webp.conversion.codec import PillowImageCodec
from s3webp.conversion.models import ConversionReport
from s3webp.conversion.service import BatchConversionService
from s3webp.errors import ConfigurationError, ValidationIssue
from s3webp.ledger import ConversionLedger
from s3webp.storage import S3Gateway

logger = logging.getLogger("s3webp.app")

DISK_DEGRADED_PERCENT = 85
DISK_UNHEALTHY_PERCENT = 95


def disk_stats(path) -> dict:
    try:
        usage = shutil.disk_usage(path)
    except OSError:
        return {"status": "healthy", "details": {"available": 0, "total": 0, "percentage": 0.0}}
    percentage = (usage.used / usage.total) * 100 if usage.total else 0.0
    if percentage > DISK_UNHEALTHY_PERCENT:
        status = "unhealthy"
    elif percentage > DISK_DEGRADED_PERCENT:
        status = "degraded"
    else:
        status = "healthy"
    return {"status": status, "details": {"available": usage.free, "total": usage.total, "percentage": percentage}}


class Application:
    def __init__(
        self,
        settings: Settings,
        dry_run: bool = False,
        gateway=None,
        codec=None,
        ledger: Optional[ConversionLedger] = None,
    ):
        self.settings = settings
        self.dry_run = dry_run
        self.gateway = gateway if gateway is not None else S3Gateway(settings)
        self.codec = codec if codec is not None else PillowImageCodec(settings.supported_formats)
        self.ledger = ledger if ledger is not None else ConversionLedger(
            settings.tracking_file, batch_size=settings.ledger_batch_size
        )
        self.service = BatchConversionService(settings, self.gateway, self.codec, self.ledger, dry_run=dry_run)
        self.started_at = time.monotonic()
        self._shutdown_lock = threading.Lock()
        self._shut_down = False

    def validate_startup(self) -> None:
        """Fail fast before any batch work: codec must encode WebP, bucket must be reachable."""
        issues: list[ValidationIssue] = []
        try:
            self.codec.self_test()
        except Exception as e:
            issues.append(ValidationIssue("codec", str(e)))
        store = self.gateway.health_check(self.settings.bucket)
        if store["status"] != "healthy":
            issues.append(ValidationIssue(
                "aws.bucket",
                f"Cannot access bucket {self.settings.bucket}: {store['details']}",
            ))
        if issues:
            raise ConfigurationError(issues)
        logger.info("Startup validation passed for bucket %s", self.settings.bucket)

    def run_conversion(self, prefix: Optional[str] = None, concurrency: Optional[int] = None, on_progress=None) -> ConversionReport:
        if self._shut_down:
            raise RuntimeError("Cannot run conversion during shutdown")
        try:
            return self.service.process_all_images(prefix=prefix, concurrency=concurrency, on_progress=on_progress)
        finally:
            self.ledger.flush()

    def health(self) -> dict:
        store = self.gateway.health_check(self.settings.bucket)
        disk = disk_stats(self.settings.tracking_file.parent if self.settings.tracking_file.parent.exists() else ".")
        if store["status"] == "unhealthy" or disk["status"] == "unhealthy":
            status = "unhealthy"
        elif disk["status"] == "degraded":
            status = "degraded"
        else:
            status = "healthy"
        return {
            "status": status,
            "version": VERSION,
            "uptime": time.monotonic() - self.started_at,
            "services": {"s3": store, "disk": disk},
        }

    def install_signal_handlers(self) -> None:
        """SIGINT/SIGTERM stop new dispatches; running conversions finish. Main thread only."""

        def _handle(signum, _frame):
            logger.warning("Received %s, finishing in-flight conversions", signal.Signals(signum).name)
            self.service.stop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, _handle)

    def shutdown(self) -> None:
        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True
        self.service.stop()
        self.ledger.close()
        logger.info("Application shut down")
