"""Conversion data models: source objects, per-item results, ledger records and batch reports."""
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class ConversionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SourceObject:
    """Snapshot of one object as listed from the store."""

    key: str
    size: int
    last_modified: Optional[datetime] = None
    etag: str = ""


@dataclass(frozen=True)
class ImageMetadata:
    original_format: str
    width: int
    height: int
    file_size: int
    content_type: str


# Field names used on disk; kept camelCase so existing ledger files stay readable.
_RECORD_FIELDS = {
    "source_key": "sourceKey",
    "target_key": "targetKey",
    "converted_at": "convertedAt",
    "original_size": "originalSize",
    "converted_size": "convertedSize",
    "compression_ratio": "compressionRatio",
}


@dataclass(frozen=True)
class ConversionRecord:
    source_key: str
    target_key: str
    converted_at: str  # ISO-8601, UTC
    original_size: int
    converted_size: int
    compression_ratio: float

    def to_dict(self) -> dict[str, Any]:
        return {wire: getattr(self, attr) for attr, wire in _RECORD_FIELDS.items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversionRecord":
        if not isinstance(data, dict) or not data.get("sourceKey"):
            raise ValueError("record has no sourceKey")
        return cls(
            source_key=str(data["sourceKey"]),
            target_key=str(data.get("targetKey", "")),
            converted_at=str(data.get("convertedAt", "")),
            original_size=int(data.get("originalSize", 0)),
            converted_size=int(data.get("convertedSize", 0)),
            compression_ratio=float(data.get("compressionRatio", 0)),
        )


@dataclass
class ConversionResult:
    source_key: str
    target_key: str
    original_size: int
    converted_size: int = 0
    compression_ratio: float = 0.0
    processing_time: float = 0.0  # seconds
    status: ConversionStatus = ConversionStatus.FAILED
    error: Optional[str] = None


@dataclass
class ConversionReport:
    total_images: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    total_size_before: int = 0
    total_size_after: int = 0
    average_compression_ratio: float = 0.0
    processing_duration: float = 0.0  # seconds
    errors: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.successful + self.failed + self.skipped

    @property
    def succeeded(self) -> bool:
        """False for a batch-level abort: errors reported but nothing was processed."""
        return not (self.errors and self.processed == 0)

    def add(self, result: ConversionResult) -> None:
        if result.status is ConversionStatus.SUCCESS:
            self.successful += 1
            self.total_size_before += result.original_size
            self.total_size_after += result.converted_size
        elif result.status is ConversionStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
            self.errors.append(f"{result.source_key}: {result.error or 'Unknown error'}")

    def finalize(self, duration: float) -> None:
        if self.total_size_before > 0:
            self.average_compression_ratio = (
                (self.total_size_before - self.total_size_after) / self.total_size_before
            )
        else:
            self.average_compression_ratio = 0.0
        self.processing_duration = duration

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["succeeded"] = self.succeeded
        return data
