"""Exception types shared across the converter."""
from dataclasses import dataclass
from typing import Optional


class ConverterError(Exception):
    """Base class for all converter errors."""


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    message: str


class ConfigurationError(ConverterError):
    """Settings failed validation. Fatal at startup."""

    def __init__(self, errors: list[ValidationIssue]):
        self.errors = errors
        lines = "\n".join(f"- {e.field}: {e.message}" for e in errors)
        super().__init__(f"Configuration validation failed:\n{lines}")


class StorageError(ConverterError):
    """Object store call failed (after the client's own retries)."""


class LedgerWriteError(ConverterError):
    """Journal append failed; the conversion could not be recorded durably."""


class ImageProcessingError(ConverterError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class CorruptedImageError(ImageProcessingError):
    def __init__(self, message: str = "Image file is corrupted or invalid", cause: Optional[BaseException] = None):
        super().__init__(message, cause)


class UnsupportedFormatError(ImageProcessingError):
    def __init__(self, image_format: str, cause: Optional[BaseException] = None):
        super().__init__(f"Unsupported image format: {image_format}", cause)
        self.format = image_format


class ConversionError(ImageProcessingError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"Image conversion failed: {message}", cause)
