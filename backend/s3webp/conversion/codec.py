"""Image decode/validate and WebP encode, backed by Pillow."""
import io
import logging
from typing import Iterable, Protocol

from PIL import Image, UnidentifiedImageError

from s3webp.conversion.models import ImageMetadata
from s3webp.errors import ConversionError, CorruptedImageError, ImageProcessingError, UnsupportedFormatError

logger = logging.getLogger("s3webp.codec")

MIN_IMAGE_BYTES = 100
WEBP_EFFORT = 6  # Pillow "method": 0 fast .. 6 smallest

CONTENT_TYPES = {
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}


class ImageCodec(Protocol):
    def decode_and_validate(self, data: bytes) -> ImageMetadata: ...

    def encode(self, data: bytes, quality: int) -> bytes: ...


def content_type_for(image_format: str) -> str:
    return CONTENT_TYPES.get(image_format.lower(), "application/octet-stream")


class PillowImageCodec:
    """Validates source images and re-encodes them to WebP."""

    def __init__(self, supported_formats: Iterable[str] = ("jpeg", "jpg", "png")):
        self.supported_formats = {f.lower().lstrip(".") for f in supported_formats}

    def is_format_supported(self, image_format: str) -> bool:
        return image_format.lower() in self.supported_formats

    def decode_and_validate(self, data: bytes) -> ImageMetadata:
        """Check integrity and format. Raises CorruptedImageError or UnsupportedFormatError."""
        if not data:
            raise CorruptedImageError("Empty or invalid buffer")
        if len(data) < MIN_IMAGE_BYTES:
            raise CorruptedImageError("File too small to be a valid image")
        try:
            with Image.open(io.BytesIO(data)) as img:
                image_format = (img.format or "").lower()
                width, height = img.size
                img.verify()
        except UnidentifiedImageError as e:
            raise CorruptedImageError("Unable to determine image format", e)
        except Exception as e:
            raise CorruptedImageError("File integrity validation failed", e)

        if not image_format:
            raise CorruptedImageError("Unable to determine image format")
        if width <= 0 or height <= 0:
            raise CorruptedImageError("Invalid image dimensions")
        if not self.is_format_supported(image_format):
            raise UnsupportedFormatError(image_format)
        return ImageMetadata(
            original_format=image_format,
            width=width,
            height=height,
            file_size=len(data),
            content_type=content_type_for(image_format),
        )

    def encode(self, data: bytes, quality: int) -> bytes:
        quality = max(1, min(100, quality))
        try:
            with Image.open(io.BytesIO(data)) as img:
                if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
                    work = img.convert("RGBA")
                elif img.mode != "RGB":
                    work = img.convert("RGB")
                else:
                    work = img
                out = io.BytesIO()
                work.save(out, format="WEBP", quality=quality, method=WEBP_EFFORT)
                return out.getvalue()
        except ImageProcessingError:
            raise
        except Exception as e:
            raise ConversionError(str(e), e)

    def self_test(self) -> None:
        """Round-trip a tiny generated PNG; raises ImageProcessingError if Pillow lacks WebP support."""
        buf = io.BytesIO()
        # noise, so the PNG clears MIN_IMAGE_BYTES
        Image.effect_noise((32, 32), 64).convert("RGB").save(buf, format="PNG")
        sample = buf.getvalue()
        try:
            meta = PillowImageCodec(("png",)).decode_and_validate(sample)
            if (meta.width, meta.height) != (32, 32):
                raise ImageProcessingError("Image metadata extraction failed")
            if not self.encode(sample, 80):
                raise ImageProcessingError("WebP conversion failed")
        except ImageProcessingError as e:
            raise ImageProcessingError(f"Image processor validation failed: {e}", e)
        logger.debug("Image codec self-test passed")
