from .codec import PillowImageCodec
from .models import ConversionRecord, ConversionReport, ConversionResult, ConversionStatus, SourceObject

__all__ = [
    "ConversionRecord",
    "ConversionReport",
    "ConversionResult",
    "ConversionStatus",
    "PillowImageCodec",
    "SourceObject",
]
