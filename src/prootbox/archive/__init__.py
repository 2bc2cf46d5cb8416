"""Archive module for unpacking the embedded rootfs image."""

from .extractor import (
    LAYER_SUFFIX,
    ExtractionStats,
    LayerExtractor,
    extract_layer,
    is_within,
)

__all__ = [
    "LAYER_SUFFIX",
    "ExtractionStats",
    "LayerExtractor",
    "extract_layer",
    "is_within",
]
