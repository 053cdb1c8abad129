"""Image shrinking ahead of upload."""

from __future__ import annotations

import os
from io import BytesIO

from PIL import Image, ImageOps

from study_pipeline.core.config import Settings
from study_pipeline.core.logging import get_logger
from study_pipeline.ingest.types import MediaFile

logger = get_logger(__name__)


class MediaPreprocessor:
    """Downscale and re-encode images; every other payload passes through.

    The re-encoded image replaces the original only when it is strictly
    smaller, and any decode or encode failure yields the original unchanged.
    """

    output_format = "WEBP"
    output_mime = "image/webp"
    output_suffix = ".webp"

    def __init__(self, max_edge: int = 1920, quality: int = 80) -> None:
        self.max_edge = max_edge
        self.quality = quality

    @classmethod
    def from_settings(cls, settings: Settings) -> "MediaPreprocessor":
        return cls(max_edge=settings.image_max_edge, quality=settings.image_quality)

    def prepare(self, file: MediaFile) -> MediaFile:
        if not file.is_image or not file.data:
            return file
        try:
            encoded = self._encode(file.data)
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            logger.debug("Image preprocessing skipped for %s: %s", file.name, exc)
            return file
        if encoded is None or len(encoded) >= file.size:
            return file
        logger.debug("Shrunk %s from %s to %s bytes", file.name, file.size, len(encoded))
        stem, _ = os.path.splitext(file.name)
        return MediaFile(name=f"{stem}{self.output_suffix}", data=encoded, mime_type=self.output_mime)

    def _encode(self, data: bytes) -> bytes | None:
        with Image.open(BytesIO(data)) as source:
            if getattr(source, "is_animated", False):
                return None
            image = ImageOps.exif_transpose(source)
            if image.mode not in ("RGB", "RGBA"):
                has_alpha = "A" in image.getbands() or "transparency" in image.info
                image = image.convert("RGBA" if has_alpha else "RGB")
            image.thumbnail((self.max_edge, self.max_edge), Image.Resampling.LANCZOS)
            buffer = BytesIO()
            image.save(buffer, format=self.output_format, quality=self.quality)
            return buffer.getvalue()


__all__ = ["MediaPreprocessor"]
