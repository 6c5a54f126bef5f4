"""
Image resizing for thumbnail and preview derivatives.

Derivatives are always WebP: it is 30-50% smaller than JPEG at the same
visual quality, which matters for grid views that load dozens of images.

Pillow is synchronous and CPU-bound, so the async entry point runs the
actual work in a thread to keep the event loop responsive.
"""

import asyncio
import io
import logging
from typing import Protocol

from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

WEBP_CONTENT_TYPE = "image/webp"
WEBP_EXTENSION = ".webp"


class ImageProcessingError(Exception):
    """Raised when an image can't be decoded or encoded."""
    pass


class ImageResizer(Protocol):
    """Protocol for the resize collaborator."""

    content_type: str

    async def resize(self, data: bytes, max_dimension: int, quality: float) -> bytes:
        """
        Fit the image within max_dimension x max_dimension.

        quality is 0-1. Returns encoded bytes in content_type.
        """
        ...


class PillowImageResizer:
    """
    Resizer backed by Pillow.

    Keeps aspect ratio, never upscales, honours EXIF orientation (phone
    photos are often stored rotated) and encodes WebP.
    """

    content_type = WEBP_CONTENT_TYPE

    async def resize(self, data: bytes, max_dimension: int, quality: float) -> bytes:
        return await asyncio.to_thread(self.resize_sync, data, max_dimension, quality)

    def resize_sync(self, data: bytes, max_dimension: int, quality: float) -> bytes:
        if max_dimension <= 0:
            raise ValueError("max_dimension must be positive")

        try:
            with Image.open(io.BytesIO(data)) as image:
                image = ImageOps.exif_transpose(image)

                # WebP supports RGB and RGBA only
                if image.mode not in ("RGB", "RGBA"):
                    has_alpha = image.mode in ("LA", "PA") or (
                        image.mode == "P" and "transparency" in image.info
                    )
                    image = image.convert("RGBA" if has_alpha else "RGB")

                image.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

                buffer = io.BytesIO()
                image.save(
                    buffer,
                    format="WEBP",
                    quality=max(1, min(100, round(quality * 100))),
                )
        except (UnidentifiedImageError, OSError) as e:
            raise ImageProcessingError(f"Resize failed: {e}")

        encoded = buffer.getvalue()
        logger.debug(
            "Resized image",
            extra={
                "max_dimension": max_dimension,
                "input_bytes": len(data),
                "output_bytes": len(encoded),
            }
        )
        return encoded
