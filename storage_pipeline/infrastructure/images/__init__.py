"""
Image processing for derivative generation.
"""

from .resizer import ImageProcessingError, ImageResizer, PillowImageResizer

__all__ = ["ImageProcessingError", "ImageResizer", "PillowImageResizer"]
