"""Storage interfaces."""
from .image_source import ImageSource

__all__ = ["ImageSource"]
