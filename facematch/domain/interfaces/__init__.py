"""Service interfaces package."""
from .recognition import FaceAnalysisBackend
from .storage import ImageSource

__all__ = ["FaceAnalysisBackend", "ImageSource"]
