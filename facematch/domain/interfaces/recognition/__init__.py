"""Recognition interfaces."""
from .face_analysis import FaceAnalysisBackend

__all__ = ["FaceAnalysisBackend"]
