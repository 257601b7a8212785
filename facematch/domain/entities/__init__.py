"""Domain entities package."""
from .face import (
    BoundingBox,
    BoundingBoxOrigin,
    ExtractedFace,
    FaceDetection,
    ImageRef,
    Pose,
)

__all__ = [
    "BoundingBox",
    "BoundingBoxOrigin",
    "ExtractedFace",
    "FaceDetection",
    "ImageRef",
    "Pose",
]
