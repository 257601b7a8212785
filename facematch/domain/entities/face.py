"""Core face domain entities."""
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field


class BoundingBoxOrigin(str, Enum):
    """Vertical origin of a normalized bounding box."""
    BOTTOM_LEFT = "bottom_left"
    TOP_LEFT = "top_left"


class BoundingBox(BaseModel):
    """Normalized face bounding box (0-1) with the origin at the bottom-left corner.

    ``x`` and ``y`` locate the lower-left corner of the box; ``y`` grows
    towards the top of the frame.
    """
    x: float = Field(..., description="Left edge of the box (0-1)")
    y: float = Field(..., description="Bottom edge of the box (0-1, bottom-left origin)")
    width: float = Field(..., description="Width of the box (0-1)")
    height: float = Field(..., description="Height of the box (0-1)")

    def to_list(self) -> List[float]:
        """Serialize as ``[x, y, width, height]`` for storage."""
        return [self.x, self.y, self.width, self.height]

    @classmethod
    def from_list(cls, values: List[float]) -> "BoundingBox":
        """Build a box from its stored ``[x, y, width, height]`` form."""
        x, y, width, height = (list(values) + [0.0, 0.0, 0.0, 0.0])[:4]
        return cls(x=x, y=y, width=width, height=height)

    @classmethod
    def from_pixel_corners(
        cls,
        corners: Tuple[float, float, float, float],
        image_size: Tuple[int, int],
    ) -> "BoundingBox":
        """Convert top-left-origin pixel corners ``(x1, y1, x2, y2)`` to a normalized box.

        Args:
            corners: Pixel coordinates as returned by most detectors
            image_size: ``(width, height)`` of the analyzed image
        """
        width, height = image_size
        x1, y1, x2, y2 = corners
        x1, x2 = max(0.0, min(x1, width)), max(0.0, min(x2, width))
        y1, y2 = max(0.0, min(y1, height)), max(0.0, min(y2, height))
        return cls(
            x=x1 / width,
            y=1.0 - (y2 / height),
            width=(x2 - x1) / width,
            height=(y2 - y1) / height,
        )

    def to_pixel_rect(self, image_size: Tuple[int, int]) -> Tuple[float, float, float, float]:
        """Return ``(left, top, width, height)`` in top-left-origin pixels."""
        width, height = image_size
        return (
            self.x * width,
            (1.0 - self.y - self.height) * height,
            self.width * width,
            self.height * height,
        )


class Pose(BaseModel):
    """Head pose angles in degrees."""
    yaw: float = Field(0.0, description="Rotation left/right")
    pitch: float = Field(0.0, description="Tilt up/down")
    roll: float = Field(0.0, description="Tilt towards a shoulder")


class FaceDetection(BaseModel):
    """Raw face detection produced by the analysis backend."""
    bounding_box: BoundingBox = Field(..., description="Normalized bounding box (bottom-left origin)")
    confidence: float = Field(..., description="Detection confidence (0-1)")
    pose: Optional[Pose] = Field(None, description="Head pose, when the backend estimates it")
    quality: Optional[float] = Field(None, description="Capture quality (0-1), None when not observed")


class ExtractedFace(BaseModel):
    """A filtered detection together with its feature vector and crop thumbnail."""
    detection: FaceDetection
    vector: bytes = Field(..., description="Feature vector as float32 bytes")
    thumbnail: bytes = Field(b"", description="JPEG thumbnail of the padded face crop")
    quality_score: float = Field(..., description="Quality score persisted with the embedding")


class ImageRef(BaseModel):
    """Reference to an image in a photo source."""
    image_id: str = Field(..., description="Stable identifier of the image in its source")
    created_at: Optional[datetime] = Field(None, description="Capture/creation date, if known")
    width: Optional[int] = Field(None, description="Pixel width, if known without decoding")
    height: Optional[int] = Field(None, description="Pixel height, if known without decoding")
