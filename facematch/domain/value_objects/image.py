"""Image value objects shared by photo sources and the feature extractor."""
from datetime import datetime
from enum import IntEnum
from typing import Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field


class Orientation(IntEnum):
    """EXIF orientation of the stored pixels (1 = already upright)."""
    UP = 1
    UP_MIRRORED = 2
    DOWN = 3
    DOWN_MIRRORED = 4
    LEFT_MIRRORED = 5
    RIGHT = 6
    RIGHT_MIRRORED = 7
    LEFT = 8

    @classmethod
    def from_exif(cls, value: Optional[int]) -> "Orientation":
        """Map a raw EXIF tag value to an orientation, defaulting to ``UP``."""
        try:
            return cls(int(value)) if value is not None else cls.UP
        except (TypeError, ValueError):
            return cls.UP


class LoadedImage(BaseModel):
    """Decoded pixels delivered by a photo source."""
    pixels: np.ndarray = Field(..., description="BGR image array (height, width, 3)")
    orientation: Orientation = Field(Orientation.UP, description="Orientation of the pixel data")
    degraded: bool = Field(False, description="True for a fast low-fidelity preview delivery")

    model_config = ConfigDict(arbitrary_types_allowed=True)


class CorpusFilter(BaseModel):
    """Restricts which images a photo source enumerates."""
    created_after: Optional[datetime] = Field(None, description="Only images created at/after this time")
    created_before: Optional[datetime] = Field(None, description="Only images created before this time")
    limit: Optional[int] = Field(None, description="Maximum number of images to return")
