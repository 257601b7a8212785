"""Face analysis backend interface."""
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

import numpy as np

from ...entities.face import FaceDetection


class FaceAnalysisBackend(ABC):
    """Interface for the image-analysis primitive used by the feature extractor.

    Implementations must be safe to call concurrently from unrelated
    searches; any mutable state must be read-only configuration.
    """

    #: Size ``(width, height)`` face crops are resized to before ``feature_vector``.
    crop_size: Tuple[int, int] = (224, 224)

    @abstractmethod
    async def detect_faces(self, image: np.ndarray) -> List[FaceDetection]:
        """
        Detect faces in an upright BGR image.

        Args:
            image: Upright image array (orientation already applied)

        Returns:
            Detections with normalized, bottom-left-origin bounding boxes.
            An empty list when no face is found.
        """
        pass

    async def quality(self, image: np.ndarray, detection: FaceDetection) -> Optional[float]:
        """
        Capture quality for a detection (0-1).

        Returns:
            The quality score, or None when the backend has no such observation.
        """
        return detection.quality

    @abstractmethod
    async def feature_vector(self, crop: np.ndarray) -> Optional[bytes]:
        """
        Compute the feature vector of a face crop.

        Args:
            crop: BGR crop already resized to ``crop_size``

        Returns:
            Float32 vector bytes, or None when no vector can be produced.
        """
        pass

    @abstractmethod
    def distance(self, vector_a: bytes, vector_b: bytes) -> float:
        """
        Model-native observation distance between two feature vectors.

        Lower is more similar. Must be cheap and synchronous, it is called
        from the pure similarity functions.

        Raises:
            ValueError: If the vectors cannot be compared
        """
        pass
