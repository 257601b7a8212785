"""
InsightFace-based implementation of the face analysis backend.

Detection, landmarks and head pose come from the ``buffalo_l`` model pack;
feature vectors are computed by its ArcFace recognition model from the
padded face crop prepared by the feature extractor.

Example:
    ```python
    backend = InsightFaceBackend()
    detections = await backend.detect_faces(image)
    ```

Note:
    This implementation uses CPU inference by default. For GPU support,
    modify the providers list in __init__ to include 'CUDAExecutionProvider'.
"""
import asyncio
import math
from typing import List, Optional

import cv2
import numpy as np
from insightface.app import FaceAnalysis
from insightface.app.common import Face as InsightFace

from facematch.core.config import settings
from facematch.core.logging import get_logger
from facematch.core.utils.vectors import decode_vector, encode_vector, l2_normalize
from facematch.domain.entities.face import BoundingBox, FaceDetection, Pose
from facematch.domain.interfaces.recognition.face_analysis import FaceAnalysisBackend

logger = get_logger(__name__)


class InsightFaceBackend(FaceAnalysisBackend):
    """
    Face analysis backed by InsightFace.

    Inference runs in worker threads so the event loop is never blocked.
    The loaded models are only read after ``__init__``.

    Attributes:
        model: InsightFace model pack used for detection and pose
        recognizer: ArcFace model producing feature vectors
    """

    crop_size = (112, 112)

    def __init__(self) -> None:
        """Initialize InsightFace models with the configured settings."""
        self.model = FaceAnalysis(
            name=settings.MODEL_NAME,
            root=settings.MODEL_CACHE_DIR,
            allowed_modules=["detection", "landmark_3d_68", "recognition"],
            providers=['CPUExecutionProvider']
        )
        # Detection size affects accuracy significantly
        self.model.prepare(ctx_id=0, det_size=(settings.DETECTION_SIZE, settings.DETECTION_SIZE))
        self.recognizer = self.model.models["recognition"]

    def _limit_size(self, image: np.ndarray) -> np.ndarray:
        height, width = image.shape[:2]
        pixels = width * height
        if pixels <= settings.MAX_IMAGE_PIXELS:
            return image

        scale = math.sqrt(settings.MAX_IMAGE_PIXELS / pixels)
        new_size = (max(1, int(width * scale)), max(1, int(height * scale)))
        logger.info(
            "Resizing large image",
            original_size=(width, height),
            new_size=new_size
        )
        return cv2.resize(image, new_size, interpolation=cv2.INTER_AREA)

    def _convert_to_detection(self, face_data: InsightFace, image_size) -> FaceDetection:
        """
        Convert an InsightFace result to a FaceDetection.

        Args:
            face_data: Face detection result from InsightFace
            image_size: ``(width, height)`` of the analyzed image

        Returns:
            FaceDetection with a normalized bottom-left-origin box
        """
        x1, y1, x2, y2 = (float(v) for v in face_data.bbox[:4])
        pose = None
        if face_data.get("pose") is not None:
            # InsightFace reports (pitch, yaw, roll)
            pitch, yaw, roll = (float(v) for v in face_data.pose[:3])
            pose = Pose(yaw=yaw, pitch=pitch, roll=roll)

        return FaceDetection(
            bounding_box=BoundingBox.from_pixel_corners((x1, y1, x2, y2), image_size),
            confidence=float(face_data.det_score),
            pose=pose,
            quality=None,
        )

    def _detect(self, image: np.ndarray) -> List[FaceDetection]:
        image = self._limit_size(image)
        height, width = image.shape[:2]
        faces = self.model.get(image, max_num=settings.MAX_FACES_PER_IMAGE)
        logger.debug(
            "Face detection results",
            faces_found=len(faces) if faces else 0,
            image_shape=image.shape,
        )
        return [self._convert_to_detection(face, (width, height)) for face in faces or []]

    async def detect_faces(self, image: np.ndarray) -> List[FaceDetection]:
        """Detect faces with non-blocking processing."""
        try:
            return await asyncio.to_thread(self._detect, image)
        except Exception as e:
            logger.error(
                "Face processing failed",
                error=str(e),
                image_shape=getattr(image, "shape", None),
                exc_info=True
            )
            raise

    def _embed(self, crop: np.ndarray) -> Optional[bytes]:
        feature = self.recognizer.get_feat([crop])
        if feature is None or len(feature) == 0:
            return None
        normalized = l2_normalize(np.asarray(feature[0], dtype=np.float32))
        return encode_vector(normalized) if normalized is not None else None

    async def feature_vector(self, crop: np.ndarray) -> Optional[bytes]:
        """Compute a unit-length ArcFace vector for a face crop."""
        if crop is None or crop.size == 0:
            return None
        return await asyncio.to_thread(self._embed, crop)

    def distance(self, vector_a: bytes, vector_b: bytes) -> float:
        """Euclidean distance between the unit-normalized vectors (0 to 2)."""
        a = decode_vector(vector_a)
        b = decode_vector(vector_b)
        if a is None or b is None or a.shape != b.shape:
            raise ValueError("Feature vectors are not comparable")
        a, b = l2_normalize(a), l2_normalize(b)
        if a is None or b is None:
            raise ValueError("Feature vector has zero magnitude")
        return float(np.linalg.norm(a - b))
