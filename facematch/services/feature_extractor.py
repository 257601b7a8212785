"""
Feature extraction: detection, quality gating, cropping and embedding.

The extractor wraps a FaceAnalysisBackend. Given pixels and their
orientation it returns the faces worth keeping, each with a feature vector
computed from a padded crop around the face (not the whole image) and a small
JPEG thumbnail of that crop.

Failures never escape: an undecodable image or a backend error is logged and
reported as "no faces", which callers treat as a normal outcome.
"""
import asyncio
import math
from typing import List, Optional, Tuple

import cv2
import numpy as np

from facematch.core.config import settings
from facematch.core.logging import get_logger
from facematch.core.utils.image import (
    apply_orientation,
    bytes_to_numpy_array,
    crop_face,
    encode_jpeg,
    fit_within,
)
from facematch.domain.entities.face import ExtractedFace, FaceDetection, ImageRef
from facematch.domain.interfaces.recognition.face_analysis import FaceAnalysisBackend
from facematch.domain.interfaces.storage.image_source import ImageSource
from facematch.domain.value_objects.image import Orientation
from facematch.services.quality_filter import filter_detections

logger = get_logger(__name__)


def pose_adjusted_quality(detection: FaceDetection) -> float:
    """Quality score stored with an embedding.

    Uses the backend's capture quality when present; otherwise the detection
    confidence, reduced linearly as the head turns away from frontal
    (zero at 45 degrees of combined rotation).
    """
    if detection.quality is not None:
        return float(detection.quality)
    score = float(detection.confidence)
    if detection.pose is not None:
        angle = math.sqrt(detection.pose.yaw ** 2 + detection.pose.pitch ** 2 + detection.pose.roll ** 2)
        score *= max(0.0, 1.0 - angle / 45.0)
    return score


class FeatureExtractor:
    """Turns images into quality-filtered face embeddings.

    Stateless apart from read-only configuration, so one instance can serve
    many concurrent searches.
    """

    def __init__(
        self,
        backend: FaceAnalysisBackend,
        crop_padding: Optional[float] = None,
        thumbnail_size: Optional[int] = None,
        processing_size: Optional[int] = None,
        max_faces: Optional[int] = None,
    ) -> None:
        """Initialize the extractor.

        Args:
            backend: Analysis backend used for detection, vectors and distance
            crop_padding: Fraction of the face size added on each side of a crop
            thumbnail_size: Longest side of the stored thumbnail
            processing_size: Longest side images are downscaled to before detection
            max_faces: Maximum number of faces embedded per image
        """
        self.backend = backend
        self.crop_padding = settings.CROP_PADDING if crop_padding is None else crop_padding
        self.thumbnail_size = settings.THUMBNAIL_SIZE if thumbnail_size is None else thumbnail_size
        self.processing_size = settings.PROCESSING_TARGET_SIZE if processing_size is None else processing_size
        self.max_faces = settings.MAX_FACES_PER_IMAGE if max_faces is None else max_faces

    def _prepare(self, image: np.ndarray, orientation: Orientation) -> np.ndarray:
        upright = apply_orientation(image, orientation)
        height, width = upright.shape[:2]
        new_size = fit_within((width, height), self.processing_size)
        if new_size != (width, height):
            upright = cv2.resize(upright, new_size, interpolation=cv2.INTER_AREA)
        return upright

    async def extract(
        self,
        image: np.ndarray,
        orientation: Orientation = Orientation.UP,
    ) -> List[ExtractedFace]:
        """
        Detect, filter and embed the faces of an image.

        Args:
            image: BGR pixels as stored
            orientation: EXIF orientation of the stored pixels

        Returns:
            Extracted faces; an empty list when no usable face is found or
            the analysis fails
        """
        try:
            if image is None or image.size == 0:
                return []
            upright = await asyncio.to_thread(self._prepare, image, orientation)
            height, width = upright.shape[:2]

            detections = await self.backend.detect_faces(upright)
            if not detections:
                logger.debug("No faces detected", image_size=(width, height))
                return []

            scored = []
            for detection in detections:
                quality = await self.backend.quality(upright, detection)
                scored.append(detection.model_copy(update={"quality": quality}))

            kept = filter_detections(scored, (width, height))
            if self.max_faces and len(kept) > self.max_faces:
                kept = sorted(kept, key=lambda d: d.confidence, reverse=True)[:self.max_faces]

            faces: List[ExtractedFace] = []
            for index, detection in enumerate(kept):
                face = await self._embed(upright, detection, index)
                if face is not None:
                    faces.append(face)

            logger.debug(
                "Extracted faces",
                detected=len(detections),
                kept=len(kept),
                embedded=len(faces),
            )
            return faces

        except Exception as e:
            logger.warning("Face extraction failed", error=str(e), exc_info=True)
            return []

    async def _embed(self, image: np.ndarray, detection: FaceDetection, index: int) -> Optional[ExtractedFace]:
        crop = await asyncio.to_thread(
            crop_face,
            image,
            detection.bounding_box,
            self.backend.crop_size,
            self.crop_padding,
        )
        vector = await self.backend.feature_vector(crop)
        if not vector:
            logger.debug("No feature vector for face", face_index=index)
            return None
        thumbnail = await asyncio.to_thread(encode_jpeg, crop, self.thumbnail_size)
        return ExtractedFace(
            detection=detection,
            vector=vector,
            thumbnail=thumbnail,
            quality_score=pose_adjusted_quality(detection),
        )

    async def extract_from_bytes(self, image_bytes: bytes) -> List[ExtractedFace]:
        """Extract faces from an encoded photo (e.g. a person's primary photo).

        Decoding applies the EXIF orientation, so pixels are treated as upright.
        """
        try:
            image = await asyncio.to_thread(bytes_to_numpy_array, image_bytes)
        except Exception as e:
            logger.warning("Could not decode image bytes", error=str(e), size=len(image_bytes or b""))
            return []
        return await self.extract(image, Orientation.UP)

    async def extract_from_source(
        self,
        source: ImageSource,
        ref: ImageRef,
        timeout: Optional[float] = None,
        target_size: Optional[Tuple[int, int]] = None,
    ) -> List[ExtractedFace]:
        """Load an image from a photo source and extract its faces.

        Args:
            source: Photo source to load from
            ref: Image to analyze
            timeout: Seconds to wait for a non-degraded delivery
            target_size: Optional bound passed to the source

        Returns:
            Extracted faces; empty when the image cannot be loaded
        """
        try:
            loaded = await source.load(
                ref,
                target_size or (self.processing_size, self.processing_size),
                settings.IMAGE_LOAD_TIMEOUT if timeout is None else timeout,
            )
        except Exception as e:
            logger.warning("Image load failed", image_id=ref.image_id, error=str(e))
            return []
        if loaded is None:
            logger.debug("Image source delivered nothing", image_id=ref.image_id)
            return []
        return await self.extract(loaded.pixels, loaded.orientation)
