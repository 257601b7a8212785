"""Quality gate applied to raw face detections before embedding."""
from typing import List, Optional, Sequence, Tuple

from facematch.core.config import settings
from facematch.core.logging import get_logger
from facematch.domain.entities.face import FaceDetection

logger = get_logger(__name__)


def passes_quality(
    detection: FaceDetection,
    image_size: Tuple[int, int],
    min_confidence: float,
    min_face_size_ratio: float,
    min_quality: float,
    max_pose_deviation: float,
) -> bool:
    """Return True when a single detection satisfies every quality rule."""
    if detection.confidence < min_confidence:
        return False

    image_width, image_height = image_size
    face_width = detection.bounding_box.width * image_width
    face_height = detection.bounding_box.height * image_height
    if min(face_width, face_height) < min(image_width, image_height) * min_face_size_ratio:
        return False

    if detection.quality is not None and detection.quality < min_quality:
        return False

    if detection.pose is not None:
        if abs(detection.pose.yaw) + abs(detection.pose.pitch) >= max_pose_deviation:
            return False

    return True


def filter_detections(
    detections: Sequence[FaceDetection],
    image_size: Tuple[int, int],
    min_confidence: Optional[float] = None,
    min_face_size_ratio: Optional[float] = None,
    min_quality: Optional[float] = None,
    max_pose_deviation: Optional[float] = None,
) -> List[FaceDetection]:
    """Keep the detections reliable enough to embed.

    Rejects low confidence, faces that are small relative to the frame, low
    capture quality (when observed) and extreme non-frontal poses. When every
    detection is rejected, the single highest-confidence raw detection is
    returned instead so a manually supplied portrait still yields a face.

    Args:
        detections: Raw detections from the analysis backend
        image_size: ``(width, height)`` of the analyzed image in pixels

    Returns:
        Detections in their original order, or a one-element fallback list
    """
    if not detections:
        return []

    kept = [
        detection for detection in detections
        if passes_quality(
            detection,
            image_size,
            min_confidence=settings.MIN_FACE_CONFIDENCE if min_confidence is None else min_confidence,
            min_face_size_ratio=(
                settings.MIN_FACE_SIZE_RATIO if min_face_size_ratio is None else min_face_size_ratio
            ),
            min_quality=settings.MIN_QUALITY_SCORE if min_quality is None else min_quality,
            max_pose_deviation=(
                settings.MAX_POSE_DEVIATION if max_pose_deviation is None else max_pose_deviation
            ),
        )
    ]
    if kept:
        return kept

    best = max(detections, key=lambda detection: detection.confidence)
    logger.debug(
        "Quality filter rejected all faces, using best detection",
        detections=len(detections),
        confidence=round(best.confidence, 3),
    )
    return [best]
