"""CLI tool for face detection with visualization."""
import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import cv2
import numpy as np

from facematch.core.logging import get_logger, setup_logging
from facematch.domain.entities.face import ExtractedFace
from facematch.services.feature_extractor import FeatureExtractor

logger = get_logger(__name__)


def draw_faces(
    image: np.ndarray,
    faces: List[ExtractedFace],
    output_path: Optional[Path] = None
) -> np.ndarray:
    """
    Draw bounding boxes and confidence scores on the image.

    Args:
        image: Upright image as numpy array
        faces: Extracted faces with normalized bottom-left-origin boxes
        output_path: Optional path to save the annotated image

    Returns:
        The annotated copy of the image
    """
    # Make a copy to avoid modifying the original
    img_draw = image.copy()
    height, width = img_draw.shape[:2]

    # Colors for visualization
    BOX_COLOR = (0, 180, 0)  # Darker green
    TEXT_COLOR = (255, 255, 255)  # White

    font_scale = 0.6
    thickness = 2

    for i, face in enumerate(faces, 1):
        left, top, box_width, box_height = face.detection.bounding_box.to_pixel_rect((width, height))
        x1, y1 = int(left), int(top)
        x2, y2 = int(left + box_width), int(top + box_height)

        cv2.rectangle(img_draw, (x1, y1), (x2, y2), BOX_COLOR, thickness)

        label = f"Face {i}: {face.detection.confidence:.2f} q={face.quality_score:.2f}"
        (text_width, text_height), _ = cv2.getTextSize(
            label, cv2.FONT_HERSHEY_SIMPLEX, font_scale, thickness
        )

        padding = 10
        cv2.rectangle(
            img_draw,
            (x1, max(0, y1 - text_height - padding * 2)),
            (x1 + text_width + padding, y1),
            BOX_COLOR,
            -1
        )
        cv2.putText(
            img_draw,
            label,
            (x1 + padding // 2, max(text_height, y1 - padding)),
            cv2.FONT_HERSHEY_SIMPLEX,
            font_scale,
            TEXT_COLOR,
            thickness
        )

    if output_path:
        cv2.imwrite(str(output_path), img_draw)
        logger.info("Saved annotated image", path=str(output_path))
    return img_draw


async def detect_faces(image_path: str, save_output: bool = True) -> int:
    """
    Detect faces in the given image and print what the extractor keeps.

    Args:
        image_path: Path to the image file
        save_output: Whether to save the annotated image

    Returns:
        Process exit code
    """
    image_file = Path(image_path)
    if not image_file.exists():
        logger.error("Image file not found", path=image_path)
        return 1

    image_bytes = image_file.read_bytes()
    img = cv2.imdecode(np.frombuffer(image_bytes, np.uint8), cv2.IMREAD_COLOR)
    if img is None:
        logger.error("Failed to load image", path=image_path)
        return 1

    from facematch.services.recognition.insight_face import InsightFaceBackend
    extractor = FeatureExtractor(InsightFaceBackend(), processing_size=max(img.shape[:2]))
    faces = await extractor.extract_from_bytes(image_bytes)

    logger.info(
        "Face detection completed",
        num_faces=len(faces),
        image_path=image_path
    )
    for i, face in enumerate(faces, 1):
        box = face.detection.bounding_box
        pose = face.detection.pose
        logger.info(
            f"Face {i} details",
            confidence=f"{face.detection.confidence:.3f}",
            quality=f"{face.quality_score:.3f}",
            pose=pose.model_dump() if pose else None,
            position={
                "x": f"{box.x:.3f}",
                "y": f"{box.y:.3f}",
                "width": f"{box.width:.3f}",
                "height": f"{box.height:.3f}"
            }
        )

    output_path = None
    if save_output:
        output_path = image_file.parent / f"{image_file.stem}_detected{image_file.suffix}"
    draw_faces(img, faces, output_path)
    return 0


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Detect faces in an image and save an annotated copy")
    parser.add_argument("image_path", help="Path to the image file")
    parser.add_argument(
        "--no-save",
        action="store_true",
        help="Don't save the annotated image"
    )
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(detect_faces(args.image_path, not args.no_save)))


if __name__ == "__main__":
    main()
