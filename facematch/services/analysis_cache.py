"""
Global analysis cache keyed by image identity.

An image that has at least one stored face embedding has been analyzed and
is never run through extraction again; later searches reuse its stored
embeddings. Synthetic image ids (manually supplied photos and primary
photos) live in the same table but never count as analyzed library images.
"""
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Set
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from facematch.core.config import settings
from facematch.core.exceptions import StoreUnavailableError
from facematch.core.logging import get_logger
from facematch.domain.entities.face import BoundingBoxOrigin, ExtractedFace
from facematch.infrastructure.database.models import FaceEmbedding, utcnow
from facematch.infrastructure.database.repositories import EmbeddingRepository

logger = get_logger(__name__)

SYNTHETIC_IMAGE_ID_PREFIXES = ("manual-", "person-")


def is_synthetic_image_id(image_id: str) -> bool:
    """True for ids that do not name an image of the photo library."""
    return image_id.startswith(SYNTHETIC_IMAGE_ID_PREFIXES)


def primary_photo_image_id(person_id: UUID) -> str:
    """Synthetic image id under which a person's primary photo faces are stored."""
    return f"person-{person_id}"


def _reading_order_key(record: FaceEmbedding, origin: BoundingBoxOrigin):
    box = record.bounding_box or [0.0, 0.0, 0.0, 0.0]
    x, y = float(box[0]), float(box[1])
    # Top of frame first: highest y with a bottom-left origin, lowest y otherwise
    vertical = -y if origin == BoundingBoxOrigin.BOTTOM_LEFT else y
    return (vertical, x, record.face_index, str(record.id))


class AnalysisCache:
    """Answers "has this image been analyzed?" and stores fresh extraction results."""

    def __init__(self, embeddings: EmbeddingRepository, scan_limit: Optional[int] = None) -> None:
        """
        Initialize the cache over an embedding repository.

        Args:
            embeddings: Repository bound to the caller's session
            scan_limit: Maximum records read by ``image_ids_with_stored_faces``
        """
        self._embeddings = embeddings
        self.scan_limit = settings.STORED_FACES_SCAN_LIMIT if scan_limit is None else scan_limit

    async def has_stored_faces(self, image_id: str) -> bool:
        """True if the library image has at least one stored embedding."""
        if is_synthetic_image_id(image_id):
            return False
        try:
            return await self._embeddings.exists_for_image(image_id)
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Could not query stored faces", {"image_id": image_id}) from e

    async def stored_detections(
        self,
        image_id: str,
        origin: BoundingBoxOrigin = BoundingBoxOrigin.BOTTOM_LEFT,
    ) -> List[FaceEmbedding]:
        """
        Stored faces of an image in reading order.

        Faces are ordered top of frame first, then left to right; ties are
        broken by face index and record id, so repeated calls always return
        the same order.

        Args:
            image_id: Image to look up
            origin: Vertical origin of the stored bounding boxes
        """
        try:
            records = await self._embeddings.list_for_image(image_id)
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Could not query stored faces", {"image_id": image_id}) from e
        return sorted(records, key=lambda record: _reading_order_key(record, origin))

    async def image_ids_with_stored_faces(self, scope: Optional[Iterable[str]] = None) -> Set[str]:
        """
        Library image ids that already have stored embeddings.

        Args:
            scope: Optional ids to restrict the lookup to

        Returns:
            Non-synthetic image ids; at most ``scan_limit`` records are read
        """
        try:
            image_ids = await self._embeddings.scan_image_ids(self.scan_limit, scope)
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Could not scan stored faces") from e

        if len(image_ids) >= self.scan_limit:
            logger.warning("Stored faces scan hit its limit", limit=self.scan_limit)
        return {image_id for image_id in image_ids if not is_synthetic_image_id(image_id)}

    async def record_faces(
        self,
        image_id: str,
        faces: Sequence[ExtractedFace],
        image_date: Optional[datetime] = None,
        owner_id: Optional[UUID] = None,
        owner_face_index: Optional[int] = None,
        verified: bool = False,
        representative: bool = False,
    ) -> List[FaceEmbedding]:
        """
        Store the extraction results of an image.

        Every face gets a record. Only the face at ``owner_face_index`` is
        attributed to ``owner_id``; the others are stored unattributed so
        later searches can match them without re-extracting.

        Returns:
            The new records, or an empty list when the image already has
            stored faces (nothing is written in that case)
        """
        if not faces:
            return []
        if await self._embeddings.exists_for_image(image_id):
            logger.debug("Faces already stored for image, skipping insert", image_id=image_id)
            return []

        now = utcnow()
        records: List[FaceEmbedding] = []
        for index, face in enumerate(faces):
            attributed = owner_id is not None and index == owner_face_index
            pose = face.detection.pose
            record = FaceEmbedding(
                image_id=image_id,
                face_index=index,
                owner_id=owner_id if attributed else None,
                vector=face.vector,
                bounding_box=face.detection.bounding_box.to_list(),
                quality_score=face.quality_score,
                yaw=pose.yaw if pose else 0.0,
                pitch=pose.pitch if pose else 0.0,
                roll=pose.roll if pose else 0.0,
                image_date=image_date,
                is_verified=attributed and verified,
                is_representative=attributed and representative,
                thumbnail=face.thumbnail,
                created_at=now,
                last_analyzed_at=now,
            )
            records.append(await self._embeddings.add(record))
        return records
