"""Maintenance of per-person centroid clusters."""
from typing import Optional
from uuid import UUID

from facematch.core.logging import get_logger
from facematch.core.utils.vectors import encode_vector
from facematch.infrastructure.database.models import PersonCluster
from facematch.infrastructure.database.unit_of_work import UnitOfWork
from facematch.services.similarity import SimilarityMatcher

logger = get_logger(__name__)


class FaceClusterService:
    """Keeps ``PersonCluster`` rows in step with each person's verified faces."""

    async def refresh(self, uow: UnitOfWork, person_id: UUID) -> Optional[PersonCluster]:
        """
        Recompute a person's centroid from their verified embeddings.

        The change is flushed but not saved; the caller owns the commit.

        Args:
            uow: Unit of work bound to the caller's session
            person_id: Person whose cluster is refreshed

        Returns:
            The updated cluster, or None when the person has no usable
            verified embedding (any existing cluster is removed)
        """
        verified = await uow.embeddings.list_for_owner(person_id, verified_only=True)
        centroid = SimilarityMatcher.centroid(verified)
        if centroid is None:
            removed = await uow.clusters.delete_for_owner(person_id)
            if removed:
                logger.info("Removed cluster without verified faces", person_id=str(person_id))
            return None

        average_quality = sum(record.quality_score for record in verified) / len(verified)
        cluster = await uow.clusters.upsert(
            person_id,
            centroid_vector=encode_vector(centroid),
            face_count=len(verified),
            average_quality=average_quality,
        )
        logger.debug(
            "Refreshed person cluster",
            person_id=str(person_id),
            face_count=len(verified),
            average_quality=round(average_quality, 3),
        )
        return cluster
