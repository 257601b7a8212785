"""Review of suggested faces and bulk maintenance of face data."""
from datetime import datetime
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from facematch.core.exceptions import EmbeddingNotFoundError
from facematch.core.logging import get_logger
from facematch.infrastructure.database.models import FaceEmbedding, Person, PersonCluster
from facematch.infrastructure.database.unit_of_work import UnitOfWork, open_unit_of_work
from facematch.services.analysis_cache import AnalysisCache
from facematch.services.face_clustering import FaceClusterService
from facematch.services.similarity import SimilarityMatcher

logger = get_logger(__name__)


class FaceReviewService:
    """Confirms or rejects suggested faces and deletes face data.

    Each operation runs in its own unit of work and saves before returning.

    Example:
        ```python
        review = FaceReviewService(session_factory, matcher)
        await review.confirm_face(person_id, embedding_id)
        pending = await review.suggested_count(person_id)
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        matcher: SimilarityMatcher,
        clusters: Optional[FaceClusterService] = None,
        scan_limit: Optional[int] = None,
    ) -> None:
        """Initialize the review service.

        Args:
            session_factory: Record store session factory
            matcher: Matcher used for exploratory similarity queries
            clusters: Cluster maintenance run after verified faces change
            scan_limit: Maximum stored embeddings scanned by ``similar_embeddings``
        """
        self._session_factory = session_factory
        self._matcher = matcher
        self._clusters = clusters or FaceClusterService()
        self._scan_limit = scan_limit

    async def _owned_embedding(self, uow: UnitOfWork, person_id: UUID, embedding_id: UUID) -> FaceEmbedding:
        record = await uow.embeddings.get(embedding_id)
        if record.owner_id != person_id:
            raise EmbeddingNotFoundError(
                "Face is not attributed to this person",
                {"person_id": str(person_id), "embedding_id": str(embedding_id)},
            )
        return record

    async def confirm_face(self, person_id: UUID, embedding_id: UUID) -> FaceEmbedding:
        """Mark a suggested face as verified and refresh the person's cluster.

        Raises:
            PersonNotFoundError: If the person does not exist
            EmbeddingNotFoundError: If the face does not exist or belongs to someone else
        """
        async with open_unit_of_work(self._session_factory) as uow:
            await uow.people.get(person_id)
            record = await self._owned_embedding(uow, person_id, embedding_id)
            if not record.is_verified:
                await uow.embeddings.assign_owner(record, person_id, verified=True)
                await self._clusters.refresh(uow, person_id)
                await uow.save()
                logger.info("Confirmed face", person_id=str(person_id), embedding_id=str(embedding_id))
            return record

    async def unassign_face(self, person_id: UUID, embedding_id: UUID) -> FaceEmbedding:
        """Return a face to the unattributed pool.

        The record itself is kept so the image stays analyzed.
        """
        async with open_unit_of_work(self._session_factory) as uow:
            await uow.people.get(person_id)
            record = await self._owned_embedding(uow, person_id, embedding_id)
            was_verified = record.is_verified
            await uow.embeddings.assign_owner(record, None)
            if was_verified:
                await self._clusters.refresh(uow, person_id)
            await uow.save()
            logger.info(
                "Unassigned face",
                person_id=str(person_id),
                embedding_id=str(embedding_id),
                was_verified=was_verified,
            )
            return record

    async def create_person(
        self,
        name: str,
        primary_photo: Optional[bytes] = None,
        primary_photo_date: Optional[datetime] = None,
    ) -> Person:
        """Register a person whose faces can then be searched for."""
        async with open_unit_of_work(self._session_factory) as uow:
            person = await uow.people.create(name, primary_photo, primary_photo_date)
            await uow.save()
        logger.info("Created person", person_id=str(person.id), has_photo=primary_photo is not None)
        return person

    async def find_person(self, name: str) -> Optional[Person]:
        async with open_unit_of_work(self._session_factory) as uow:
            return await uow.people.get_by_name(name)

    async def faces_for_person(self, person_id: UUID, verified_only: bool = False) -> List[FaceEmbedding]:
        """Faces attributed to a person, newest image first."""
        async with open_unit_of_work(self._session_factory) as uow:
            return await uow.embeddings.list_for_owner(person_id, verified_only=verified_only)

    async def suggested_count(self, person_id: Optional[UUID] = None) -> int:
        """Faces attributed by a search but not yet confirmed."""
        async with open_unit_of_work(self._session_factory) as uow:
            if person_id is None:
                return await uow.embeddings.count_suggested()
            return await uow.embeddings.count_for_owner(person_id, verified=False)

    async def recognized_count(self, person_id: UUID) -> int:
        """All faces attributed to a person."""
        async with open_unit_of_work(self._session_factory) as uow:
            return await uow.embeddings.count_for_owner(person_id)

    async def refresh_cluster(self, person_id: UUID) -> Optional[PersonCluster]:
        """Recompute and save a person's centroid."""
        async with open_unit_of_work(self._session_factory) as uow:
            await uow.people.get(person_id)
            cluster = await self._clusters.refresh(uow, person_id)
            await uow.save()
            return cluster

    async def delete_faces_for_person(self, person_id: UUID) -> int:
        """Delete every face attributed to a person, and their cluster."""
        async with open_unit_of_work(self._session_factory) as uow:
            deleted = await uow.embeddings.delete_for_owner(person_id)
            await uow.clusters.delete_for_owner(person_id)
            await uow.save()
        logger.info("Deleted faces for person", person_id=str(person_id), deleted=deleted)
        return deleted

    async def delete_unassigned_faces(self) -> int:
        """Delete every unattributed face; their images become unanalyzed again."""
        async with open_unit_of_work(self._session_factory) as uow:
            deleted = await uow.embeddings.delete_unassigned()
            await uow.save()
        logger.info("Deleted unassigned faces", deleted=deleted)
        return deleted

    async def delete_all_face_data(self) -> int:
        """Delete all face embeddings and clusters."""
        async with open_unit_of_work(self._session_factory) as uow:
            deleted = await uow.embeddings.delete_all()
            await uow.clusters.delete_all()
            await uow.save()
        logger.warning("Deleted all face data", deleted=deleted)
        return deleted

    async def stored_faces(self, image_id: str) -> List[FaceEmbedding]:
        """Stored faces of an image in reading order."""
        async with open_unit_of_work(self._session_factory) as uow:
            return await AnalysisCache(uow.embeddings).stored_detections(image_id)

    async def is_analyzed(self, image_id: str) -> bool:
        """True if the library image already has stored faces."""
        async with open_unit_of_work(self._session_factory) as uow:
            return await AnalysisCache(uow.embeddings).has_stored_faces(image_id)

    async def similar_embeddings(
        self,
        embedding_id: UUID,
        threshold: Optional[float] = None,
        top_k: Optional[int] = None,
    ) -> List[Tuple[FaceEmbedding, float]]:
        """Stored faces that look like the given one, most similar first."""
        async with open_unit_of_work(self._session_factory) as uow:
            query = await uow.embeddings.get(embedding_id)
            limit = self._scan_limit or AnalysisCache(uow.embeddings).scan_limit
            candidates = await uow.embeddings.list_recent(limit)
        return self._matcher.find_similar(query, candidates, threshold=threshold, top_k=top_k)
