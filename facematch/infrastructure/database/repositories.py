"""Database repositories for the face record store."""
from datetime import datetime
from typing import Iterable, List, Optional, Set
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from facematch.core.exceptions import EmbeddingNotFoundError, PersonNotFoundError
from facematch.infrastructure.database.models import FaceEmbedding, Person, PersonCluster

# Keeps IN (...) lists well below SQLite's bound-parameter limit
_IN_CLAUSE_CHUNK = 500


class PersonRepository:
    """Repository for person operations."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository.

        Args:
            session: Database session
        """
        self._session = session

    async def get(self, person_id: UUID) -> Person:
        """Get a person by ID.

        Raises:
            PersonNotFoundError: If the person does not exist
        """
        person = await self._session.get(Person, person_id)
        if person is None:
            raise PersonNotFoundError(f"Person not found: {person_id}", {"person_id": str(person_id)})
        return person

    async def get_by_name(self, name: str) -> Optional[Person]:
        """Get the first person with the given name, if any."""
        stmt = select(Person).where(Person.name == name).order_by(Person.created_at).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        name: str,
        primary_photo: Optional[bytes] = None,
        primary_photo_date: Optional[datetime] = None,
    ) -> Person:
        """Create a new person.

        Args:
            name: Display name
            primary_photo: Encoded primary photo
            primary_photo_date: When the primary photo was taken

        Returns:
            Person: Created person
        """
        person = Person(
            name=name,
            primary_photo=primary_photo,
            primary_photo_date=primary_photo_date,
        )
        self._session.add(person)
        await self._session.flush()
        return person

    async def delete(self, person: Person) -> None:
        """Delete a person together with its face embeddings and cluster."""
        await self._session.execute(delete(FaceEmbedding).where(FaceEmbedding.owner_id == person.id))
        await self._session.execute(delete(PersonCluster).where(PersonCluster.owner_id == person.id))
        await self._session.delete(person)
        await self._session.flush()


class EmbeddingRepository:
    """Typed access to face embedding records."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository.

        Args:
            session: Database session
        """
        self._session = session

    async def add(self, record: FaceEmbedding) -> FaceEmbedding:
        """Insert a new embedding record."""
        self._session.add(record)
        await self._session.flush()
        return record

    async def get(self, embedding_id: UUID) -> FaceEmbedding:
        """Get an embedding by ID.

        Raises:
            EmbeddingNotFoundError: If no such record exists
        """
        record = await self._session.get(FaceEmbedding, embedding_id)
        if record is None:
            raise EmbeddingNotFoundError(
                f"Face embedding not found: {embedding_id}", {"embedding_id": str(embedding_id)}
            )
        return record

    async def assign_owner(
        self,
        record: FaceEmbedding,
        owner_id: Optional[UUID],
        verified: bool = False,
    ) -> FaceEmbedding:
        """Attribute an existing face to a person (or back to nobody) in place."""
        record.owner_id = owner_id
        record.is_verified = verified and owner_id is not None
        if owner_id is None:
            record.is_representative = False
        await self._session.flush()
        return record

    async def list_for_image(self, image_id: str) -> List[FaceEmbedding]:
        """All embeddings of one image, in insertion (face index) order."""
        stmt = (
            select(FaceEmbedding)
            .where(FaceEmbedding.image_id == image_id)
            .order_by(FaceEmbedding.face_index, FaceEmbedding.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def exists_for_image(self, image_id: str) -> bool:
        """True if at least one embedding exists for the image."""
        stmt = select(FaceEmbedding.id).where(FaceEmbedding.image_id == image_id).limit(1)
        result = await self._session.execute(stmt)
        return result.first() is not None

    async def list_for_owner(self, owner_id: UUID, verified_only: bool = False) -> List[FaceEmbedding]:
        """Embeddings attributed to a person, newest image first."""
        stmt = select(FaceEmbedding).where(FaceEmbedding.owner_id == owner_id)
        if verified_only:
            stmt = stmt.where(FaceEmbedding.is_verified.is_(True))
        stmt = stmt.order_by(FaceEmbedding.image_date.desc(), FaceEmbedding.id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def image_ids_for_owner(self, owner_id: UUID) -> Set[str]:
        """Image ids that already carry an embedding owned by the person."""
        stmt = select(FaceEmbedding.image_id).where(FaceEmbedding.owner_id == owner_id)
        result = await self._session.execute(stmt)
        return set(result.scalars().all())

    async def owner_has_image(self, owner_id: UUID, image_id: str) -> bool:
        """True if the person already owns a face in the image."""
        stmt = (
            select(FaceEmbedding.id)
            .where(FaceEmbedding.owner_id == owner_id, FaceEmbedding.image_id == image_id)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.first() is not None

    async def scan_image_ids(self, limit: int, scope: Optional[Iterable[str]] = None) -> List[str]:
        """Image ids of up to ``limit`` embedding records.

        Args:
            limit: Maximum number of records scanned
            scope: Optional image ids the scan is restricted to

        Returns:
            Image ids (with repeats for multi-face images)
        """
        if scope is None:
            stmt = select(FaceEmbedding.image_id).order_by(FaceEmbedding.image_id).limit(limit)
            result = await self._session.execute(stmt)
            return list(result.scalars().all())

        ids = sorted(set(scope))
        found: List[str] = []
        for start in range(0, len(ids), _IN_CLAUSE_CHUNK):
            remaining = limit - len(found)
            if remaining <= 0:
                break
            chunk = ids[start:start + _IN_CLAUSE_CHUNK]
            stmt = (
                select(FaceEmbedding.image_id)
                .where(FaceEmbedding.image_id.in_(chunk))
                .order_by(FaceEmbedding.image_id)
                .limit(remaining)
            )
            result = await self._session.execute(stmt)
            found.extend(result.scalars().all())
        return found

    async def list_recent(self, limit: int) -> List[FaceEmbedding]:
        """Up to ``limit`` embeddings, most recently created first."""
        stmt = select(FaceEmbedding).order_by(FaceEmbedding.created_at.desc(), FaceEmbedding.id).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_for_owner(self, owner_id: UUID, verified: Optional[bool] = None) -> int:
        """Number of faces attributed to a person, optionally by verification state."""
        stmt = select(func.count(FaceEmbedding.id)).where(FaceEmbedding.owner_id == owner_id)
        if verified is not None:
            stmt = stmt.where(FaceEmbedding.is_verified.is_(verified))
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def count_suggested(self) -> int:
        """Number of attributed but unverified faces across all people."""
        stmt = select(func.count(FaceEmbedding.id)).where(
            FaceEmbedding.owner_id.is_not(None),
            FaceEmbedding.is_verified.is_(False),
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def delete_for_image(self, image_id: str) -> int:
        """Delete every embedding of an image; returns the number deleted."""
        result = await self._session.execute(delete(FaceEmbedding).where(FaceEmbedding.image_id == image_id))
        return result.rowcount or 0

    async def delete_for_owner(self, owner_id: UUID) -> int:
        """Delete the embeddings attributed to a person."""
        result = await self._session.execute(delete(FaceEmbedding).where(FaceEmbedding.owner_id == owner_id))
        return result.rowcount or 0

    async def delete_unassigned(self) -> int:
        """Delete every unattributed embedding."""
        result = await self._session.execute(delete(FaceEmbedding).where(FaceEmbedding.owner_id.is_(None)))
        return result.rowcount or 0

    async def delete_all(self) -> int:
        """Delete all embeddings."""
        result = await self._session.execute(delete(FaceEmbedding))
        return result.rowcount or 0


class ClusterRepository:
    """Repository for person cluster centroids."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository.

        Args:
            session: Database session
        """
        self._session = session

    async def get_for_owner(self, owner_id: UUID) -> Optional[PersonCluster]:
        """Cluster of a person, if one has been computed."""
        stmt = select(PersonCluster).where(PersonCluster.owner_id == owner_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(
        self,
        owner_id: UUID,
        centroid_vector: bytes,
        face_count: int,
        average_quality: float,
    ) -> PersonCluster:
        """Create or update the cluster of a person."""
        cluster = await self.get_for_owner(owner_id)
        if cluster is None:
            cluster = PersonCluster(owner_id=owner_id, centroid_vector=centroid_vector)
            self._session.add(cluster)
        cluster.centroid_vector = centroid_vector
        cluster.face_count = face_count
        cluster.average_quality = average_quality
        await self._session.flush()
        return cluster

    async def delete_for_owner(self, owner_id: UUID) -> int:
        """Delete the cluster of a person."""
        result = await self._session.execute(delete(PersonCluster).where(PersonCluster.owner_id == owner_id))
        return result.rowcount or 0

    async def delete_all(self) -> int:
        """Delete all clusters."""
        result = await self._session.execute(delete(PersonCluster))
        return result.rowcount or 0
