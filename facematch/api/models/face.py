"""API specific face models."""
import base64
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import Base64Bytes, BaseModel, Field

from facematch.core.utils.vectors import decode_vector
from facematch.domain.entities.face import BoundingBox
from facematch.infrastructure.database.models import FaceEmbedding, Person, PersonCluster

# Constants for validation ranges used in API models
MIN_THRESHOLD = -1.0
MAX_THRESHOLD = 1.0


class PersonCreateRequest(BaseModel):
    """Request model for registering a person."""
    name: str = Field(..., description="Display name", min_length=1, max_length=255)
    primary_photo: Optional[Base64Bytes] = Field(
        None,
        description="Base64-encoded primary photo used to bootstrap the reference face"
    )
    primary_photo_date: Optional[datetime] = Field(
        None,
        description="When the primary photo was taken, if it carries no EXIF date"
    )


class PersonResponse(BaseModel):
    """API model for a registered person."""
    person_id: UUID
    name: str
    has_primary_photo: bool
    created_at: datetime

    @classmethod
    def from_person(cls, person: Person) -> "PersonResponse":
        return cls(
            person_id=person.id,
            name=person.name,
            has_primary_photo=person.primary_photo is not None,
            created_at=person.created_at,
        )


class SearchResponse(BaseModel):
    """Response model for a person search."""
    person_id: UUID = Field(..., description="Person that was searched for")
    matched_count: int = Field(..., description="Faces attributed to the person by this search", ge=0)
    continuing_in_background: bool = Field(
        ...,
        description="True when images past the search ceiling are still being processed"
    )


class AnalysisStatusResponse(BaseModel):
    """Whether an image has already been analyzed."""
    image_id: str
    analyzed: bool


class FaceRecord(BaseModel):
    """API model for a single stored face."""
    embedding_id: UUID = Field(..., description="Unique identifier of the face embedding")
    image_id: str = Field(..., description="Image the face was detected in")
    face_index: int = Field(..., description="Index of the face among the image's faces")
    owner_id: Optional[UUID] = Field(None, description="Person the face is attributed to")
    bounding_box: BoundingBox = Field(..., description="Normalized bounding box (bottom-left origin)")
    quality_score: float
    is_verified: bool
    is_representative: bool
    image_date: Optional[datetime] = None
    thumbnail: Optional[str] = Field(None, description="Base64-encoded JPEG thumbnail")

    @classmethod
    def from_embedding(cls, record: FaceEmbedding, include_thumbnail: bool = False) -> "FaceRecord":
        """Create an API FaceRecord from a stored embedding."""
        thumbnail = None
        if include_thumbnail and record.thumbnail:
            thumbnail = base64.b64encode(record.thumbnail).decode("ascii")
        return cls(
            embedding_id=record.id,
            image_id=record.image_id,
            face_index=record.face_index,
            owner_id=record.owner_id,
            bounding_box=BoundingBox.from_list(record.bounding_box),
            quality_score=record.quality_score,
            is_verified=record.is_verified,
            is_representative=record.is_representative,
            image_date=record.image_date,
            thumbnail=thumbnail,
        )


class StoredFacesResponse(BaseModel):
    """Stored faces of one image in reading order."""
    image_id: str
    faces: List[FaceRecord]


class SimilarFace(BaseModel):
    """API model representing a single similar face in the response."""
    face: FaceRecord
    similarity: float = Field(..., description="Cosine similarity", ge=MIN_THRESHOLD, le=MAX_THRESHOLD)


class SimilarFacesResponse(BaseModel):
    """Response model for exploratory similarity queries."""
    embedding_id: UUID = Field(..., description="Face used as the query")
    matches: List[SimilarFace]


class ClusterResponse(BaseModel):
    """Centroid summary of a person's verified faces."""
    person_id: UUID
    face_count: int
    average_quality: float
    centroid: List[float]
    updated_at: Optional[datetime] = None

    @classmethod
    def from_cluster(cls, cluster: PersonCluster) -> "ClusterResponse":
        vector = decode_vector(cluster.centroid_vector)
        return cls(
            person_id=cluster.owner_id,
            face_count=cluster.face_count,
            average_quality=cluster.average_quality,
            centroid=vector.tolist() if vector is not None else [],
            updated_at=cluster.updated_at,
        )


class DeletionResponse(BaseModel):
    """Number of face records removed."""
    deleted: int = Field(..., ge=0)
