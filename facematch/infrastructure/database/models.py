"""SQLAlchemy models for the face record store."""
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Timezone-aware current time used for column defaults."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops the offset on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Person(Base):
    """A contact whose faces can be searched for."""

    __tablename__ = "people"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )
    primary_photo: Mapped[Optional[bytes]] = mapped_column(
        LargeBinary,
        nullable=True,
        comment="Encoded primary/contact photo used to bootstrap a reference face"
    )
    primary_photo_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the primary photo was taken or added"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow
    )


class FaceEmbedding(Base):
    """One detected face of one image, with its feature vector.

    ``owner_id`` is NULL for a detected but unattributed face, kept so a
    later attribution never needs to re-run extraction.
    """

    __tablename__ = "face_embeddings"
    __table_args__ = (
        UniqueConstraint("image_id", "face_index", name="uq_face_embeddings_image_face"),
        Index("idx_face_embeddings_owner", "owner_id", "is_verified"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    image_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        comment="Library image identifier, or a synthetic id for manual photos"
    )
    face_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Index of the face among the image's extracted faces"
    )
    owner_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("people.id", ondelete="CASCADE"),
        nullable=True,
    )
    vector: Mapped[bytes] = mapped_column(
        LargeBinary,
        nullable=False,
        comment="Feature vector as float32 bytes"
    )
    bounding_box: Mapped[List[float]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="[x, y, width, height], normalized, bottom-left origin"
    )
    quality_score: Mapped[float] = mapped_column(Float, default=0.0)
    yaw: Mapped[float] = mapped_column(Float, default=0.0)
    pitch: Mapped[float] = mapped_column(Float, default=0.0)
    roll: Mapped[float] = mapped_column(Float, default=0.0)
    image_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Capture date of the source image"
    )
    is_verified: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="Confirmed by a person as belonging to owner_id"
    )
    is_representative: Mapped[bool] = mapped_column(Boolean, default=False)
    thumbnail: Mapped[bytes] = mapped_column(LargeBinary, default=b"")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow
    )
    last_analyzed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow
    )


class PersonCluster(Base):
    """Normalized centroid of a person's verified face vectors."""

    __tablename__ = "person_clusters"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("people.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    centroid_vector: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    face_count: Mapped[int] = mapped_column(Integer, default=0)
    average_quality: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow
    )
