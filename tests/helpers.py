"""Deterministic fakes shared by the test suite.

Images are synthetic: each face is a solid rectangle whose color encodes the
face, and pixel (0, 0) encodes the image itself. The fake backend decodes
those colors back into the registered detections and feature vectors, so the
real feature extractor (orientation, cropping, quality filter) runs unchanged.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

import cv2
import numpy as np

from facematch.core.utils.vectors import decode_vector, encode_vector
from facematch.domain.entities.face import BoundingBox, FaceDetection, ImageRef, Pose
from facematch.domain.interfaces.recognition.face_analysis import FaceAnalysisBackend
from facematch.domain.interfaces.storage.image_source import ImageSource
from facematch.domain.value_objects.image import CorpusFilter, LoadedImage
from facematch.infrastructure.database.models import FaceEmbedding, Person
from facematch.infrastructure.database.unit_of_work import open_unit_of_work

IMAGE_SIZE = 200

REFERENCE = [1.0, 0.0, 0.0, 0.0]
LOOKALIKE = [0.99, 0.1, 0.0, 0.0]
STRANGER = [0.0, 1.0, 0.0, 0.0]
OTHER_STRANGER = [0.0, 0.0, 1.0, 0.0]


@dataclass
class FaceSpec:
    """A face painted into a synthetic image."""
    vector: Sequence[float]
    box: BoundingBox = field(default_factory=lambda: BoundingBox(x=0.3, y=0.3, width=0.4, height=0.4))
    confidence: float = 0.99
    pose: Optional[Pose] = None
    quality: Optional[float] = None


def _color(code: int) -> Tuple[int, int, int]:
    return (code >> 16) & 0xFF, (code >> 8) & 0xFF, code & 0xFF


def _code(pixel: np.ndarray) -> int:
    b, g, r = (int(v) for v in pixel[:3])
    return (b << 16) | (g << 8) | r


class FaceWorld:
    """Registry mapping painted colors back to faces."""

    def __init__(self) -> None:
        self._next = 1
        self._images: Dict[int, List[Tuple[int, FaceSpec]]] = {}
        self._faces: Dict[int, FaceSpec] = {}

    def _allocate(self) -> int:
        code = self._next
        self._next += 1
        return code

    def render(self, faces: Sequence[FaceSpec] = ()) -> np.ndarray:
        """Paint an image containing the given faces."""
        image = np.zeros((IMAGE_SIZE, IMAGE_SIZE, 3), dtype=np.uint8)
        marker = self._allocate()
        painted = []
        for face in faces:
            code = self._allocate()
            left, top, width, height = face.box.to_pixel_rect((IMAGE_SIZE, IMAGE_SIZE))
            x1, y1 = int(left), int(top)
            x2, y2 = int(left + width), int(top + height)
            image[y1:y2, x1:x2] = _color(code)
            self._faces[code] = face
            painted.append((code, face))
        image[0, 0] = _color(marker)
        self._images[marker] = painted
        return image

    def render_png(self, faces: Sequence[FaceSpec] = ()) -> bytes:
        ok, buffer = cv2.imencode(".png", self.render(faces))
        assert ok
        return buffer.tobytes()

    def faces_in(self, image: np.ndarray) -> List[FaceSpec]:
        return [face for _, face in self._images.get(_code(image[0, 0]), [])]

    def face_in_crop(self, crop: np.ndarray) -> Optional[FaceSpec]:
        height, width = crop.shape[:2]
        return self._faces.get(_code(crop[height // 2, width // 2]))


class FakeBackend(FaceAnalysisBackend):
    """Backend reading faces back from synthetic images.

    The observation distance is the plain Euclidean distance of the raw
    vectors, so tests can build pairs that pass one threshold but not the
    other.
    """

    crop_size = (32, 32)

    def __init__(self, world: FaceWorld) -> None:
        self.world = world
        self.detect_calls = 0
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()
        self.fail_detection = False

    async def detect_faces(self, image: np.ndarray) -> List[FaceDetection]:
        self.detect_calls += 1
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_detection:
            raise RuntimeError("model crashed")
        return [
            FaceDetection(bounding_box=face.box, confidence=face.confidence, pose=face.pose, quality=face.quality)
            for face in self.world.faces_in(image)
        ]

    async def feature_vector(self, crop: np.ndarray) -> Optional[bytes]:
        face = self.world.face_in_crop(crop)
        return encode_vector(face.vector) if face is not None else None

    def distance(self, vector_a: bytes, vector_b: bytes) -> float:
        a, b = decode_vector(vector_a), decode_vector(vector_b)
        if a is None or b is None or a.shape != b.shape:
            raise ValueError("Feature vectors are not comparable")
        return float(np.linalg.norm(a - b))


class FakeImageSource(ImageSource):
    """In-memory photo library of synthetic images."""

    def __init__(self, world: FaceWorld) -> None:
        self.world = world
        self.images: Dict[str, Tuple[ImageRef, np.ndarray]] = {}
        self.dates: Dict[str, Optional[datetime]] = {}
        self.loaded: List[str] = []
        self.fail_corpus = False
        self.previews: Dict[str, np.ndarray] = {}
        self.preview_only: set = set()

    def add(self, image_id: str, created_at: Optional[datetime], faces: Sequence[FaceSpec] = ()) -> ImageRef:
        ref = ImageRef(image_id=image_id)
        self.images[image_id] = (ref, self.world.render(faces))
        self.dates[image_id] = created_at
        return ref

    async def fetch_corpus(self, corpus_filter: Optional[CorpusFilter] = None) -> List[ImageRef]:
        if self.fail_corpus:
            raise ConnectionError("photo library unavailable")
        return [ref for ref, _ in self.images.values()]

    async def creation_date(self, ref: ImageRef) -> Optional[datetime]:
        return self.dates.get(ref.image_id)

    async def deliveries(
        self,
        ref: ImageRef,
        target_size: Optional[Tuple[int, int]] = None,
    ) -> AsyncIterator[LoadedImage]:
        self.loaded.append(ref.image_id)
        if ref.image_id in self.previews:
            yield LoadedImage(pixels=self.previews[ref.image_id], degraded=True)
            if ref.image_id in self.preview_only:
                await asyncio.sleep(3600)
        if ref.image_id in self.images:
            yield LoadedImage(pixels=self.images[ref.image_id][1])


async def add_person(
    session_factory,
    name: str = "Ada",
    primary_photo: Optional[bytes] = None,
    primary_photo_date: Optional[datetime] = None,
) -> Person:
    async with open_unit_of_work(session_factory) as uow:
        person = await uow.people.create(name, primary_photo, primary_photo_date)
        await uow.save()
        return person


async def add_embedding(
    session_factory,
    image_id: str,
    vector: Sequence[float],
    owner_id: Optional[UUID] = None,
    verified: bool = False,
    face_index: int = 0,
    box: Sequence[float] = (0.3, 0.3, 0.4, 0.4),
    image_date: Optional[datetime] = None,
    quality: float = 0.9,
) -> FaceEmbedding:
    async with open_unit_of_work(session_factory) as uow:
        record = await uow.embeddings.add(FaceEmbedding(
            image_id=image_id,
            face_index=face_index,
            owner_id=owner_id,
            vector=encode_vector(vector),
            bounding_box=list(box),
            quality_score=quality,
            image_date=image_date,
            is_verified=verified,
        ))
        await uow.save()
        return record


async def embeddings_for_image(session_factory, image_id: str) -> List[FaceEmbedding]:
    async with open_unit_of_work(session_factory) as uow:
        return await uow.embeddings.list_for_image(image_id)


async def embeddings_for_owner(session_factory, owner_id: UUID) -> List[FaceEmbedding]:
    async with open_unit_of_work(session_factory) as uow:
        return await uow.embeddings.list_for_owner(owner_id)
