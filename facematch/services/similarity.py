"""
Similarity matching between face embeddings.

Two independent signals are used. The observation distance is the analysis
backend's own metric over its feature vectors (lower is closer); cosine
similarity is computed directly on the raw float32 vectors (higher is
closer). Contact matching requires both to agree, exploratory "who looks
like this" queries use cosine similarity alone.

Example:
    ```python
    matcher = SimilarityMatcher(backend)
    if matcher.are_similar(reference.vector, candidate.vector):
        ...
    neighbours = matcher.find_similar(query_record, stored_records, top_k=10)
    ```
"""
from typing import List, Optional, Protocol, Sequence, Tuple, TypeVar, Union

import numpy as np

from facematch.core.config import settings
from facematch.core.logging import get_logger
from facematch.core.utils.vectors import decode_vector, l2_normalize
from facematch.domain.interfaces.recognition.face_analysis import FaceAnalysisBackend
from facematch.domain.value_objects.recognition import ReferenceMatch

logger = get_logger(__name__)


class EmbeddingLike(Protocol):
    """Anything carrying an identity and a float32 feature vector."""
    id: object
    vector: bytes


E = TypeVar("E", bound=EmbeddingLike)
VectorSource = Union[bytes, EmbeddingLike]


def _vector_bytes(item: VectorSource) -> bytes:
    if isinstance(item, (bytes, bytearray, memoryview)):
        return bytes(item)
    return item.vector


def cosine_similarity(vector_a: bytes, vector_b: bytes) -> Optional[float]:
    """Cosine similarity of two raw float32 vectors.

    Returns:
        Similarity in [-1, 1]; 0.0 when either vector has zero magnitude;
        None when the payloads are not comparable float vectors.
    """
    a = decode_vector(vector_a)
    b = decode_vector(vector_b)
    if a is None or b is None or a.shape != b.shape:
        return None
    magnitude = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if magnitude == 0.0:
        return 0.0
    return float(np.clip(np.dot(a, b) / magnitude, -1.0, 1.0))


class SimilarityMatcher:
    """Dual-threshold face matching, exploratory search and centroids."""

    def __init__(
        self,
        backend: FaceAnalysisBackend,
        observation_threshold: Optional[float] = None,
        cosine_threshold: Optional[float] = None,
        exploratory_threshold: Optional[float] = None,
        exploratory_top_k: Optional[int] = None,
    ) -> None:
        """Initialize the matcher.

        Args:
            backend: Analysis backend providing the model-native distance
            observation_threshold: Max observation distance for a match
            cosine_threshold: Min cosine similarity for a match
            exploratory_threshold: Default cosine threshold for ``find_similar``
            exploratory_top_k: Default result cap for ``find_similar``
        """
        self._backend = backend
        self.observation_threshold = (
            settings.OBSERVATION_DISTANCE_THRESHOLD if observation_threshold is None else observation_threshold
        )
        self.cosine_threshold = (
            settings.COSINE_SIMILARITY_THRESHOLD if cosine_threshold is None else cosine_threshold
        )
        self.exploratory_threshold = (
            settings.EXPLORATORY_SIMILARITY_THRESHOLD if exploratory_threshold is None else exploratory_threshold
        )
        self.exploratory_top_k = settings.EXPLORATORY_TOP_K if exploratory_top_k is None else exploratory_top_k

    def observation_distance(self, vector_a: bytes, vector_b: bytes) -> Optional[float]:
        """Backend distance between two vectors, or None if they cannot be compared."""
        try:
            return float(self._backend.distance(vector_a, vector_b))
        except ValueError as e:
            logger.debug("Observation distance unavailable", error=str(e))
            return None

    @staticmethod
    def cosine_similarity(vector_a: bytes, vector_b: bytes) -> Optional[float]:
        """Cosine similarity of two raw vectors (see module-level function)."""
        return cosine_similarity(vector_a, vector_b)

    def compare(
        self,
        vector_a: bytes,
        vector_b: bytes,
        observation_threshold: Optional[float] = None,
        cosine_threshold: Optional[float] = None,
    ) -> Optional[ReferenceMatch]:
        """Return both scores when the pair passes both thresholds, else None."""
        obs_threshold = self.observation_threshold if observation_threshold is None else observation_threshold
        cos_threshold = self.cosine_threshold if cosine_threshold is None else cosine_threshold

        distance = self.observation_distance(vector_a, vector_b)
        if distance is None or distance > obs_threshold:
            return None
        similarity = cosine_similarity(vector_a, vector_b)
        if similarity is None or similarity < cos_threshold:
            return None
        return ReferenceMatch(distance=distance, similarity=similarity)

    def are_similar(
        self,
        vector_a: bytes,
        vector_b: bytes,
        observation_threshold: Optional[float] = None,
        cosine_threshold: Optional[float] = None,
    ) -> bool:
        """True only if observation distance <= threshold AND cosine >= threshold."""
        return self.compare(vector_a, vector_b, observation_threshold, cosine_threshold) is not None

    def best_reference_match(
        self,
        vector: bytes,
        references: Sequence[VectorSource],
    ) -> Optional[ReferenceMatch]:
        """Closest agreeing reference for a vector, or None when no reference matches."""
        best: Optional[ReferenceMatch] = None
        for reference in references:
            match = self.compare(_vector_bytes(reference), vector)
            if match is not None and (best is None or match.is_better_than(best)):
                best = match
        return best

    def find_similar(
        self,
        query: EmbeddingLike,
        candidates: Sequence[E],
        threshold: Optional[float] = None,
        top_k: Optional[int] = None,
    ) -> List[Tuple[E, float]]:
        """Exploratory search by cosine similarity.

        Args:
            query: Embedding to search for
            candidates: Embeddings to rank; the query itself is skipped by id
            threshold: Minimum cosine similarity (defaults to the exploratory threshold)
            top_k: Maximum number of results

        Returns:
            ``(candidate, similarity)`` pairs, most similar first
        """
        threshold = self.exploratory_threshold if threshold is None else threshold
        top_k = self.exploratory_top_k if top_k is None else top_k

        results: List[Tuple[E, float]] = []
        for candidate in candidates:
            if candidate.id == query.id:
                continue
            similarity = cosine_similarity(query.vector, candidate.vector)
            if similarity is not None and similarity >= threshold:
                results.append((candidate, similarity))

        results.sort(key=lambda item: item[1], reverse=True)
        return results[:max(0, top_k)]

    @staticmethod
    def centroid(embeddings: Sequence[VectorSource]) -> Optional[np.ndarray]:
        """Unit-length mean of a set of vectors.

        Vectors whose dimension differs from the first decodable vector are
        ignored.

        Returns:
            The normalized centroid, or None for an empty input or a zero mean
        """
        vectors = [v for v in (decode_vector(_vector_bytes(item)) for item in embeddings) if v is not None]
        if not vectors:
            return None

        dimension = vectors[0].shape[0]
        same_dimension = [v for v in vectors if v.shape[0] == dimension]
        if len(same_dimension) != len(vectors):
            logger.warning(
                "Ignoring vectors with mismatched dimension in centroid",
                expected_dimension=dimension,
                ignored=len(vectors) - len(same_dimension),
            )

        mean = np.mean(np.stack(same_dimension), axis=0)
        return l2_normalize(mean)
