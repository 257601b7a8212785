"""Service container for dependency injection."""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from facematch.core.logging import get_logger
from facematch.domain.interfaces.recognition.face_analysis import FaceAnalysisBackend
from facematch.domain.interfaces.storage.image_source import ImageSource
from facematch.infrastructure.database.session import create_session_factory, engine_of, init_models
from facematch.infrastructure.storage.local import LocalDirectoryImageSource
from facematch.services.concurrency import PersonLockRegistry
from facematch.services.face_clustering import FaceClusterService
from facematch.services.face_review import FaceReviewService
from facematch.services.feature_extractor import FeatureExtractor
from facematch.services.match_orchestrator import MatchOrchestrator
from facematch.services.similarity import SimilarityMatcher

logger = get_logger(__name__)


class ServiceContainer:
    """Container for application services.

    This container manages the lifecycle and dependencies of all services in the application.
    It ensures proper initialization order and provides a single source of truth for service instances.
    Collaborators may be supplied up front (tests pass a fake backend and image source);
    anything missing is built by ``initialize``.

    Example:
        ```python
        container = ServiceContainer()
        await container.initialize()

        # Get services from container
        orchestrator = container.match_orchestrator
        review = container.face_review_service
        ```
    """

    def __init__(
        self,
        backend: Optional[FaceAnalysisBackend] = None,
        image_source: Optional[ImageSource] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        """Initialize container, optionally with pre-built collaborators."""
        # Core services - Use interface type hints
        self.backend: Optional[FaceAnalysisBackend] = backend
        self.image_source: Optional[ImageSource] = image_source
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = session_factory

        # Domain services (depend on interfaces)
        self.feature_extractor: Optional[FeatureExtractor] = None
        self.similarity_matcher: Optional[SimilarityMatcher] = None
        self.locks: Optional[PersonLockRegistry] = None
        self.match_orchestrator: Optional[MatchOrchestrator] = None
        self.face_review_service: Optional[FaceReviewService] = None

    @property
    def initialized(self) -> bool:
        return self.match_orchestrator is not None

    async def initialize(self) -> None:
        """Initialize all services in the correct order."""
        if self.initialized:
            return

        if self.session_factory is None:
            self.session_factory = create_session_factory()
        await init_models(engine_of(self.session_factory))

        if self.backend is None:
            # Loads the ONNX models; imported here so the service can be
            # assembled without insightface when a backend is supplied
            from facematch.services.recognition.insight_face import InsightFaceBackend
            self.backend = InsightFaceBackend()
        if self.image_source is None:
            self.image_source = LocalDirectoryImageSource()

        clusters = FaceClusterService()
        self.feature_extractor = FeatureExtractor(self.backend)
        self.similarity_matcher = SimilarityMatcher(self.backend)
        self.locks = PersonLockRegistry()
        self.match_orchestrator = MatchOrchestrator(
            session_factory=self.session_factory,
            image_source=self.image_source,
            extractor=self.feature_extractor,
            matcher=self.similarity_matcher,
            locks=self.locks,
            clusters=clusters,
        )
        self.face_review_service = FaceReviewService(
            session_factory=self.session_factory,
            matcher=self.similarity_matcher,
            clusters=clusters,
        )
        logger.info("Initialized services", backend=type(self.backend).__name__)

    async def cleanup(self) -> None:
        """Cleanup all services in reverse order of initialization."""
        # Stop background continuations before the engine goes away
        if self.match_orchestrator:
            await self.match_orchestrator.shutdown()
        self.match_orchestrator = None
        self.face_review_service = None
        self.similarity_matcher = None
        self.feature_extractor = None
        self.locks = None

        # Cleanup infrastructure services
        if self.session_factory is not None:
            await engine_of(self.session_factory).dispose()
            self.session_factory = None
        self.backend = None
        self.image_source = None


# Global container instance
container = ServiceContainer()
