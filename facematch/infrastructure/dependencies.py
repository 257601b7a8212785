"""FastAPI dependency providers."""
from fastapi import Depends

from facematch.core.container import ServiceContainer, container
from facematch.core.exceptions import ServiceNotInitializedError
from facematch.services.face_review import FaceReviewService
from facematch.services.match_orchestrator import MatchOrchestrator


async def get_container() -> ServiceContainer:
    """Dependency provider for the global ServiceContainer instance."""
    if not container.initialized:
        # Attempt to initialize if not already done (e.g., during testing)
        try:
            await container.initialize()
        except Exception as e:
            # Raise specific error if container is needed but fails init
            raise ServiceNotInitializedError(f"Service container could not be initialized: {e}") from e
    return container


async def get_match_orchestrator(
    services: ServiceContainer = Depends(get_container),
) -> MatchOrchestrator:
    """Provide the match orchestrator.

    Raises:
        ServiceNotInitializedError: If the orchestrator is not initialized
    """
    if services.match_orchestrator is None:
        raise ServiceNotInitializedError("Match orchestrator not initialized")
    return services.match_orchestrator


async def get_face_review_service(
    services: ServiceContainer = Depends(get_container),
) -> FaceReviewService:
    """Provide the face review service.

    Raises:
        ServiceNotInitializedError: If the review service is not initialized
    """
    if services.face_review_service is None:
        raise ServiceNotInitializedError("Face review service not initialized")
    return services.face_review_service
