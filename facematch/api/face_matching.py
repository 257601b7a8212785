"""Face matching API endpoints."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from facematch.api.models.face import (
    AnalysisStatusResponse,
    ClusterResponse,
    DeletionResponse,
    FaceRecord,
    PersonCreateRequest,
    PersonResponse,
    SearchResponse,
    SimilarFace,
    SimilarFacesResponse,
    StoredFacesResponse,
)
from facematch.core.exceptions import (
    AlreadyInProgressError,
    EmbeddingNotFoundError,
    NoReferenceAvailableError,
    PersonNotFoundError,
    RecordStoreError,
)
from facematch.core.logging import get_logger
from facematch.infrastructure.dependencies import get_face_review_service, get_match_orchestrator
from facematch.services.face_review import FaceReviewService
from facematch.services.match_orchestrator import MatchOrchestrator

logger = get_logger(__name__)
router = APIRouter(
    responses={
        404: {"description": "Person or face not found"},
        503: {"description": "Record store unavailable"}
    }
)


def _store_unavailable(e: RecordStoreError) -> HTTPException:
    logger.error("Record store failure", error=str(e), details=e.details)
    return HTTPException(status_code=503, detail="Face record store unavailable")


@router.post(
    "/people",
    response_model=PersonResponse,
    status_code=201,
    tags=["people"],
    summary="Register a person",
)
async def create_person(
    request: PersonCreateRequest,
    service: FaceReviewService = Depends(get_face_review_service)
) -> PersonResponse:
    """Register a person, optionally with a primary photo."""
    try:
        person = await service.create_person(
            request.name,
            primary_photo=request.primary_photo,
            primary_photo_date=request.primary_photo_date,
        )
        return PersonResponse.from_person(person)
    except RecordStoreError as e:
        raise _store_unavailable(e)


@router.post(
    "/people/{person_id}/search",
    response_model=SearchResponse,
    tags=["search"],
    summary="Find a person's faces in the photo library",
    description=(
        "Matches the person's reference faces against every library image. "
        "Images past the search ceiling may keep being processed after the response."
    ),
    responses={
        409: {"description": "A search for this person is already running"},
        422: {"description": "The person has no reference face"},
    },
)
async def start_search(
    person_id: UUID,
    orchestrator: MatchOrchestrator = Depends(get_match_orchestrator)
) -> SearchResponse:
    """Run a search for a person.

    Args:
        person_id: Person to search for
        orchestrator: Match orchestrator provided by dependency injection

    Returns:
        SearchResponse with the number of newly attributed faces

    Raises:
        HTTPException: If the search cannot run
    """
    try:
        matched = await orchestrator.start_search(person_id)
        return SearchResponse(
            person_id=person_id,
            matched_count=matched,
            continuing_in_background=orchestrator.is_continuing(person_id),
        )

    except AlreadyInProgressError as e:
        logger.info("Rejected concurrent search", person_id=str(person_id))
        raise HTTPException(status_code=409, detail=str(e))
    except PersonNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NoReferenceAvailableError as e:
        logger.warning("No reference face for search", person_id=str(person_id), error=str(e))
        raise HTTPException(status_code=422, detail=str(e))
    except RecordStoreError as e:
        raise _store_unavailable(e)
    except Exception as e:
        logger.error("Unexpected error during face search",
                     person_id=str(person_id), error=str(e), exc_info=True)
        raise HTTPException(status_code=500, detail="An unexpected error occurred.")


@router.get(
    "/images/{image_id:path}/analysis",
    response_model=AnalysisStatusResponse,
    tags=["images"],
    summary="Whether an image has already been analyzed",
)
async def image_analysis_status(
    image_id: str,
    service: FaceReviewService = Depends(get_face_review_service)
) -> AnalysisStatusResponse:
    try:
        return AnalysisStatusResponse(image_id=image_id, analyzed=await service.is_analyzed(image_id))
    except RecordStoreError as e:
        raise _store_unavailable(e)


@router.get(
    "/images/{image_id:path}/faces",
    response_model=StoredFacesResponse,
    tags=["images"],
    summary="Stored faces of an image, top to bottom then left to right",
)
async def stored_faces(
    image_id: str,
    include_thumbnails: bool = Query(False, description="Include base64 JPEG thumbnails"),
    service: FaceReviewService = Depends(get_face_review_service)
) -> StoredFacesResponse:
    try:
        records = await service.stored_faces(image_id)
    except RecordStoreError as e:
        raise _store_unavailable(e)
    return StoredFacesResponse(
        image_id=image_id,
        faces=[FaceRecord.from_embedding(record, include_thumbnails) for record in records],
    )


@router.get(
    "/embeddings/{embedding_id}/similar",
    response_model=SimilarFacesResponse,
    tags=["faces"],
    summary="Stored faces that look like a given face",
)
async def similar_faces(
    embedding_id: UUID,
    threshold: Optional[float] = Query(None, description="Minimum cosine similarity", ge=-1.0, le=1.0),
    top_k: Optional[int] = Query(None, description="Maximum number of results", ge=1, le=500),
    service: FaceReviewService = Depends(get_face_review_service)
) -> SimilarFacesResponse:
    try:
        results = await service.similar_embeddings(embedding_id, threshold=threshold, top_k=top_k)
    except EmbeddingNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RecordStoreError as e:
        raise _store_unavailable(e)
    return SimilarFacesResponse(
        embedding_id=embedding_id,
        matches=[
            SimilarFace(face=FaceRecord.from_embedding(record), similarity=similarity)
            for record, similarity in results
        ],
    )


@router.post(
    "/people/{person_id}/centroid",
    response_model=ClusterResponse,
    tags=["people"],
    summary="Recompute a person's centroid from their verified faces",
)
async def refresh_centroid(
    person_id: UUID,
    service: FaceReviewService = Depends(get_face_review_service)
) -> ClusterResponse:
    try:
        cluster = await service.refresh_cluster(person_id)
    except PersonNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RecordStoreError as e:
        raise _store_unavailable(e)
    if cluster is None:
        raise HTTPException(status_code=404, detail="Person has no verified faces")
    return ClusterResponse.from_cluster(cluster)


@router.post(
    "/people/{person_id}/faces/{embedding_id}/confirm",
    response_model=FaceRecord,
    tags=["review"],
    summary="Confirm a suggested face",
)
async def confirm_face(
    person_id: UUID,
    embedding_id: UUID,
    service: FaceReviewService = Depends(get_face_review_service)
) -> FaceRecord:
    try:
        return FaceRecord.from_embedding(await service.confirm_face(person_id, embedding_id))
    except (PersonNotFoundError, EmbeddingNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RecordStoreError as e:
        raise _store_unavailable(e)


@router.delete(
    "/people/{person_id}/faces/{embedding_id}",
    response_model=FaceRecord,
    tags=["review"],
    summary="Reject a face, returning it to the unattributed pool",
)
async def unassign_face(
    person_id: UUID,
    embedding_id: UUID,
    service: FaceReviewService = Depends(get_face_review_service)
) -> FaceRecord:
    try:
        return FaceRecord.from_embedding(await service.unassign_face(person_id, embedding_id))
    except (PersonNotFoundError, EmbeddingNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RecordStoreError as e:
        raise _store_unavailable(e)


@router.delete(
    "/people/{person_id}/faces",
    response_model=DeletionResponse,
    tags=["review"],
    summary="Delete every face attributed to a person",
)
async def delete_person_faces(
    person_id: UUID,
    service: FaceReviewService = Depends(get_face_review_service)
) -> DeletionResponse:
    try:
        return DeletionResponse(deleted=await service.delete_faces_for_person(person_id))
    except RecordStoreError as e:
        raise _store_unavailable(e)


@router.delete(
    "/faces",
    response_model=DeletionResponse,
    tags=["review"],
    summary="Delete face data",
)
async def delete_faces(
    unassigned_only: bool = Query(False, description="Only delete faces not attributed to anyone"),
    service: FaceReviewService = Depends(get_face_review_service)
) -> DeletionResponse:
    try:
        if unassigned_only:
            deleted = await service.delete_unassigned_faces()
        else:
            deleted = await service.delete_all_face_data()
    except RecordStoreError as e:
        raise _store_unavailable(e)
    return DeletionResponse(deleted=deleted)
