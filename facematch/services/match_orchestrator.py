"""Person-triggered search for matching faces across a photo library."""
import asyncio
import inspect
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from facematch.core.config import settings
from facematch.core.exceptions import NoReferenceAvailableError
from facematch.core.logging import get_logger
from facematch.core.utils.image import photo_capture_date
from facematch.domain.entities.face import ExtractedFace, ImageRef
from facematch.domain.interfaces.storage.image_source import ImageSource
from facematch.domain.value_objects.image import CorpusFilter
from facematch.domain.value_objects.recognition import ReferenceMatch
from facematch.infrastructure.database.models import FaceEmbedding, Person, as_utc
from facematch.infrastructure.database.unit_of_work import UnitOfWork, open_unit_of_work
from facematch.services.analysis_cache import AnalysisCache, primary_photo_image_id
from facematch.services.concurrency import CancellationToken, PersonLockRegistry
from facematch.services.face_clustering import FaceClusterService
from facematch.services.feature_extractor import FeatureExtractor
from facematch.services.similarity import SimilarityMatcher

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int], Union[None, Awaitable[None]]]


class SearchOptions(BaseModel):
    """Tunable limits of a search."""
    batch_size: int = Field(
        default_factory=lambda: settings.SEARCH_BATCH_SIZE,
        ge=1,
        description="Images processed (and saved) per batch",
    )
    initial_ceiling: int = Field(
        default_factory=lambda: settings.SEARCH_INITIAL_CEILING,
        ge=0,
        description="Images extracted before the call returns",
    )
    continue_in_background: bool = Field(
        default_factory=lambda: settings.CONTINUE_IN_BACKGROUND,
        description="Extract images past the ceiling in a background task",
    )
    max_concurrent_extractions: int = Field(
        default_factory=lambda: settings.MAX_CONCURRENT_EXTRACTIONS,
        ge=1,
        description="Extractions running at once within a batch",
    )
    image_load_timeout: float = Field(
        default_factory=lambda: settings.IMAGE_LOAD_TIMEOUT,
        gt=0,
        description="Seconds to wait for a non-degraded image delivery",
    )
    corpus_filter: Optional[CorpusFilter] = Field(None, description="Restriction passed to the image source")


class _Progress:
    """Reports ``(processed, planned)`` to an optional callback."""

    def __init__(self, callback: Optional[ProgressCallback], planned: int) -> None:
        self._callback = callback
        self.planned = planned
        self.processed = 0

    async def advance(self, count: int) -> None:
        self.processed += count
        if self._callback is None:
            return
        try:
            result = self._callback(self.processed, self.planned)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("Progress callback failed", error=str(e))


def _proximity_key(created_at: Optional[datetime], anchors: Sequence[datetime]) -> Tuple[int, float]:
    if created_at is None or not anchors:
        return (1, 0.0)
    return (0, min(abs((created_at - anchor).total_seconds()) for anchor in anchors))


class MatchOrchestrator:
    """Finds the faces of a person across the photo library.

    A search collects the person's reference embeddings, orders the library
    by temporal proximity to them and then works in batches: images never
    analyzed before go through the feature extractor, images analyzed by an
    earlier search only have their stored unattributed faces matched. All
    extracted faces are stored, so no image is ever analyzed twice.

    At most one search runs per person; a second request fails with
    ``AlreadyInProgressError`` before touching the record store.

    Example:
        ```python
        orchestrator = MatchOrchestrator(session_factory, image_source, extractor, matcher)
        matched = await orchestrator.start_search(person_id, progress_callback=print)
        ...
        await orchestrator.shutdown()
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        image_source: ImageSource,
        extractor: FeatureExtractor,
        matcher: SimilarityMatcher,
        locks: Optional[PersonLockRegistry] = None,
        clusters: Optional[FaceClusterService] = None,
        options: Optional[SearchOptions] = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            session_factory: Factory for the per-search record store sessions
            image_source: Photo library to search
            extractor: Feature extractor for images without stored faces
            matcher: Similarity matcher used against reference embeddings
            locks: Per-person lock registry (shared when several orchestrators coexist)
            clusters: Cluster maintenance used after a reference is bootstrapped
            options: Search limits; defaults come from settings
        """
        self._session_factory = session_factory
        self._image_source = image_source
        self._extractor = extractor
        self._matcher = matcher
        self._locks = locks or PersonLockRegistry()
        self._clusters = clusters or FaceClusterService()
        self.options = options or SearchOptions()
        self._continuations: Dict[UUID, asyncio.Task] = {}

    @property
    def locks(self) -> PersonLockRegistry:
        return self._locks

    @property
    def continuations(self) -> Set[asyncio.Task]:
        """Background continuations still running."""
        return set(self._continuations.values())

    def is_continuing(self, person_id: UUID) -> bool:
        """Whether a background continuation for the person is still running."""
        task = self._continuations.get(person_id)
        return task is not None and not task.done()

    async def start_search(
        self,
        person_id: UUID,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> int:
        """Search the library for faces of a person.

        Args:
            person_id: Person to search for
            progress_callback: Called with ``(processed, planned)`` after every batch
            cancel_token: Stops the search at the next batch or image boundary

        Returns:
            Number of faces attributed to the person by this call. Faces found
            by a background continuation are not included.

        Raises:
            AlreadyInProgressError: If a search for the person is running
            PersonNotFoundError: If the person does not exist
            NoReferenceAvailableError: If the person has no verified face and
                no face can be extracted from their primary photo
            StoreUnavailableError: If the record store cannot be queried
            SaveFailedError: If a batch cannot be saved
        """
        token = cancel_token or CancellationToken()
        self._locks.acquire(person_id)
        continuation: Optional[asyncio.Task] = None
        try:
            logger.info("Starting face search", person_id=str(person_id))
            async with open_unit_of_work(self._session_factory) as uow:
                person = await uow.people.get(person_id)
                references = await self._collect_references(uow, person)
                reference_vectors = [record.vector for record in references]

                corpus = await self._ordered_corpus(person, references)
                owned = await uow.embeddings.image_ids_for_owner(person_id)
                candidates = [ref for ref in corpus if ref.image_id not in owned]

                cache = AnalysisCache(uow.embeddings)
                stored = await cache.image_ids_with_stored_faces(scope=[ref.image_id for ref in candidates])
                to_extract = [ref for ref in candidates if ref.image_id not in stored]
                to_match_only = [ref for ref in candidates if ref.image_id in stored]

                ceiling = self.options.initial_ceiling
                primary, remainder = to_extract[:ceiling], to_extract[ceiling:]
                progress = _Progress(progress_callback, len(primary) + len(to_match_only))
                logger.info(
                    "Planned face search",
                    person_id=str(person_id),
                    references=len(references),
                    corpus=len(corpus),
                    excluded=len(corpus) - len(candidates),
                    to_extract=len(primary),
                    to_match_only=len(to_match_only),
                    deferred=len(remainder),
                )

                matched = await self._extract_pass(uow, cache, person_id, reference_vectors, primary, progress, token)
                if not token.cancelled:
                    matched += await self._match_only_pass(
                        uow, person_id, reference_vectors, to_match_only, progress, token
                    )

            if token.cancelled:
                logger.info("Face search cancelled", person_id=str(person_id), matched=matched)
            elif remainder:
                if self.options.continue_in_background:
                    continuation = self._schedule_continuation(
                        person_id, reference_vectors, remainder, progress_callback, token
                    )
                else:
                    logger.info(
                        "Images past the search ceiling left for a later search",
                        person_id=str(person_id),
                        deferred=len(remainder),
                    )

            logger.info("Face search finished", person_id=str(person_id), matched=matched)
            return matched

        finally:
            if continuation is None:
                self._locks.release(person_id)

    async def shutdown(self, cancel: bool = True) -> None:
        """Stop (or wait for) background continuations."""
        tasks = list(self._continuations.values())
        if not tasks:
            return
        if cancel:
            for task in tasks:
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Background continuations stopped", count=len(tasks), cancelled=cancel)

    async def _collect_references(self, uow: UnitOfWork, person: Person) -> List[FaceEmbedding]:
        verified = await uow.embeddings.list_for_owner(person.id, verified_only=True)
        if verified:
            return verified
        return [await self._bootstrap_reference(uow, person)]

    async def _bootstrap_reference(self, uow: UnitOfWork, person: Person) -> FaceEmbedding:
        """Create a verified reference embedding from the person's primary photo."""
        if not person.primary_photo:
            raise NoReferenceAvailableError(
                "Person has no verified faces and no primary photo",
                {"person_id": str(person.id)},
            )

        faces = await self._extractor.extract_from_bytes(person.primary_photo)
        if not faces:
            raise NoReferenceAvailableError(
                "No face could be extracted from the primary photo",
                {"person_id": str(person.id)},
            )

        best = max(faces, key=lambda face: face.detection.confidence)
        image_id = primary_photo_image_id(person.id)
        await uow.embeddings.delete_for_image(image_id)
        records = await AnalysisCache(uow.embeddings).record_faces(
            image_id,
            [best],
            image_date=await self._primary_photo_date(person),
            owner_id=person.id,
            owner_face_index=0,
            verified=True,
            representative=True,
        )
        await self._clusters.refresh(uow, person.id)
        await uow.save()
        logger.info(
            "Bootstrapped reference face from primary photo",
            person_id=str(person.id),
            detected=len(faces),
            confidence=round(best.detection.confidence, 3),
        )
        return records[0]

    async def _primary_photo_date(self, person: Person) -> Optional[datetime]:
        if person.primary_photo:
            captured = await asyncio.to_thread(photo_capture_date, person.primary_photo)
            if captured is not None:
                return as_utc(captured)
        return as_utc(person.primary_photo_date) or as_utc(person.created_at)

    async def _ordered_corpus(self, person: Person, references: Sequence[FaceEmbedding]) -> List[ImageRef]:
        """Library images, closest in time to a known photo of the person first."""
        try:
            corpus = await self._image_source.fetch_corpus(self.options.corpus_filter)
        except Exception as e:
            logger.warning("Corpus fetch failed, searching an empty corpus", error=str(e), exc_info=True)
            return []

        anchors = [as_utc(record.image_date) for record in references if record.image_date is not None]
        primary_date = await self._primary_photo_date(person)
        if primary_date is not None:
            anchors.append(primary_date)

        seen: Set[str] = set()
        dated: List[ImageRef] = []
        for ref in corpus:
            if ref.image_id in seen:
                continue
            seen.add(ref.image_id)
            try:
                created_at = as_utc(await self._image_source.creation_date(ref))
            except Exception as e:
                logger.warning("Image date unavailable, sorting it last", image_id=ref.image_id, error=str(e))
                created_at = None
            dated.append(ref.model_copy(update={"created_at": created_at}))

        return sorted(dated, key=lambda ref: _proximity_key(ref.created_at, anchors))

    async def _extract_pass(
        self,
        uow: UnitOfWork,
        cache: AnalysisCache,
        person_id: UUID,
        references: Sequence[bytes],
        images: Sequence[ImageRef],
        progress: _Progress,
        token: CancellationToken,
    ) -> int:
        matched = 0
        batch_size = self.options.batch_size
        for start in range(0, len(images), batch_size):
            if token.cancelled:
                break
            batch = images[start:start + batch_size]
            results = await self._extract_batch(batch, token)
            for ref, faces in results:
                if faces:
                    matched += await self._persist_extracted(uow, cache, person_id, references, ref, faces)
            await uow.save()
            await progress.advance(len(batch))
            logger.debug(
                "Extraction batch saved",
                person_id=str(person_id),
                processed=progress.processed,
                planned=progress.planned,
                matched=matched,
            )
        return matched

    async def _extract_batch(
        self,
        batch: Sequence[ImageRef],
        token: CancellationToken,
    ) -> List[Tuple[ImageRef, Optional[List[ExtractedFace]]]]:
        """Run extraction for a batch with bounded concurrency; no record store access."""
        semaphore = asyncio.Semaphore(self.options.max_concurrent_extractions)

        async def run(ref: ImageRef) -> Tuple[ImageRef, Optional[List[ExtractedFace]]]:
            async with semaphore:
                if token.cancelled:
                    return ref, None
                faces = await self._extractor.extract_from_source(
                    self._image_source,
                    ref,
                    timeout=self.options.image_load_timeout,
                )
                return ref, faces

        return list(await asyncio.gather(*(run(ref) for ref in batch)))

    async def _persist_extracted(
        self,
        uow: UnitOfWork,
        cache: AnalysisCache,
        person_id: UUID,
        references: Sequence[bytes],
        ref: ImageRef,
        faces: Sequence[ExtractedFace],
    ) -> int:
        """Store the faces of a freshly analyzed image; returns 1 if one was attributed."""
        if await cache.has_stored_faces(ref.image_id):
            # Stored by another search since the split
            return await self._match_stored(uow, person_id, references, ref.image_id)

        best_index: Optional[int] = None
        best_match: Optional[ReferenceMatch] = None
        for index, face in enumerate(faces):
            match = self._matcher.best_reference_match(face.vector, references)
            if match is not None and (best_match is None or match.is_better_than(best_match)):
                best_index, best_match = index, match

        if best_index is not None and await uow.embeddings.owner_has_image(person_id, ref.image_id):
            best_index = None

        records = await cache.record_faces(
            ref.image_id,
            faces,
            image_date=ref.created_at,
            owner_id=person_id,
            owner_face_index=best_index,
        )
        if not records or best_index is None:
            return 0
        logger.debug(
            "Matched face in new image",
            person_id=str(person_id),
            image_id=ref.image_id,
            distance=round(best_match.distance, 4),
            similarity=round(best_match.similarity, 4),
        )
        return 1

    async def _match_only_pass(
        self,
        uow: UnitOfWork,
        person_id: UUID,
        references: Sequence[bytes],
        images: Sequence[ImageRef],
        progress: _Progress,
        token: CancellationToken,
    ) -> int:
        matched = 0
        batch_size = self.options.batch_size
        for start in range(0, len(images), batch_size):
            if token.cancelled:
                break
            batch = images[start:start + batch_size]
            for ref in batch:
                if token.cancelled:
                    break
                matched += await self._match_stored(uow, person_id, references, ref.image_id)
            await uow.save()
            await progress.advance(len(batch))
        return matched

    async def _match_stored(
        self,
        uow: UnitOfWork,
        person_id: UUID,
        references: Sequence[bytes],
        image_id: str,
    ) -> int:
        """Attribute the best matching stored unattributed face of an image."""
        if await uow.embeddings.owner_has_image(person_id, image_id):
            return 0

        best_record: Optional[FaceEmbedding] = None
        best_match: Optional[ReferenceMatch] = None
        for record in await uow.embeddings.list_for_image(image_id):
            if record.owner_id is not None:
                continue
            match = self._matcher.best_reference_match(record.vector, references)
            if match is not None and (best_match is None or match.is_better_than(best_match)):
                best_record, best_match = record, match

        if best_record is None:
            return 0
        await uow.embeddings.assign_owner(best_record, person_id, verified=False)
        logger.debug(
            "Matched stored face",
            person_id=str(person_id),
            image_id=image_id,
            embedding_id=str(best_record.id),
        )
        return 1

    def _schedule_continuation(
        self,
        person_id: UUID,
        references: List[bytes],
        remaining: List[ImageRef],
        progress_callback: Optional[ProgressCallback],
        token: CancellationToken,
    ) -> asyncio.Task:
        task = asyncio.create_task(
            self._continue_search(person_id, references, remaining, progress_callback, token),
            name=f"search-continuation-{person_id}",
        )
        self._continuations[person_id] = task
        task.add_done_callback(lambda _: self._finish_continuation(person_id, task))
        logger.info("Scheduled background continuation", person_id=str(person_id), images=len(remaining))
        return task

    def _finish_continuation(self, person_id: UUID, task: asyncio.Task) -> None:
        # Runs even when the task is cancelled before its first step
        if self._continuations.get(person_id) is task:
            del self._continuations[person_id]
        self._locks.release(person_id)

    async def _continue_search(
        self,
        person_id: UUID,
        references: List[bytes],
        remaining: List[ImageRef],
        progress_callback: Optional[ProgressCallback],
        token: CancellationToken,
    ) -> int:
        """Process images past the ceiling while still holding the person's lock."""
        matched = 0
        try:
            async with open_unit_of_work(self._session_factory) as uow:
                cache = AnalysisCache(uow.embeddings)
                owned = await uow.embeddings.image_ids_for_owner(person_id)
                candidates = [ref for ref in remaining if ref.image_id not in owned]
                stored = await cache.image_ids_with_stored_faces(scope=[ref.image_id for ref in candidates])
                to_extract = [ref for ref in candidates if ref.image_id not in stored]
                to_match_only = [ref for ref in candidates if ref.image_id in stored]

                progress = _Progress(progress_callback, len(to_extract) + len(to_match_only))
                matched = await self._extract_pass(uow, cache, person_id, references, to_extract, progress, token)
                if not token.cancelled:
                    matched += await self._match_only_pass(
                        uow, person_id, references, to_match_only, progress, token
                    )
            logger.info(
                "Background continuation finished",
                person_id=str(person_id),
                matched=matched,
                cancelled=token.cancelled,
            )
            return matched
        except asyncio.CancelledError:
            logger.info("Background continuation cancelled", person_id=str(person_id), matched=matched)
            raise
        except Exception as e:
            logger.error(
                "Background continuation failed",
                person_id=str(person_id),
                error=str(e),
                exc_info=True,
            )
            return matched
