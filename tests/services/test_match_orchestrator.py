"""Tests for the person-triggered library search."""
import asyncio
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from facematch.core.exceptions import (
    AlreadyInProgressError,
    NoReferenceAvailableError,
    PersonNotFoundError,
    SaveFailedError,
    StoreUnavailableError,
)
from facematch.domain.entities.face import BoundingBox, ImageRef
from facematch.domain.value_objects.image import CorpusFilter
from facematch.infrastructure.database.session import create_session_factory, engine_of
from facematch.infrastructure.database.unit_of_work import UnitOfWork, open_unit_of_work
from facematch.services.concurrency import CancellationToken
from facematch.services.match_orchestrator import MatchOrchestrator, SearchOptions
from helpers import (
    LOOKALIKE,
    OTHER_STRANGER,
    REFERENCE,
    STRANGER,
    FaceSpec,
    add_embedding,
    add_person,
    embeddings_for_image,
    embeddings_for_owner,
)


def utc(year, month=1, day=1):
    return datetime(year, month, day, tzinfo=timezone.utc)


def make_orchestrator(session_factory, image_source, extractor, matcher, **options):
    defaults = dict(
        batch_size=2,
        initial_ceiling=100,
        continue_in_background=False,
        max_concurrent_extractions=2,
        image_load_timeout=1.0,
    )
    defaults.update(options)
    return MatchOrchestrator(
        session_factory=session_factory,
        image_source=image_source,
        extractor=extractor,
        matcher=matcher,
        options=SearchOptions(**defaults),
    )


async def person_with_reference(session_factory, image_source=None, image_id="img-a", image_date=None):
    """A person owning one verified face, optionally also present in the library."""
    person = await add_person(session_factory)
    await add_embedding(
        session_factory, image_id, REFERENCE, owner_id=person.id, verified=True, image_date=image_date,
    )
    if image_source is not None:
        image_source.add(image_id, image_date, [FaceSpec(REFERENCE)])
    return person


class TestSearchScenario:

    async def test_matches_stored_face_and_records_new_image(
        self, session_factory, image_source, backend, orchestrator,
    ):
        person = await person_with_reference(session_factory, image_source, "img-a", utc(2015, 1, 1))
        # B: analyzed before, face left unattributed
        image_source.add("img-b", utc(2015, 1, 2), [FaceSpec(LOOKALIKE)])
        await add_embedding(session_factory, "img-b", LOOKALIKE, image_date=utc(2015, 1, 2))
        # C: never analyzed, one face of somebody else
        image_source.add("img-c", utc(2020, 1, 1), [FaceSpec(STRANGER)])

        matched = await orchestrator.start_search(person.id)

        assert matched == 1
        [b] = await embeddings_for_image(session_factory, "img-b")
        assert b.owner_id == person.id
        assert not b.is_verified
        [c] = await embeddings_for_image(session_factory, "img-c")
        assert c.owner_id is None
        assert backend.detect_calls == 1
        assert image_source.loaded == ["img-c"]
        assert len(await embeddings_for_image(session_factory, "img-a")) == 1
        assert not orchestrator.locks.is_held(person.id)

    async def test_new_image_gets_best_face_attributed(self, session_factory, image_source, orchestrator):
        person = await person_with_reference(session_factory)
        image_source.add("group", utc(2021), [
            FaceSpec(STRANGER, box=_box(0.0)),
            FaceSpec(LOOKALIKE, box=_box(0.35)),
            FaceSpec(REFERENCE, box=_box(0.7)),
        ])

        assert await orchestrator.start_search(person.id) == 1

        records = await embeddings_for_image(session_factory, "group")
        assert [record.owner_id for record in records] == [None, None, person.id]
        assert not records[2].is_verified

    async def test_second_search_is_idempotent(self, session_factory, image_source, backend, orchestrator):
        person = await person_with_reference(session_factory)
        image_source.add("img-1", utc(2019), [FaceSpec(LOOKALIKE)])
        image_source.add("img-2", utc(2019), [FaceSpec(STRANGER)])

        assert await orchestrator.start_search(person.id) == 1
        calls = backend.detect_calls

        assert await orchestrator.start_search(person.id) == 0
        assert backend.detect_calls == calls
        assert len(await embeddings_for_owner(session_factory, person.id)) == 2

    async def test_other_person_reuses_stored_faces(self, session_factory, image_source, backend, orchestrator):
        ada = await person_with_reference(session_factory)
        bob = await add_person(session_factory, "Bob")
        await add_embedding(session_factory, "manual-bob", OTHER_STRANGER, owner_id=bob.id, verified=True)
        image_source.add("img-1", utc(2019), [
            FaceSpec(REFERENCE, box=_box(0.0)),
            FaceSpec(OTHER_STRANGER, box=_box(0.5)),
        ])

        assert await orchestrator.start_search(ada.id) == 1
        assert await orchestrator.start_search(bob.id) == 1

        assert backend.detect_calls == 1
        owners = [record.owner_id for record in await embeddings_for_image(session_factory, "img-1")]
        assert owners == [ada.id, bob.id]


def _box(x):
    return BoundingBox(x=x + 0.02, y=0.3, width=0.26, height=0.26)


class TestExclusivity:

    async def test_concurrent_search_for_same_person_is_rejected(self, session_factory, image_source, backend, orchestrator):
        person = await person_with_reference(session_factory)
        image_source.add("img-1", utc(2019), [FaceSpec(LOOKALIKE)])
        backend.gate = asyncio.Event()

        first = asyncio.create_task(orchestrator.start_search(person.id))
        await asyncio.wait_for(backend.entered.wait(), timeout=5)

        with pytest.raises(AlreadyInProgressError):
            await orchestrator.start_search(person.id)
        assert backend.detect_calls == 1

        backend.gate.set()
        assert await first == 1
        assert backend.detect_calls == 1
        assert not orchestrator.locks.is_held(person.id)

    async def test_different_people_search_concurrently(self, session_factory, image_source, backend, orchestrator):
        ada = await person_with_reference(session_factory)
        bob = await add_person(session_factory, "Bob")
        await add_embedding(session_factory, "manual-bob", STRANGER, owner_id=bob.id, verified=True)
        image_source.add("img-1", utc(2019), [FaceSpec(LOOKALIKE)])
        backend.gate = asyncio.Event()

        first = asyncio.create_task(orchestrator.start_search(ada.id))
        await asyncio.wait_for(backend.entered.wait(), timeout=5)
        assert orchestrator.locks.is_held(ada.id)

        # Bob's search is admitted while Ada's is still running
        stopped = CancellationToken()
        stopped.cancel()
        assert await orchestrator.start_search(bob.id, cancel_token=stopped) == 0
        assert not orchestrator.locks.is_held(bob.id)

        backend.gate.set()
        assert await first == 1


class TestReferences:

    async def test_bootstraps_reference_from_primary_photo(self, session_factory, world, image_source, orchestrator):
        photo = world.render_png([FaceSpec(REFERENCE)])
        person = await add_person(session_factory, primary_photo=photo, primary_photo_date=utc(2018))
        image_source.add("img-1", utc(2018, 2, 1), [FaceSpec(LOOKALIKE)])

        assert await orchestrator.start_search(person.id) == 1

        [reference] = await embeddings_for_image(session_factory, f"person-{person.id}")
        assert reference.owner_id == person.id
        assert reference.is_verified and reference.is_representative
        async with open_unit_of_work(session_factory) as uow:
            cluster = await uow.clusters.get_for_owner(person.id)
        assert cluster is not None
        assert cluster.face_count == 1

    async def test_no_primary_photo(self, session_factory, image_source, orchestrator):
        person = await add_person(session_factory)
        image_source.add("img-1", utc(2019), [FaceSpec(LOOKALIKE)])

        with pytest.raises(NoReferenceAvailableError):
            await orchestrator.start_search(person.id)
        assert not orchestrator.locks.is_held(person.id)
        assert image_source.loaded == []

    async def test_primary_photo_without_face(self, session_factory, world, orchestrator):
        person = await add_person(session_factory, primary_photo=world.render_png())

        with pytest.raises(NoReferenceAvailableError):
            await orchestrator.start_search(person.id)
        assert not orchestrator.locks.is_held(person.id)

    async def test_unknown_person(self, orchestrator):
        person_id = uuid4()
        with pytest.raises(PersonNotFoundError):
            await orchestrator.start_search(person_id)
        assert not orchestrator.locks.is_held(person_id)


class TestCorpus:

    async def test_corpus_failure_searches_nothing(self, session_factory, image_source, orchestrator):
        person = await person_with_reference(session_factory)
        image_source.add("img-1", utc(2019), [FaceSpec(LOOKALIKE)])
        image_source.fail_corpus = True

        assert await orchestrator.start_search(person.id) == 0
        assert not orchestrator.locks.is_held(person.id)

    async def test_images_closest_in_time_first(self, session_factory, image_source, extractor, matcher):
        person = await add_person(session_factory, primary_photo_date=utc(2015, 6, 1))
        await add_embedding(session_factory, "manual-1", REFERENCE, owner_id=person.id, verified=True,
                            image_date=utc(2015, 1, 1))
        image_source.add("undated", None, [FaceSpec(STRANGER)])
        image_source.add("far", utc(2009, 1, 1), [FaceSpec(STRANGER)])
        image_source.add("near", utc(2015, 1, 3), [FaceSpec(STRANGER)])
        image_source.add("near-primary", utc(2015, 6, 2), [FaceSpec(STRANGER)])
        orchestrator = make_orchestrator(
            session_factory, image_source, extractor, matcher, batch_size=1, max_concurrent_extractions=1,
        )

        await orchestrator.start_search(person.id)

        assert image_source.loaded == ["near-primary", "near", "far", "undated"]

    async def test_unreadable_date_sorts_last(self, session_factory, image_source, extractor, matcher):
        person = await person_with_reference(session_factory, image_date=utc(2015))
        image_source.add("broken", utc(2015), [FaceSpec(LOOKALIKE)])
        image_source.add("dated", utc(2010), [FaceSpec(STRANGER)])
        real_creation_date = image_source.creation_date

        async def creation_date(ref):
            if ref.image_id == "broken":
                raise OSError("metadata unreadable")
            return await real_creation_date(ref)

        image_source.creation_date = creation_date
        orchestrator = make_orchestrator(
            session_factory, image_source, extractor, matcher, batch_size=1, max_concurrent_extractions=1,
        )

        assert await orchestrator.start_search(person.id) == 1
        assert image_source.loaded == ["dated", "broken"]
        [broken] = await embeddings_for_image(session_factory, "broken")
        assert broken.owner_id == person.id
        assert broken.image_date is None

    async def test_corpus_filter_is_passed_to_source(self, session_factory, image_source, extractor, matcher):
        person = await person_with_reference(session_factory)
        received = []

        async def fetch_corpus(corpus_filter=None):
            received.append(corpus_filter)
            return []

        image_source.fetch_corpus = fetch_corpus
        corpus_filter = CorpusFilter(created_after=utc(2020))
        orchestrator = make_orchestrator(session_factory, image_source, extractor, matcher, corpus_filter=corpus_filter)

        assert await orchestrator.start_search(person.id) == 0
        assert received == [corpus_filter]


class TestCeiling:

    async def test_continuation_finishes_in_background(self, session_factory, image_source, extractor, matcher):
        person = await person_with_reference(session_factory)
        for index in range(4):
            image_source.add(f"img-{index}", utc(2019, 1, index + 1), [FaceSpec(LOOKALIKE)])
        orchestrator = make_orchestrator(
            session_factory, image_source, extractor, matcher, initial_ceiling=2, continue_in_background=True,
        )

        assert await orchestrator.start_search(person.id) == 2
        assert len(orchestrator.continuations) == 1
        assert orchestrator.locks.is_held(person.id)
        with pytest.raises(AlreadyInProgressError):
            await orchestrator.start_search(person.id)

        await orchestrator.shutdown(cancel=False)

        assert len(await embeddings_for_owner(session_factory, person.id)) == 5
        assert not orchestrator.locks.is_held(person.id)
        assert orchestrator.continuations == set()

    async def test_shutdown_right_after_search_releases_lock(self, session_factory, image_source, extractor, matcher):
        person = await person_with_reference(session_factory)
        for index in range(4):
            image_source.add(f"img-{index}", utc(2019, 1, index + 1), [FaceSpec(LOOKALIKE)])
        orchestrator = make_orchestrator(
            session_factory, image_source, extractor, matcher, initial_ceiling=2, continue_in_background=True,
        )

        assert await orchestrator.start_search(person.id) == 2
        assert orchestrator.is_continuing(person.id)

        await orchestrator.shutdown()

        assert not orchestrator.locks.is_held(person.id)
        assert not orchestrator.is_continuing(person.id)
        assert orchestrator.continuations == set()
        assert await orchestrator.start_search(person.id) == 2
        await orchestrator.shutdown()

    async def test_not_continuing_while_another_search_holds_lock(self, session_factory, image_source, orchestrator):
        person = await person_with_reference(session_factory)
        image_source.add("img-1", utc(2019), [FaceSpec(LOOKALIKE)])

        await orchestrator.start_search(person.id)
        orchestrator.locks.acquire(person.id)

        assert not orchestrator.is_continuing(person.id)

    async def test_remainder_left_for_next_search(self, session_factory, image_source, extractor, matcher):
        person = await person_with_reference(session_factory)
        for index in range(3):
            image_source.add(f"img-{index}", utc(2019, 1, index + 1), [FaceSpec(LOOKALIKE)])
        orchestrator = make_orchestrator(session_factory, image_source, extractor, matcher, initial_ceiling=2)

        assert await orchestrator.start_search(person.id) == 2
        assert orchestrator.continuations == set()
        assert not orchestrator.locks.is_held(person.id)

        assert await orchestrator.start_search(person.id) == 1

    async def test_stored_images_do_not_count_against_ceiling(
        self, session_factory, image_source, backend, extractor, matcher,
    ):
        person = await person_with_reference(session_factory)
        for index in range(3):
            image_source.add(f"stored-{index}", utc(2019), [FaceSpec(LOOKALIKE)])
            await add_embedding(session_factory, f"stored-{index}", LOOKALIKE)
        image_source.add("new", utc(2019), [FaceSpec(LOOKALIKE)])
        orchestrator = make_orchestrator(session_factory, image_source, extractor, matcher, initial_ceiling=1)

        assert await orchestrator.start_search(person.id) == 4
        assert backend.detect_calls == 1


class TestCancellation:

    async def test_cancel_between_batches(self, session_factory, image_source, extractor, matcher):
        person = await person_with_reference(session_factory)
        for index in range(3):
            image_source.add(f"img-{index}", utc(2019, 1, index + 1), [FaceSpec(LOOKALIKE)])
        orchestrator = make_orchestrator(
            session_factory, image_source, extractor, matcher, batch_size=1, max_concurrent_extractions=1,
        )
        token = CancellationToken()
        reports = []

        def on_progress(processed, planned):
            reports.append((processed, planned))
            token.cancel()

        assert await orchestrator.start_search(person.id, progress_callback=on_progress, cancel_token=token) == 1

        assert reports == [(1, 3)]
        assert len(image_source.loaded) == 1
        assert not orchestrator.locks.is_held(person.id)

    async def test_already_cancelled(self, session_factory, image_source, backend, orchestrator):
        person = await person_with_reference(session_factory)
        image_source.add("img-1", utc(2019), [FaceSpec(LOOKALIKE)])
        token = CancellationToken()
        token.cancel()

        assert await orchestrator.start_search(person.id, cancel_token=token) == 0
        assert backend.detect_calls == 0

    async def test_async_progress_callback(self, session_factory, image_source, orchestrator):
        person = await person_with_reference(session_factory)
        for index in range(3):
            image_source.add(f"img-{index}", utc(2019), [FaceSpec(STRANGER)])
        reports = []

        async def on_progress(processed, planned):
            reports.append((processed, planned))

        await orchestrator.start_search(person.id, progress_callback=on_progress)

        assert reports == [(2, 3), (3, 3)]

    async def test_failing_progress_callback_does_not_stop_search(self, session_factory, image_source, orchestrator):
        person = await person_with_reference(session_factory)
        image_source.add("img-1", utc(2019), [FaceSpec(LOOKALIKE)])

        def on_progress(processed, planned):
            raise RuntimeError("display went away")

        assert await orchestrator.start_search(person.id, progress_callback=on_progress) == 1


class TestFailures:

    async def test_store_unavailable(self, tmp_path, image_source, extractor, matcher):
        # Database file without any tables
        factory = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}", echo=False)
        orchestrator = make_orchestrator(factory, image_source, extractor, matcher)
        person_id = uuid4()
        try:
            with pytest.raises(StoreUnavailableError):
                await orchestrator.start_search(person_id)
        finally:
            await engine_of(factory).dispose()
        assert not orchestrator.locks.is_held(person_id)

    async def test_save_failure_releases_lock(self, session_factory, image_source, orchestrator, monkeypatch):
        person = await person_with_reference(session_factory)
        image_source.add("img-1", utc(2019), [FaceSpec(LOOKALIKE)])

        async def failing_save(self):
            raise SaveFailedError("disk full")

        monkeypatch.setattr(UnitOfWork, "save", failing_save)

        with pytest.raises(SaveFailedError):
            await orchestrator.start_search(person.id)
        assert not orchestrator.locks.is_held(person.id)

    async def test_unloadable_images_are_skipped(self, session_factory, image_source, orchestrator):
        person = await person_with_reference(session_factory)
        image_source.add("img-1", utc(2019), [FaceSpec(LOOKALIKE)])
        real_fetch = image_source.fetch_corpus

        async def fetch_with_missing(corpus_filter=None):
            return await real_fetch(corpus_filter) + [ImageRef(image_id="deleted")]

        image_source.fetch_corpus = fetch_with_missing

        assert await orchestrator.start_search(person.id) == 1
        assert await embeddings_for_image(session_factory, "deleted") == []
