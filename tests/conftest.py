"""Shared fixtures: a temporary SQLite record store and synthetic face analysis."""
import pytest

from facematch.infrastructure.database.session import create_session_factory, engine_of, init_models
from facematch.services.feature_extractor import FeatureExtractor
from facematch.services.match_orchestrator import MatchOrchestrator, SearchOptions
from facematch.services.similarity import SimilarityMatcher
from helpers import FaceWorld, FakeBackend, FakeImageSource


@pytest.fixture
async def session_factory(tmp_path):
    """Session factory over a fresh database file."""
    factory = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'faces.db'}", echo=False)
    await init_models(engine_of(factory))
    yield factory
    await engine_of(factory).dispose()


@pytest.fixture
def world():
    return FaceWorld()


@pytest.fixture
def backend(world):
    return FakeBackend(world)


@pytest.fixture
def image_source(world):
    return FakeImageSource(world)


@pytest.fixture
def extractor(backend):
    return FeatureExtractor(backend, processing_size=1920)


@pytest.fixture
def matcher(backend):
    return SimilarityMatcher(
        backend,
        observation_threshold=0.55,
        cosine_threshold=0.88,
        exploratory_threshold=0.75,
        exploratory_top_k=50,
    )


@pytest.fixture
def search_options():
    return SearchOptions(
        batch_size=2,
        initial_ceiling=100,
        continue_in_background=False,
        max_concurrent_extractions=2,
        image_load_timeout=1.0,
    )


@pytest.fixture
async def orchestrator(session_factory, image_source, extractor, matcher, search_options):
    service = MatchOrchestrator(
        session_factory=session_factory,
        image_source=image_source,
        extractor=extractor,
        matcher=matcher,
        options=search_options,
    )
    yield service
    await service.shutdown()
