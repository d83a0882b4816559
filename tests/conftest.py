import os

import pytest
import structlog

from learnmatch.configuration import Settings
from learnmatch.index import InMemoryVectorIndex
from learnmatch.pipeline import Pipeline
from learnmatch.stores import InMemoryContentRepository, InMemoryEmbeddingStatusStore

from .utils import DIMENSIONS, HashingEmbedder


@pytest.fixture(autouse=True)
def __env_setup():  # type:ignore
    # Settings.from_env reads the environment, restore it after each test
    original_env = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original_env)
    # the cli points structlog at the streams of the command it ran
    structlog.reset_defaults()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        embedding_dimensions=DIMENSIONS,
        vector_backend="memory",
        store_backend="memory",
        request_timeout=5.0,
    )


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def index() -> InMemoryVectorIndex:
    return InMemoryVectorIndex()


@pytest.fixture
def status_store() -> InMemoryEmbeddingStatusStore:
    return InMemoryEmbeddingStatusStore()


@pytest.fixture
def repository() -> InMemoryContentRepository:
    return InMemoryContentRepository()


@pytest.fixture
def pipeline(
    settings: Settings,
    embedder: HashingEmbedder,
    index: InMemoryVectorIndex,
    status_store: InMemoryEmbeddingStatusStore,
    repository: InMemoryContentRepository,
) -> Pipeline:
    return Pipeline(
        settings=settings,
        embedder=embedder,
        index=index,
        status_store=status_store,
        repository=repository,
    )
