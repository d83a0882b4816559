import asyncio
import datetime
import hashlib
from collections.abc import Sequence
from typing import Any

from typing_extensions import override

from learnmatch.embeddings import (
    Embedder,
    EmbeddingResponse,
    EmbeddingVector,
    InputType,
    Usage,
)
from learnmatch.errors import IndexServiceError
from learnmatch.index import InMemoryVectorIndex, QueryMatch
from learnmatch.models import (
    ContentKind,
    ContentRecord,
    Course,
    CourseSection,
    EmbeddingStatusRecord,
    Roadmap,
    RoadmapNode,
    Video,
)
from learnmatch.stores import InMemoryContentRepository, InMemoryEmbeddingStatusStore

DIMENSIONS = 16


def hashed_vector(text: str, dimensions: int = DIMENSIONS) -> EmbeddingVector:
    """Bag of words hashed into `dimensions` buckets. Shared words mean similarity."""
    vector = [0.0] * dimensions
    for token in text.split():
        digest = hashlib.sha256(token.encode()).digest()
        vector[digest[0] % dimensions] += 1.0
    if not any(vector):
        vector[0] = 1.0
    return vector


class HashingEmbedder(Embedder):
    """A deterministic embedder that records every call."""

    def __init__(self, dimensions: int = DIMENSIONS, request_timeout: float = 5.0):
        self.dimensions = dimensions
        self.request_timeout = request_timeout
        self.calls: list[tuple[str, InputType]] = []

    @property
    @override
    def model_name(self) -> str:
        return "hashing-test"

    @property
    @override
    def expected_dimensions(self) -> int:
        return self.dimensions

    @property
    @override
    def timeout(self) -> float:
        return self.request_timeout

    @override
    async def call_embed_api(
        self, documents: list[str], input_type: InputType
    ) -> EmbeddingResponse:
        for document in documents:
            self.calls.append((document, input_type))
        return EmbeddingResponse(
            embeddings=[hashed_vector(d, self.dimensions) for d in documents],
            usage=Usage(prompt_tokens=3, total_tokens=3),
        )


class FailingEmbedder(HashingEmbedder):
    def __init__(self, error: BaseException, **kwargs: Any):
        super().__init__(**kwargs)
        self.error = error

    @override
    async def call_embed_api(
        self, documents: list[str], input_type: InputType
    ) -> EmbeddingResponse:
        self.calls.append((documents[0], input_type))
        raise self.error


class SlowEmbedder(HashingEmbedder):
    """Sleeps for `delay` seconds on the first `slow_calls` calls."""

    def __init__(self, delay: float, slow_calls: int = 1, **kwargs: Any):
        super().__init__(**kwargs)
        self.delay = delay
        self.slow_calls = slow_calls

    @override
    async def call_embed_api(
        self, documents: list[str], input_type: InputType
    ) -> EmbeddingResponse:
        if self.slow_calls > 0:
            self.slow_calls -= 1
            await asyncio.sleep(self.delay)
        return await super().call_embed_api(documents, input_type)


class WrongSizeEmbedder(HashingEmbedder):
    @override
    async def call_embed_api(
        self, documents: list[str], input_type: InputType
    ) -> EmbeddingResponse:
        return EmbeddingResponse(embeddings=[[0.5, 0.5]], usage=None)


class DownVectorIndex(InMemoryVectorIndex):
    """An index whose backend is unreachable."""

    def _down(self) -> IndexServiceError:
        return IndexServiceError("connection refused", retryable=True)

    @override
    async def upsert(
        self,
        namespace: str,
        id: str,
        vector: Sequence[float],
        metadata: dict[str, Any],
        version: datetime.datetime | None = None,
    ) -> bool:
        raise self._down()

    @override
    async def query(
        self, namespace: str, vector: Sequence[float], top_k: int
    ) -> list[QueryMatch]:
        raise self._down()

    @override
    async def delete(self, namespace: str, id: str) -> None:
        raise self._down()

    @override
    async def health_check(self) -> bool:
        raise self._down()


class SlowFirstUpsertIndex(InMemoryVectorIndex):
    """Holds the first upsert for `delay` seconds before it is applied."""

    def __init__(self, delay: float, **kwargs: Any):
        super().__init__(**kwargs)
        self.delay = delay
        self.first_upsert_started = asyncio.Event()

    @override
    async def upsert(
        self,
        namespace: str,
        id: str,
        vector: Sequence[float],
        metadata: dict[str, Any],
        version: datetime.datetime | None = None,
    ) -> bool:
        if not self.first_upsert_started.is_set():
            self.first_upsert_started.set()
            await asyncio.sleep(self.delay)
        return await super().upsert(namespace, id, vector, metadata, version)


class HungRepository(InMemoryContentRepository):
    """A content repository whose lookups never answer."""

    @override
    async def get_many(
        self, kind: ContentKind, ids: Sequence[str]
    ) -> dict[str, ContentRecord]:
        await asyncio.sleep(3600)
        return {}


class HungStatusStore(InMemoryEmbeddingStatusStore):
    """A status store whose reads never answer."""

    @override
    async def find(
        self, kind: ContentKind, entity_id: str, owner_id: str
    ) -> EmbeddingStatusRecord | None:
        await asyncio.sleep(3600)
        return None


def make_course(
    id: str = "1",
    title: str = "Intro to Go",
    published: bool = True,
    approved: bool = True,
    **kwargs: Any,
) -> Course:
    values: dict[str, Any] = dict(
        id=id,
        owner_id="tutor-1",
        title=title,
        subtitle="Learn the Go programming language",
        description="<p>Goroutines, <b>channels</b> and the standard library</p>",
        category="Programming",
        level="beginner",
        outcomes=["write Go programs"],
        sections=[
            CourseSection(title="Channels", order=2),
            CourseSection(title="Setup", order=1),
        ],
        published=published,
        approved=approved,
    )
    values.update(kwargs)
    return Course(**values)


def make_video(id: str = "v1", title: str = "Go concurrency patterns", **kwargs: Any):
    values: dict[str, Any] = dict(
        id=id,
        owner_id="tutor-1",
        title=title,
        description="Fan in, fan out and pipelines",
        category="Programming",
        subcategory="Go",
        level="intermediate",
        tags=["go", "concurrency"],
        duration="12:30",
        published=True,
    )
    values.update(kwargs)
    return Video(**values)


def make_roadmap(id: str = "r1", owner_id: str = "user-1", **kwargs: Any) -> Roadmap:
    values: dict[str, Any] = dict(
        id=id,
        owner_id=owner_id,
        title="Backend development with Go",
        level="beginner",
        roadmap_type="week-by-week",
        nodes=[
            RoadmapNode(
                id="n1",
                title="1. Go basics 2 weeks",
                description=["Syntax and <i>types</i>"],
                sequence=1,
            ),
            RoadmapNode(
                id="n2",
                title="Concurrency",
                description=["Goroutines and channels"],
                sequence=2,
            ),
        ],
    )
    values.update(kwargs)
    return Roadmap(**values)
