import asyncio

import pytest

from learnmatch.configuration import Settings
from learnmatch.errors import EmbeddingDimensionError, StatusStoreError
from learnmatch.index import InMemoryVectorIndex
from learnmatch.models import ContentKind, EmbeddingStatus
from learnmatch.normalizer import normalize
from learnmatch.orchestrator import EmbeddingOrchestrator, index_metadata
from learnmatch.stores import InMemoryEmbeddingStatusStore

from .utils import (
    DIMENSIONS,
    DownVectorIndex,
    FailingEmbedder,
    HashingEmbedder,
    HungStatusStore,
    SlowEmbedder,
    SlowFirstUpsertIndex,
    WrongSizeEmbedder,
    hashed_vector,
    make_course,
    make_roadmap,
    make_video,
)


@pytest.fixture
def orchestrator(
    embedder: HashingEmbedder,
    index: InMemoryVectorIndex,
    status_store: InMemoryEmbeddingStatusStore,
    settings: Settings,
) -> EmbeddingOrchestrator:
    return EmbeddingOrchestrator(embedder, index, status_store, settings)


async def test_run_completes(
    orchestrator: EmbeddingOrchestrator,
    index: InMemoryVectorIndex,
    status_store: InMemoryEmbeddingStatusStore,
):
    course = make_course("1")
    record = await orchestrator.run(course, "tutor-1")

    assert record.status is EmbeddingStatus.COMPLETED
    assert record.embedding_key == "course_1"
    assert record.vector_dimension == DIMENSIONS
    assert record.error_message is None
    assert record.processing.model == "hashing-test"
    assert record.processing.namespace == "course-embeddings"
    assert record.processing.token_count == 3
    assert record.processing.processing_time_ms is not None
    assert record.source.title == "Intro to Go"
    assert record.source.concatenated_text == normalize(course)

    stored = index.get("course-embeddings", "course_1")
    assert stored is not None
    vector, metadata = stored
    assert len(vector) == DIMENSIONS
    assert metadata["entity_id"] == "1"
    assert metadata["owner_id"] == "tutor-1"
    assert metadata["published"] is True
    assert await status_store.find(ContentKind.COURSE, "1", "tutor-1") == record


async def test_run_uses_kind_namespace(
    orchestrator: EmbeddingOrchestrator, index: InMemoryVectorIndex
):
    await orchestrator.run(make_video("v1"), "tutor-1")
    await orchestrator.run(make_roadmap("r1"), "user-1")
    assert index.count("video-embeddings") == 1
    assert index.count("roadmap-embeddings") == 1
    assert index.count("course-embeddings") == 0


async def test_run_embeds_documents(
    orchestrator: EmbeddingOrchestrator, embedder: HashingEmbedder
):
    course = make_course("1")
    await orchestrator.run(course, "tutor-1")
    assert embedder.calls == [(normalize(course), "search_document")]


async def test_unchanged_entity_is_skipped(
    orchestrator: EmbeddingOrchestrator,
    embedder: HashingEmbedder,
    index: InMemoryVectorIndex,
    status_store: InMemoryEmbeddingStatusStore,
):
    first = await orchestrator.run(make_course("1"), "tutor-1")
    second = await orchestrator.run(make_course("1"), "tutor-1")

    assert second == first
    assert len(embedder.calls) == 1
    assert len(status_store) == 1
    assert index.count("course-embeddings") == 1


async def test_changed_entity_is_embedded_again(
    orchestrator: EmbeddingOrchestrator,
    embedder: HashingEmbedder,
    index: InMemoryVectorIndex,
    status_store: InMemoryEmbeddingStatusStore,
):
    first = await orchestrator.run(make_course("1"), "tutor-1")
    second = await orchestrator.run(
        make_course("1", title="Advanced Go"), "tutor-1"
    )

    assert len(embedder.calls) == 2
    assert second.attempt_id != first.attempt_id
    assert second.source.title == "Advanced Go"
    assert second.created_at == first.created_at
    assert len(status_store) == 1
    assert index.count("course-embeddings") == 1


async def test_force_embeds_again(
    orchestrator: EmbeddingOrchestrator, embedder: HashingEmbedder
):
    await orchestrator.run(make_course("1"), "tutor-1")
    record = await orchestrator.run(make_course("1"), "tutor-1", force=True)
    assert record.status is EmbeddingStatus.COMPLETED
    assert len(embedder.calls) == 2


async def test_embedding_failure_is_recorded(
    index: InMemoryVectorIndex,
    status_store: InMemoryEmbeddingStatusStore,
    settings: Settings,
):
    error = ConnectionError("connection reset")
    orchestrator = EmbeddingOrchestrator(
        FailingEmbedder(error), index, status_store, settings
    )
    record = await orchestrator.run(make_course("1"), "tutor-1")

    assert record.status is EmbeddingStatus.FAILED
    assert record.error_message
    assert "embedding failed" in record.error_message
    assert index.count("course-embeddings") == 0
    stored = await status_store.find(ContentKind.COURSE, "1", "tutor-1")
    assert stored is not None
    assert stored.status is EmbeddingStatus.FAILED


async def test_timeout_then_success_overwrites(
    index: InMemoryVectorIndex,
    status_store: InMemoryEmbeddingStatusStore,
    settings: Settings,
):
    embedder = SlowEmbedder(delay=1.0, slow_calls=1, request_timeout=0.05)
    orchestrator = EmbeddingOrchestrator(embedder, index, status_store, settings)

    failed = await orchestrator.run(make_course("1"), "tutor-1")
    assert failed.status is EmbeddingStatus.FAILED
    assert failed.error_message
    assert "timed out" in failed.error_message

    completed = await orchestrator.run(make_course("1"), "tutor-1")
    assert completed.status is EmbeddingStatus.COMPLETED
    assert completed.error_message is None
    assert len(status_store) == 1
    report = await status_store.lookup(ContentKind.COURSE, "1", "tutor-1")
    assert report.status is EmbeddingStatus.COMPLETED


async def test_dimension_mismatch_is_recorded_and_raised(
    index: InMemoryVectorIndex,
    status_store: InMemoryEmbeddingStatusStore,
    settings: Settings,
):
    orchestrator = EmbeddingOrchestrator(
        WrongSizeEmbedder(), index, status_store, settings
    )
    with pytest.raises(EmbeddingDimensionError):
        await orchestrator.run(make_course("1"), "tutor-1")

    stored = await status_store.find(ContentKind.COURSE, "1", "tutor-1")
    assert stored is not None
    assert stored.status is EmbeddingStatus.FAILED
    assert stored.error_message
    assert "dimensions" in stored.error_message
    assert index.count("course-embeddings") == 0


async def test_index_failure_is_recorded(
    embedder: HashingEmbedder,
    status_store: InMemoryEmbeddingStatusStore,
    settings: Settings,
):
    orchestrator = EmbeddingOrchestrator(
        embedder, DownVectorIndex(), status_store, settings
    )
    record = await orchestrator.run(make_course("1"), "tutor-1")
    assert record.status is EmbeddingStatus.FAILED
    assert record.error_message
    assert "vector upsert failed" in record.error_message


async def test_delete(
    orchestrator: EmbeddingOrchestrator,
    index: InMemoryVectorIndex,
    status_store: InMemoryEmbeddingStatusStore,
):
    await orchestrator.run(make_course("1"), "tutor-1")
    assert await orchestrator.delete(ContentKind.COURSE, "1", "tutor-1") is True
    assert index.count("course-embeddings") == 0
    assert len(status_store) == 0
    assert await orchestrator.delete(ContentKind.COURSE, "1", "tutor-1") is False


async def test_delete_survives_index_failure(
    embedder: HashingEmbedder,
    status_store: InMemoryEmbeddingStatusStore,
    settings: Settings,
):
    healthy = EmbeddingOrchestrator(
        embedder, InMemoryVectorIndex(), status_store, settings
    )
    await healthy.run(make_course("1"), "tutor-1")

    orchestrator = EmbeddingOrchestrator(
        embedder, DownVectorIndex(), status_store, settings
    )
    assert await orchestrator.delete(ContentKind.COURSE, "1", "tutor-1") is True
    assert len(status_store) == 0


def test_index_metadata():
    metadata = index_metadata(make_roadmap("r1"), "user-1")
    assert metadata["kind"] == "roadmap"
    assert metadata["roadmap_type"] == "week-by-week"
    assert metadata["node_count"] == 2
    assert "published" not in metadata

    metadata = index_metadata(make_course("1", approved=False), "tutor-1")
    assert metadata["approved"] is False
    assert metadata["category"] == "Programming"


async def test_slow_upsert_does_not_overwrite_newer_attempt(
    embedder: HashingEmbedder,
    status_store: InMemoryEmbeddingStatusStore,
    settings: Settings,
):
    index = SlowFirstUpsertIndex(delay=0.2)
    orchestrator = EmbeddingOrchestrator(embedder, index, status_store, settings)
    old = make_course("1", title="Intro to Go")
    new = make_course("1", title="Advanced Rust ownership")

    slow = asyncio.create_task(orchestrator.run(old, "tutor-1"))
    await index.first_upsert_started.wait()
    newer = await orchestrator.run(new, "tutor-1")
    superseded = await slow

    assert newer.status is EmbeddingStatus.COMPLETED
    assert superseded.status is EmbeddingStatus.FAILED
    assert superseded.error_message == "superseded by a newer attempt"

    record = await status_store.find(ContentKind.COURSE, "1", "tutor-1")
    assert record is not None
    assert record.status is EmbeddingStatus.COMPLETED
    assert record.attempt_id == newer.attempt_id
    assert record.source.concatenated_text == normalize(new)
    stored = index.get("course-embeddings", "course_1")
    assert stored is not None
    assert stored[0] == pytest.approx(hashed_vector(normalize(new)))
    assert stored[1]["title"] == "Advanced Rust ownership"

    # the index matches the record, so an unchanged run is skipped safely
    calls = len(embedder.calls)
    assert await orchestrator.run(new, "tutor-1") == record
    assert len(embedder.calls) == calls
    stored = index.get("course-embeddings", "course_1")
    assert stored is not None
    assert stored[0] == pytest.approx(hashed_vector(normalize(new)))


async def test_hung_status_store_times_out(
    embedder: HashingEmbedder, index: InMemoryVectorIndex, settings: Settings
):
    settings = settings.model_copy(update={"request_timeout": 0.1})
    orchestrator = EmbeddingOrchestrator(embedder, index, HungStatusStore(), settings)

    with pytest.raises(StatusStoreError) as exc_info:
        await asyncio.wait_for(orchestrator.run(make_course("1"), "tutor-1"), 5.0)
    assert exc_info.value.retryable is True
    assert exc_info.value.service == "status_store"
    assert embedder.calls == []
