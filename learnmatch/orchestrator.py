import time
from collections.abc import Awaitable
from typing import Any, TypeVar

import structlog
from ddtrace.trace import tracer

from .configuration import Settings
from .embeddings import Embedder
from .errors import (
    ConfigurationError,
    EmbeddingServiceError,
    IndexServiceError,
    StatusStoreError,
)
from .index import VectorIndex
from .models import (
    ContentKind,
    Course,
    EmbeddingStatus,
    EmbeddingStatusRecord,
    EmbeddingStatusReport,
    ProcessingMetadata,
    Roadmap,
    Video,
    kind_of,
    utcnow,
)
from .normalizer import normalize, snapshot
from .stores import EmbeddingStatusStore, bounded
from .tracing import tag_current_span

logger = structlog.get_logger()

T = TypeVar("T")


def index_metadata(entity: Course | Video | Roadmap, owner_id: str) -> dict[str, Any]:
    """The metadata stored next to an entity's vector."""
    metadata: dict[str, Any] = {
        "kind": kind_of(entity).value,
        "entity_id": entity.id,
        "owner_id": owner_id,
        "title": entity.title,
        "level": entity.level,
        "upserted_at": utcnow().isoformat(),
    }
    if isinstance(entity, Roadmap):
        metadata["roadmap_type"] = entity.roadmap_type
        metadata["node_count"] = len(entity.nodes)
    else:
        metadata["category"] = entity.category
        metadata["published"] = entity.published
        metadata["approved"] = entity.approved
    return metadata


class EmbeddingOrchestrator:
    """
    Embeds one entity and records the attempt in the status store.

    A run always leaves the status record in `completed` or `failed`. Embedding
    and index failures are recorded, not raised. Configuration errors and
    unexpected exceptions are recorded and then re-raised. Status store calls
    are bounded by `request_timeout` and raise StatusStoreError.

    The index write is versioned by the attempt's `last_embedded_at`, so a slow
    attempt cannot overwrite the vector of a newer one. Such an attempt is
    recorded as failed.
    """

    def __init__(
        self,
        embedder: Embedder,
        index: VectorIndex,
        status_store: EmbeddingStatusStore,
        settings: Settings,
    ):
        self.embedder = embedder
        self.index = index
        self.status_store = status_store
        self.settings = settings

    async def _status(self, operation: str, call: Awaitable[T]) -> T:
        return await bounded(
            call,
            timeout=self.settings.request_timeout,
            error=StatusStoreError,
            operation=operation,
        )

    def _is_unchanged(
        self, record: EmbeddingStatusRecord | None, text: str, namespace: str
    ) -> bool:
        return (
            record is not None
            and record.status is EmbeddingStatus.COMPLETED
            and record.source.concatenated_text == text
            and record.processing.model == self.embedder.model_name
            and record.processing.namespace == namespace
        )

    @tracer.wrap()
    async def run(
        self,
        entity: Course | Video | Roadmap,
        owner_id: str,
        force: bool = False,
    ) -> EmbeddingStatusRecord:
        """
        Embeds `entity` and upserts it into its kind's namespace.

        Args:
            entity: the course, video or roadmap to embed.
            owner_id: the user the status record belongs to.
            force: re-embed even if the stored embedding is for identical text.

        Returns:
            EmbeddingStatusRecord: the record describing this attempt.
        """
        kind = kind_of(entity)
        namespace = self.settings.namespace(kind)
        text = normalize(entity)
        tag_current_span(kind=kind.value, entity_id=entity.id, force=force)

        if not force:
            existing = await self._status(
                "find", self.status_store.find(kind, entity.id, owner_id)
            )
            if existing is not None and self._is_unchanged(existing, text, namespace):
                await logger.ainfo(
                    "embedding unchanged, skipping",
                    kind=kind.value,
                    entity_id=entity.id,
                    embedding_key=existing.embedding_key,
                )
                return existing

        record = await self._status(
            "upsert_processing",
            self.status_store.upsert_processing(
                kind,
                entity.id,
                owner_id,
                vector_dimension=self.embedder.expected_dimensions,
                source=snapshot(entity, text),
                processing=ProcessingMetadata(
                    model=self.embedder.model_name, namespace=namespace
                ),
            ),
        )
        log = logger.bind(
            kind=kind.value,
            entity_id=entity.id,
            embedding_key=record.embedding_key,
            attempt_id=record.attempt_id,
        )
        await log.adebug("embedding attempt started", text_length=len(text))
        start_time = time.perf_counter()

        try:
            result = await self.embedder.embed(text, "search_document")
        except EmbeddingServiceError as e:
            await log.awarning(
                "embedding failed", error=e.message, retryable=e.retryable
            )
            return await self._fail(record, f"embedding failed: {e.message}")
        except ConfigurationError as e:
            await log.aerror("embedding misconfigured", error=e.message)
            await self._fail(record, e.message)
            raise
        except Exception as e:
            await log.aexception("unexpected embedding error")
            await self._fail(record, f"unexpected error: {e}")
            raise

        try:
            written = await self.index.upsert(
                namespace,
                record.embedding_key,
                result.vector,
                index_metadata(entity, owner_id),
                version=record.last_embedded_at,
            )
        except IndexServiceError as e:
            await log.awarning(
                "vector upsert failed", error=e.message, retryable=e.retryable
            )
            return await self._fail(record, f"vector upsert failed: {e.message}")
        if not written:
            # a later attempt's vector is already in the index
            await log.ainfo("embedding superseded by a newer attempt")
            return await self._fail(record, "superseded by a newer attempt")

        elapsed_ms = int((time.perf_counter() - start_time) * 1000)
        processing = ProcessingMetadata(
            model=result.model,
            namespace=namespace,
            token_count=result.token_count,
            processing_time_ms=elapsed_ms,
        )
        completed = await self._status(
            "mark_completed",
            self.status_store.mark_completed(
                kind,
                entity.id,
                owner_id,
                record.attempt_id,
                vector_dimension=result.dimension,
                processing=processing,
            ),
        )
        await log.ainfo(
            "embedding completed",
            dimension=result.dimension,
            token_count=result.token_count,
            processing_time_ms=elapsed_ms,
        )
        if completed is not None:
            return completed
        return record.model_copy(
            update=dict(
                status=EmbeddingStatus.COMPLETED,
                vector_dimension=result.dimension,
                processing=processing,
            )
        )

    async def _fail(
        self, record: EmbeddingStatusRecord, error_message: str
    ) -> EmbeddingStatusRecord:
        failed = await self._status(
            "mark_failed",
            self.status_store.mark_failed(
                record.kind,
                record.entity_id,
                record.owner_id,
                record.attempt_id,
                error_message,
            ),
        )
        if failed is not None:
            return failed
        return record.model_copy(
            update=dict(status=EmbeddingStatus.FAILED, error_message=error_message)
        )

    @tracer.wrap()
    async def delete(self, kind: ContentKind, entity_id: str, owner_id: str) -> bool:
        """
        Removes an entity's vector and status record.

        The vector removal is best effort: a failure is logged and the status
        record is removed regardless. In-flight runs are not cancelled.

        Returns:
            bool: True if a status record existed.
        """
        embedding_key = kind.embedding_key(entity_id)
        try:
            await self.index.delete(self.settings.namespace(kind), embedding_key)
        except IndexServiceError as e:
            await logger.awarning(
                "vector delete failed",
                kind=kind.value,
                entity_id=entity_id,
                embedding_key=embedding_key,
                error=e.message,
            )
        deleted = await self._status(
            "delete", self.status_store.delete(kind, entity_id, owner_id)
        )
        await logger.ainfo(
            "embedding deleted",
            kind=kind.value,
            entity_id=entity_id,
            had_status=deleted,
        )
        return deleted

    async def lookup(
        self, kind: ContentKind, entity_id: str, owner_id: str
    ) -> EmbeddingStatusReport:
        """The embedding status of an entity, `not_found` when it has none."""
        return await self._status(
            "lookup", self.status_store.lookup(kind, entity_id, owner_id)
        )
