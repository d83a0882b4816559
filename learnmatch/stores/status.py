import datetime
import uuid
from abc import ABC, abstractmethod

import structlog
from typing_extensions import override

from ..models import (
    ContentKind,
    EmbeddingStatus,
    EmbeddingStatusRecord,
    EmbeddingStatusReport,
    ProcessingMetadata,
    SourceSnapshot,
    utcnow,
)

logger = structlog.get_logger()

StatusKey = tuple[ContentKind, str, str]


def new_attempt_id() -> str:
    return uuid.uuid4().hex


def processing_record(
    existing: EmbeddingStatusRecord | None,
    kind: ContentKind,
    entity_id: str,
    owner_id: str,
    vector_dimension: int,
    source: SourceSnapshot,
    processing: ProcessingMetadata,
) -> EmbeddingStatusRecord:
    """
    The record written when a new attempt starts. Keeps the original created_at.

    `last_embedded_at` strictly increases across attempts, it versions the
    attempt's vector in the index.
    """
    now = utcnow()
    if existing is not None and now <= existing.last_embedded_at:
        now = existing.last_embedded_at + datetime.timedelta(microseconds=1)
    return EmbeddingStatusRecord(
        kind=kind,
        entity_id=entity_id,
        owner_id=owner_id,
        embedding_key=kind.embedding_key(entity_id),
        vector_dimension=vector_dimension,
        last_embedded_at=now,
        source=source,
        processing=processing,
        status=EmbeddingStatus.PROCESSING,
        error_message=None,
        attempt_id=new_attempt_id(),
        created_at=existing.created_at if existing is not None else now,
        updated_at=now,
    )


def is_current_attempt(
    record: EmbeddingStatusRecord | None, attempt_id: str | None
) -> bool:
    """
    Whether a completion or failure for `attempt_id` may be applied to `record`.

    Only a processing record can transition. A None attempt_id targets whatever
    attempt is still processing.
    """
    if record is None or record.status is not EmbeddingStatus.PROCESSING:
        return False
    return attempt_id is None or record.attempt_id == attempt_id


class EmbeddingStatusStore(ABC):
    """
    Keeps one EmbeddingStatusRecord per (kind, entity id, owner id).

    `upsert_processing` starts a new attempt and returns its record. Completion
    and failure only apply to the attempt they name, so a slow attempt finishing
    after a newer one has started is ignored and returns None.
    """

    async def setup(self) -> None:  # noqa: B027 empty on purpose
        pass

    @abstractmethod
    async def upsert_processing(
        self,
        kind: ContentKind,
        entity_id: str,
        owner_id: str,
        *,
        vector_dimension: int,
        source: SourceSnapshot,
        processing: ProcessingMetadata,
    ) -> EmbeddingStatusRecord: ...

    @abstractmethod
    async def mark_completed(
        self,
        kind: ContentKind,
        entity_id: str,
        owner_id: str,
        attempt_id: str,
        *,
        vector_dimension: int,
        processing: ProcessingMetadata,
    ) -> EmbeddingStatusRecord | None: ...

    @abstractmethod
    async def mark_failed(
        self,
        kind: ContentKind,
        entity_id: str,
        owner_id: str,
        attempt_id: str | None,
        error_message: str,
    ) -> EmbeddingStatusRecord | None: ...

    @abstractmethod
    async def find(
        self, kind: ContentKind, entity_id: str, owner_id: str
    ) -> EmbeddingStatusRecord | None: ...

    @abstractmethod
    async def delete(self, kind: ContentKind, entity_id: str, owner_id: str) -> bool: ...

    async def lookup(
        self, kind: ContentKind, entity_id: str, owner_id: str
    ) -> EmbeddingStatusReport:
        record = await self.find(kind, entity_id, owner_id)
        if record is None:
            return EmbeddingStatusReport.not_found()
        return EmbeddingStatusReport.from_record(record)

    async def health_check(self) -> bool:
        return True


class InMemoryEmbeddingStatusStore(EmbeddingStatusStore):
    """
    Status records in a dict. Each method reads and writes without awaiting in
    between, so concurrent tasks never interleave inside an update.
    """

    def __init__(self):
        self._records: dict[StatusKey, EmbeddingStatusRecord] = {}

    @override
    async def upsert_processing(
        self,
        kind: ContentKind,
        entity_id: str,
        owner_id: str,
        *,
        vector_dimension: int,
        source: SourceSnapshot,
        processing: ProcessingMetadata,
    ) -> EmbeddingStatusRecord:
        key = (kind, entity_id, owner_id)
        record = processing_record(
            self._records.get(key),
            kind,
            entity_id,
            owner_id,
            vector_dimension,
            source,
            processing,
        )
        self._records[key] = record
        return record.model_copy(deep=True)

    @override
    async def mark_completed(
        self,
        kind: ContentKind,
        entity_id: str,
        owner_id: str,
        attempt_id: str,
        *,
        vector_dimension: int,
        processing: ProcessingMetadata,
    ) -> EmbeddingStatusRecord | None:
        key = (kind, entity_id, owner_id)
        record = self._records.get(key)
        if not is_current_attempt(record, attempt_id):
            await logger.ainfo(
                "ignoring completion of a superseded attempt",
                kind=kind.value,
                entity_id=entity_id,
                attempt_id=attempt_id,
            )
            return None
        assert record is not None
        updated = record.model_copy(
            update=dict(
                status=EmbeddingStatus.COMPLETED,
                vector_dimension=vector_dimension,
                processing=processing,
                error_message=None,
                updated_at=utcnow(),
            ),
            deep=True,
        )
        self._records[key] = updated
        return updated.model_copy(deep=True)

    @override
    async def mark_failed(
        self,
        kind: ContentKind,
        entity_id: str,
        owner_id: str,
        attempt_id: str | None,
        error_message: str,
    ) -> EmbeddingStatusRecord | None:
        key = (kind, entity_id, owner_id)
        record = self._records.get(key)
        if not is_current_attempt(record, attempt_id):
            await logger.ainfo(
                "ignoring failure of a superseded attempt",
                kind=kind.value,
                entity_id=entity_id,
                attempt_id=attempt_id,
            )
            return None
        assert record is not None
        updated = record.model_copy(
            update=dict(
                status=EmbeddingStatus.FAILED,
                error_message=error_message,
                updated_at=utcnow(),
            ),
            deep=True,
        )
        self._records[key] = updated
        return updated.model_copy(deep=True)

    @override
    async def find(
        self, kind: ContentKind, entity_id: str, owner_id: str
    ) -> EmbeddingStatusRecord | None:
        record = self._records.get((kind, entity_id, owner_id))
        return record.model_copy(deep=True) if record is not None else None

    @override
    async def delete(self, kind: ContentKind, entity_id: str, owner_id: str) -> bool:
        return self._records.pop((kind, entity_id, owner_id), None) is not None

    def __len__(self) -> int:
        return len(self._records)
