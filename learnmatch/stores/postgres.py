"""
PostgreSQL implementations of the status store and the content repository, and
`install`, which creates every table learnmatch needs.
"""

from collections.abc import Sequence
from functools import cached_property
from typing import Any

import psycopg
import structlog
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from pydantic import TypeAdapter
from typing_extensions import override

from ..errors import NotFoundError, PersistenceError
from ..models import (
    ContentKind,
    ContentRecord,
    Course,
    EmbeddingStatus,
    EmbeddingStatusRecord,
    Entity,
    ProcessingMetadata,
    Roadmap,
    SourceSnapshot,
    SuggestionEntry,
    Video,
    kind_of,
)
from .content import AnyEntity, ContentRepository, merge_entries, upsert_entry
from .status import EmbeddingStatusStore, new_attempt_id

logger = structlog.get_logger()

entity_adapter: TypeAdapter[AnyEntity] = TypeAdapter(Entity)

CREATE_STATUS_TABLE = """
    CREATE TABLE IF NOT EXISTS embedding_status (
        kind text NOT NULL,
        entity_id text NOT NULL,
        owner_id text NOT NULL,
        embedding_key text NOT NULL,
        vector_dimension int NOT NULL,
        last_embedded_at timestamptz NOT NULL,
        source jsonb NOT NULL,
        processing jsonb NOT NULL,
        status text NOT NULL
            CHECK (status IN ('processing', 'completed', 'failed')),
        error_message text,
        attempt_id text NOT NULL,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz NOT NULL DEFAULT now(),
        PRIMARY KEY (kind, entity_id, owner_id)
    )"""

CREATE_CONTENT_TABLE = """
    CREATE TABLE IF NOT EXISTS content_document (
        kind text NOT NULL,
        id text NOT NULL,
        owner_id text NOT NULL,
        doc jsonb NOT NULL,
        updated_at timestamptz NOT NULL DEFAULT now(),
        PRIMARY KEY (kind, id)
    )"""


async def install(
    db_url: str, dimensions: int, index_name: str = "learnmatch_vectors"
) -> None:
    """
    Creates the vector extension, the vector index table, `embedding_status`
    and `content_document`. Safe to run more than once.
    """
    # Note: deferred import, the index module registers pgvector types
    from ..index.pgvector import PgVectorIndex

    async with await psycopg.AsyncConnection.connect(db_url, autocommit=True) as con:
        await con.execute("CREATE EXTENSION IF NOT EXISTS vector")
        index = PgVectorIndex(db_url, dimensions=dimensions, index_name=index_name)
        await con.execute(index.create_table_query)
        await con.execute(index.add_version_column_query)
        await con.execute(CREATE_STATUS_TABLE)
        await con.execute(CREATE_CONTENT_TABLE)
    await logger.ainfo("installed learnmatch tables", index_name=index_name)


class PostgresBackend:
    def __init__(self, db_url: str):
        self.db_url = db_url

    async def _connect(self) -> psycopg.AsyncConnection[Any]:
        return await psycopg.AsyncConnection.connect(self.db_url, autocommit=True)

    async def health_check(self) -> bool:
        async with await self._connect() as con, con.cursor() as cur:
            await cur.execute("SELECT 1")
            return (await cur.fetchone()) is not None


def _record_from_row(row: dict[str, Any]) -> EmbeddingStatusRecord:
    return EmbeddingStatusRecord(
        kind=ContentKind(row["kind"]),
        entity_id=row["entity_id"],
        owner_id=row["owner_id"],
        embedding_key=row["embedding_key"],
        vector_dimension=row["vector_dimension"],
        last_embedded_at=row["last_embedded_at"],
        source=SourceSnapshot.model_validate(row["source"]),
        processing=ProcessingMetadata.model_validate(row["processing"]),
        status=EmbeddingStatus(row["status"]),
        error_message=row["error_message"],
        attempt_id=row["attempt_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresEmbeddingStatusStore(PostgresBackend, EmbeddingStatusStore):
    @override
    async def setup(self) -> None:
        async with await self._connect() as con:
            await con.execute(CREATE_STATUS_TABLE)

    @cached_property
    def upsert_processing_query(self) -> sql.SQL:
        return sql.SQL("""
            INSERT INTO embedding_status (
                kind, entity_id, owner_id, embedding_key, vector_dimension,
                last_embedded_at, source, processing, status, error_message,
                attempt_id, created_at, updated_at
            )
            VALUES (
                %(kind)s, %(entity_id)s, %(owner_id)s, %(embedding_key)s,
                %(vector_dimension)s, now(), %(source)s, %(processing)s,
                'processing', NULL, %(attempt_id)s, now(), now()
            )
            ON CONFLICT (kind, entity_id, owner_id) DO UPDATE
            SET embedding_key = excluded.embedding_key,
                vector_dimension = excluded.vector_dimension,
                last_embedded_at = greatest(
                    excluded.last_embedded_at,
                    embedding_status.last_embedded_at + interval '1 microsecond'
                ),
                source = excluded.source,
                processing = excluded.processing,
                status = excluded.status,
                error_message = NULL,
                attempt_id = excluded.attempt_id,
                updated_at = excluded.updated_at
            RETURNING *""")

    @cached_property
    def mark_completed_query(self) -> sql.SQL:
        return sql.SQL("""
            UPDATE embedding_status
            SET status = 'completed',
                vector_dimension = %(vector_dimension)s,
                processing = %(processing)s,
                error_message = NULL,
                updated_at = now()
            WHERE kind = %(kind)s AND entity_id = %(entity_id)s
              AND owner_id = %(owner_id)s AND attempt_id = %(attempt_id)s
              AND status = 'processing'
            RETURNING *""")

    def mark_failed_query(self, any_processing: bool) -> sql.Composed:
        attempt_filter = (
            sql.SQL("status = 'processing'")
            if any_processing
            else sql.SQL("status = 'processing' AND attempt_id = %(attempt_id)s")
        )
        return sql.SQL("""
            UPDATE embedding_status
            SET status = 'failed',
                error_message = %(error_message)s,
                updated_at = now()
            WHERE kind = %(kind)s AND entity_id = %(entity_id)s
              AND owner_id = %(owner_id)s AND {attempt_filter}
            RETURNING *""").format(attempt_filter=attempt_filter)

    async def _fetch_one(
        self, query: sql.Composable, params: dict[str, Any]
    ) -> EmbeddingStatusRecord | None:
        async with (
            await self._connect() as con,
            con.cursor(row_factory=dict_row) as cur,
        ):
            await cur.execute(query, params)
            row = await cur.fetchone()
            return _record_from_row(row) if row is not None else None

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
        record = await self._fetch_one(
            self.upsert_processing_query,
            dict(
                kind=kind.value,
                entity_id=entity_id,
                owner_id=owner_id,
                embedding_key=kind.embedding_key(entity_id),
                vector_dimension=vector_dimension,
                source=Jsonb(source.model_dump(mode="json")),
                processing=Jsonb(processing.model_dump(mode="json")),
                attempt_id=new_attempt_id(),
            ),
        )
        assert record is not None
        return record

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
        record = await self._fetch_one(
            self.mark_completed_query,
            dict(
                kind=kind.value,
                entity_id=entity_id,
                owner_id=owner_id,
                attempt_id=attempt_id,
                vector_dimension=vector_dimension,
                processing=Jsonb(processing.model_dump(mode="json")),
            ),
        )
        if record is None:
            await logger.ainfo(
                "ignoring completion of a superseded attempt",
                kind=kind.value,
                entity_id=entity_id,
                attempt_id=attempt_id,
            )
        return record

    @override
    async def mark_failed(
        self,
        kind: ContentKind,
        entity_id: str,
        owner_id: str,
        attempt_id: str | None,
        error_message: str,
    ) -> EmbeddingStatusRecord | None:
        record = await self._fetch_one(
            self.mark_failed_query(any_processing=attempt_id is None),
            dict(
                kind=kind.value,
                entity_id=entity_id,
                owner_id=owner_id,
                attempt_id=attempt_id,
                error_message=error_message,
            ),
        )
        if record is None:
            await logger.ainfo(
                "ignoring failure of a superseded attempt",
                kind=kind.value,
                entity_id=entity_id,
                attempt_id=attempt_id,
            )
        return record

    @override
    async def find(
        self, kind: ContentKind, entity_id: str, owner_id: str
    ) -> EmbeddingStatusRecord | None:
        return await self._fetch_one(
            sql.SQL("""
                SELECT * FROM embedding_status
                WHERE kind = %(kind)s AND entity_id = %(entity_id)s
                  AND owner_id = %(owner_id)s"""),
            dict(kind=kind.value, entity_id=entity_id, owner_id=owner_id),
        )

    @override
    async def delete(self, kind: ContentKind, entity_id: str, owner_id: str) -> bool:
        async with await self._connect() as con:
            cur = await con.execute(
                "DELETE FROM embedding_status "
                "WHERE kind = %s AND entity_id = %s AND owner_id = %s",
                (kind.value, entity_id, owner_id),
            )
            return cur.rowcount > 0


class PostgresContentRepository(PostgresBackend, ContentRepository):
    """
    Content documents stored as JSONB, one row per (kind, id). Roadmap ledgers
    live inside the roadmap document.
    """

    @override
    async def setup(self) -> None:
        async with await self._connect() as con:
            await con.execute(CREATE_CONTENT_TABLE)

    @override
    async def get(self, kind: ContentKind, id: str) -> AnyEntity | None:
        async with await self._connect() as con:
            cur = await con.execute(
                "SELECT doc FROM content_document WHERE kind = %s AND id = %s",
                (kind.value, id),
            )
            row = await cur.fetchone()
        if row is None:
            return None
        return entity_adapter.validate_python(row[0])

    @override
    async def get_many(
        self, kind: ContentKind, ids: Sequence[str]
    ) -> dict[str, ContentRecord]:
        if not ids:
            return {}
        async with await self._connect() as con:
            cur = await con.execute(
                "SELECT id, doc FROM content_document WHERE kind = %s AND id = ANY(%s)",
                (kind.value, list(ids)),
            )
            rows = await cur.fetchall()
        found: dict[str, ContentRecord] = {}
        for id, doc in rows:
            entity = entity_adapter.validate_python(doc)
            if isinstance(entity, Course | Video):
                found[id] = entity
        return found

    @override
    async def save(self, entity: AnyEntity) -> None:
        async with await self._connect() as con:
            await con.execute(
                """
                INSERT INTO content_document (kind, id, owner_id, doc)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (kind, id) DO UPDATE
                SET owner_id = excluded.owner_id, doc = excluded.doc,
                    updated_at = now()""",
                (
                    kind_of(entity).value,
                    entity.id,
                    entity.owner_id,
                    Jsonb(entity.model_dump(mode="json")),
                ),
            )

    @override
    async def delete(self, kind: ContentKind, id: str) -> bool:
        async with await self._connect() as con:
            cur = await con.execute(
                "DELETE FROM content_document WHERE kind = %s AND id = %s",
                (kind.value, id),
            )
            return cur.rowcount > 0

    async def _update_ledger(
        self, roadmap_id: str, kind: ContentKind, update: Any
    ) -> Any:
        """
        Runs `update(ledger)` on the roadmap's ledger inside a transaction that
        holds the roadmap row lock, then writes the document back.

        Raises:
            NotFoundError: if the roadmap does not exist.
            PersistenceError: if the database rejects the write.
        """
        try:
            async with await psycopg.AsyncConnection.connect(self.db_url) as con:
                async with con.transaction():
                    cur = await con.execute(
                        "SELECT doc FROM content_document "
                        "WHERE kind = 'roadmap' AND id = %s FOR UPDATE",
                        (roadmap_id,),
                    )
                    row = await cur.fetchone()
                    if row is None:
                        raise NotFoundError(f"roadmap {roadmap_id} not found")
                    roadmap = Roadmap.model_validate(row[0])
                    result = update(roadmap.ledger(kind))
                    await con.execute(
                        "UPDATE content_document SET doc = %s, updated_at = now() "
                        "WHERE kind = 'roadmap' AND id = %s",
                        (Jsonb(roadmap.model_dump(mode="json")), roadmap_id),
                    )
        except psycopg.Error as e:
            raise PersistenceError(f"ledger update failed: {e}") from e
        return result

    @override
    async def append_suggestions(
        self, roadmap_id: str, kind: ContentKind, entries: Sequence[SuggestionEntry]
    ) -> list[SuggestionEntry]:
        return await self._update_ledger(
            roadmap_id, kind, lambda ledger: merge_entries(ledger, entries)
        )

    @override
    async def set_suggestion_status(
        self,
        roadmap_id: str,
        kind: ContentKind,
        content_id: str,
        node_id: str,
        status: bool,
    ) -> SuggestionEntry:
        return await self._update_ledger(
            roadmap_id,
            kind,
            lambda ledger: upsert_entry(ledger, content_id, node_id, status),
        )
