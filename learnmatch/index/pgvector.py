import datetime
from collections.abc import Sequence
from functools import cached_property
from typing import Any

import numpy as np
import psycopg
from pgvector.psycopg import register_vector_async  # type: ignore
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from typing_extensions import override

from ..errors import IndexServiceError
from .base import QueryMatch, VectorIndex, logger


class PgVectorIndex(VectorIndex):
    """
    A vector index stored in a PostgreSQL table with a pgvector column.

    One row per (namespace, id). `seq` is assigned on first insert and never
    changes, so it orders ties by insertion.
    """

    def __init__(
        self,
        db_url: str,
        dimensions: int,
        index_name: str = "learnmatch_vectors",
        timeout: float = 30.0,
    ):
        self.db_url = db_url
        self.dimensions = dimensions
        self.index_name = index_name
        self.timeout = timeout

    @property
    def table_ident(self) -> sql.Identifier:
        return sql.Identifier(self.index_name)

    @cached_property
    def create_table_query(self) -> sql.Composed:
        return sql.SQL("""
            CREATE TABLE IF NOT EXISTS {table} (
                namespace text NOT NULL,
                id text NOT NULL,
                seq bigint GENERATED ALWAYS AS IDENTITY,
                embedding vector({dimensions}) NOT NULL,
                metadata jsonb NOT NULL DEFAULT '{{}}',
                version timestamptz,
                updated_at timestamptz NOT NULL DEFAULT now(),
                PRIMARY KEY (namespace, id)
            )""").format(
            table=self.table_ident,
            dimensions=sql.Literal(self.dimensions),
        )

    @cached_property
    def add_version_column_query(self) -> sql.Composed:
        return sql.SQL(
            "ALTER TABLE {table} ADD COLUMN IF NOT EXISTS version timestamptz"
        ).format(table=self.table_ident)

    @cached_property
    def upsert_query(self) -> sql.Composed:
        return sql.SQL("""
            INSERT INTO {table} (namespace, id, embedding, metadata, version)
            VALUES (%(namespace)s, %(id)s, %(embedding)s, %(metadata)s, %(version)s)
            ON CONFLICT (namespace, id) DO UPDATE
            SET embedding = excluded.embedding,
                metadata = excluded.metadata,
                version = excluded.version,
                updated_at = now()
            WHERE {table}.version IS NULL
               OR excluded.version IS NULL
               OR excluded.version >= {table}.version
            RETURNING id""").format(table=self.table_ident)

    @cached_property
    def query_query(self) -> sql.Composed:
        return sql.SQL("""
            SELECT id, 1 - (embedding <=> %(query)s::vector({dimensions})) AS score,
                   metadata
            FROM {table}
            WHERE namespace = %(namespace)s
            ORDER BY embedding <=> %(query)s::vector({dimensions}), seq
            LIMIT %(limit)s""").format(
            table=self.table_ident,
            dimensions=sql.Literal(self.dimensions),
        )

    @cached_property
    def delete_query(self) -> sql.Composed:
        return sql.SQL(
            "DELETE FROM {table} WHERE namespace = %s AND id = %s"
        ).format(table=self.table_ident)

    async def _connect(self) -> psycopg.AsyncConnection[Any]:
        con = await psycopg.AsyncConnection.connect(self.db_url, autocommit=True)
        await register_vector_async(con)
        return con

    @override
    def classify_error(self, e: Exception) -> IndexServiceError:
        retryable = isinstance(e, psycopg.OperationalError | ConnectionError)
        return IndexServiceError(f"vector index error: {e}", retryable=retryable)

    @override
    async def setup(self) -> None:
        async def _setup() -> None:
            async with await psycopg.AsyncConnection.connect(
                self.db_url, autocommit=True
            ) as con:
                await con.execute("CREATE EXTENSION IF NOT EXISTS vector")
                await con.execute(self.create_table_query)
                await con.execute(self.add_version_column_query)

        await self._bounded("setup", _setup())
        await logger.ainfo("vector index ready", index_name=self.index_name)

    @override
    async def upsert(
        self,
        namespace: str,
        id: str,
        vector: Sequence[float],
        metadata: dict[str, Any],
        version: datetime.datetime | None = None,
    ) -> bool:
        async def _upsert() -> bool:
            async with await self._connect() as con:
                cur = await con.execute(
                    self.upsert_query,
                    dict(
                        namespace=namespace,
                        id=id,
                        embedding=np.asarray(vector, dtype=np.float32),
                        metadata=Jsonb(metadata),
                        version=version,
                    ),
                )
                # no row comes back when a newer version is stored
                return (await cur.fetchone()) is not None

        return await self._bounded("upsert", _upsert())

    @override
    async def query(
        self, namespace: str, vector: Sequence[float], top_k: int
    ) -> list[QueryMatch]:
        async def _query() -> list[QueryMatch]:
            async with (
                await self._connect() as con,
                con.cursor(row_factory=dict_row) as cur,
            ):
                await cur.execute(
                    self.query_query,
                    dict(
                        namespace=namespace,
                        query=np.asarray(vector, dtype=np.float32),
                        limit=top_k,
                    ),
                )
                return [
                    QueryMatch(
                        id=row["id"],
                        score=float(row["score"]),
                        metadata=row["metadata"] or {},
                    )
                    for row in await cur.fetchall()
                ]

        return await self._bounded("query", _query())

    @override
    async def delete(self, namespace: str, id: str) -> None:
        async def _delete() -> None:
            async with await self._connect() as con:
                await con.execute(self.delete_query, (namespace, id))

        await self._bounded("delete", _delete())

    @override
    async def health_check(self) -> bool:
        async def _ping() -> bool:
            async with (
                await psycopg.AsyncConnection.connect(self.db_url) as con,
                con.cursor() as cur,
            ):
                await cur.execute("SELECT 1")
                return (await cur.fetchone()) is not None

        return await self._bounded("health_check", _ping())
