from ..configuration import Settings
from .base import QueryMatch, VectorIndex
from .memory import InMemoryVectorIndex

__all__ = ["InMemoryVectorIndex", "QueryMatch", "VectorIndex", "create_vector_index"]


def create_vector_index(settings: Settings) -> VectorIndex:
    if settings.vector_backend == "memory":
        return InMemoryVectorIndex(timeout=settings.request_timeout)
    # Note: deferred import, the memory backend needs no database driver
    from .pgvector import PgVectorIndex

    assert settings.vector_db_url is not None
    return PgVectorIndex(
        db_url=settings.vector_db_url,
        dimensions=settings.embedding_dimensions,
        index_name=settings.vector_index_name,
        timeout=settings.request_timeout,
    )
