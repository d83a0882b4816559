from ..configuration import Settings
from .calls import bounded
from .content import ContentRepository, InMemoryContentRepository
from .status import EmbeddingStatusStore, InMemoryEmbeddingStatusStore

__all__ = [
    "ContentRepository",
    "bounded",
    "EmbeddingStatusStore",
    "InMemoryContentRepository",
    "InMemoryEmbeddingStatusStore",
    "create_stores",
]


def create_stores(
    settings: Settings,
) -> tuple[EmbeddingStatusStore, ContentRepository]:
    if settings.store_backend == "memory":
        return InMemoryEmbeddingStatusStore(), InMemoryContentRepository()
    # Note: deferred import to avoid import overhead
    from .postgres import PostgresContentRepository, PostgresEmbeddingStatusStore

    return (
        PostgresEmbeddingStatusStore(settings.db_url),
        PostgresContentRepository(settings.db_url),
    )
