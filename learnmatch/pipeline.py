from dataclasses import dataclass, field

import structlog

from .configuration import Settings
from .dispatcher import EmbeddingDispatcher
from .embedders import create_embedder
from .embeddings import Embedder
from .health import HealthMonitor
from .index import VectorIndex, create_vector_index
from .orchestrator import EmbeddingOrchestrator
from .stores import ContentRepository, EmbeddingStatusStore, create_stores
from .suggestions import SuggestionMatcher

logger = structlog.get_logger()


@dataclass
class Pipeline:
    """
    Every client and service of the pipeline, built once and shared.

    Construct it with `from_settings`, or directly with test doubles.
    """

    settings: Settings
    embedder: Embedder
    index: VectorIndex
    status_store: EmbeddingStatusStore
    repository: ContentRepository
    orchestrator: EmbeddingOrchestrator = field(init=False)
    dispatcher: EmbeddingDispatcher = field(init=False)
    matcher: SuggestionMatcher = field(init=False)
    health: HealthMonitor = field(init=False)

    def __post_init__(self):
        self.orchestrator = EmbeddingOrchestrator(
            self.embedder, self.index, self.status_store, self.settings
        )
        self.dispatcher = EmbeddingDispatcher(
            self.orchestrator, max_concurrent=self.settings.max_concurrent_embeddings
        )
        self.matcher = SuggestionMatcher(
            self.embedder, self.index, self.repository, self.settings
        )
        self.health = HealthMonitor(
            self.embedder, self.index, timeout=self.settings.request_timeout
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Pipeline":
        status_store, repository = create_stores(settings)
        return cls(
            settings=settings,
            embedder=create_embedder(settings),
            index=create_vector_index(settings),
            status_store=status_store,
            repository=repository,
        )

    async def setup(self) -> None:
        await self.embedder.setup()
        await self.index.setup()
        await self.status_store.setup()
        await self.repository.setup()
        await logger.adebug(
            "pipeline ready",
            provider=self.settings.embedding_provider,
            model=self.settings.model,
            vector_backend=self.settings.vector_backend,
            store_backend=self.settings.store_backend,
        )

    async def close(self) -> None:
        await self.dispatcher.drain()
