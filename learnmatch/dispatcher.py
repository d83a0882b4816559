import asyncio

import structlog

from .errors import StatusStoreError
from .models import ContentKind, Course, EmbeddingStatusRecord, Roadmap, Video, kind_of
from .orchestrator import EmbeddingOrchestrator
from .stores import bounded

logger = structlog.get_logger()


class EmbeddingDispatcher:
    """
    Runs orchestrator work in the background, detached from the request that
    triggered it.

    Every run is an asyncio task referenced from `_tasks` until it finishes. A
    semaphore caps how many runs embed at once. Nothing raised by a run reaches
    the event loop: it is logged and the entity's status is marked failed.
    """

    def __init__(self, orchestrator: EmbeddingOrchestrator, max_concurrent: int = 4):
        self.orchestrator = orchestrator
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tasks: set[asyncio.Task[EmbeddingStatusRecord | None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def on_entity_written(
        self,
        entity: Course | Video | Roadmap,
        owner_id: str,
        force: bool = False,
    ) -> asyncio.Task[EmbeddingStatusRecord | None]:
        """
        Schedules an embedding run for `entity` and returns immediately.

        Must be called from a running event loop.
        """
        kind = kind_of(entity)
        task = asyncio.create_task(
            self._supervised(entity, owner_id, force),
            name=f"embed-{kind.embedding_key(entity.id)}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug(
            "embedding scheduled",
            kind=kind.value,
            entity_id=entity.id,
            pending=len(self._tasks),
        )
        return task

    async def _supervised(
        self, entity: Course | Video | Roadmap, owner_id: str, force: bool
    ) -> EmbeddingStatusRecord | None:
        kind = kind_of(entity)
        async with self._semaphore:
            try:
                return await self.orchestrator.run(entity, owner_id, force=force)
            except Exception as e:
                await logger.aexception(
                    "background embedding failed",
                    kind=kind.value,
                    entity_id=entity.id,
                )
                await self._record_failure(kind, entity.id, owner_id, str(e))
                return None

    async def _record_failure(
        self, kind: ContentKind, entity_id: str, owner_id: str, message: str
    ) -> None:
        try:
            await bounded(
                self.orchestrator.status_store.mark_failed(
                    kind, entity_id, owner_id, None, message
                ),
                timeout=self.orchestrator.settings.request_timeout,
                error=StatusStoreError,
                operation="mark_failed",
            )
        except Exception:
            await logger.aexception(
                "could not record embedding failure",
                kind=kind.value,
                entity_id=entity_id,
            )

    async def drain(self) -> None:
        """Waits for every scheduled run, including runs scheduled while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
