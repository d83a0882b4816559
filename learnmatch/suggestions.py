from collections.abc import Awaitable
from enum import Enum
from typing import TypeVar

import structlog
from ddtrace.trace import tracer
from pydantic import Field

from .configuration import Settings
from .embeddings import Embedder
from .errors import ContentStoreError, NotFoundError, ValidationError
from .index import QueryMatch, VectorIndex
from .models import (
    CamelModel,
    ContentKind,
    ContentRecord,
    Roadmap,
    SuggestionEntry,
    Video,
)
from .normalizer import preprocess_text
from .stores import ContentRepository, bounded
from .tracing import tag_current_span

logger = structlog.get_logger()

MAX_TOP_K = 100

T = TypeVar("T")


class PersistenceState(str, Enum):
    SKIPPED = "skipped"
    PERSISTED = "persisted"
    FAILED = "failed"


class PersistenceOutcome(CamelModel):
    """What happened to the ledger merge of a suggestion request."""

    state: PersistenceState = PersistenceState.SKIPPED
    added: int = 0
    error: str | None = None


class Suggestion(CamelModel):
    content_id: str
    kind: ContentKind
    title: str
    subtitle: str = ""
    description: str = ""
    category: str = ""
    level: str = ""
    score: float
    language: str | None = None
    duration: str | None = None
    thumbnail: str | None = None
    price: float | None = None
    is_free: bool | None = None


class SuggestionResult(CamelModel):
    suggestions: list[Suggestion] = Field(default_factory=list)
    total: int = 0
    persistence: PersistenceOutcome = Field(default_factory=PersistenceOutcome)


class ExistingSuggestions(CamelModel):
    courses: list[SuggestionEntry] = Field(default_factory=list)
    videos: list[SuggestionEntry] = Field(default_factory=list)


def _suggestion(kind: ContentKind, record: ContentRecord, score: float) -> Suggestion:
    suggestion = Suggestion(
        content_id=record.id,
        kind=kind,
        title=record.title,
        subtitle=record.subtitle,
        description=record.description,
        category=record.category,
        level=record.level,
        score=score,
    )
    suggestion.thumbnail = record.thumbnail
    if isinstance(record, Video):
        suggestion.language = record.language
        suggestion.duration = record.duration
    else:
        suggestion.price = record.price
        suggestion.is_free = record.is_free
    return suggestion


def _suggestable(kind: ContentKind) -> None:
    if not kind.suggestable:
        raise ValidationError(f"cannot suggest {kind.value}s, only courses and videos")


class SuggestionMatcher:
    """
    Finds courses and videos similar to a free-text query and records them on a
    roadmap node's suggestion ledger.
    """

    def __init__(
        self,
        embedder: Embedder,
        index: VectorIndex,
        repository: ContentRepository,
        settings: Settings,
    ):
        self.embedder = embedder
        self.index = index
        self.repository = repository
        self.settings = settings

    async def _content(self, operation: str, call: Awaitable[T]) -> T:
        return await bounded(
            call,
            timeout=self.settings.request_timeout,
            error=ContentStoreError,
            operation=operation,
        )

    async def _require_node(
        self, roadmap_id: str, node_id: str, owner_id: str | None
    ) -> Roadmap:
        roadmap = await self._content(
            "get_roadmap", self.repository.get_roadmap(roadmap_id, owner_id)
        )
        if roadmap is None:
            raise NotFoundError(f"roadmap {roadmap_id} not found")
        if roadmap.node(node_id) is None:
            raise NotFoundError(f"node {node_id} not found in roadmap {roadmap_id}")
        return roadmap

    def _entity_id(self, kind: ContentKind, match: QueryMatch) -> str | None:
        entity_id = match.metadata.get("entity_id")
        if isinstance(entity_id, str) and entity_id:
            return entity_id
        return kind.entity_id_from_key(match.id)

    @tracer.wrap()
    async def suggest(
        self,
        kind: ContentKind,
        query: str,
        top_k: int | None = None,
        roadmap_id: str | None = None,
        node_id: str | None = None,
        owner_id: str | None = None,
    ) -> SuggestionResult:
        """
        Returns the published content most similar to `query`.

        When `roadmap_id` and `node_id` are given, results not yet on the node's
        ledger are appended with status False. A ledger write failure does not
        fail the request; it is reported in `SuggestionResult.persistence`.

        Raises:
            ValidationError: empty query, top_k outside 1..100, a roadmap without
                a node or a node without a roadmap, or a kind that cannot be
                suggested.
            NotFoundError: the roadmap or node does not exist.
            EmbeddingServiceError, IndexServiceError, ContentStoreError: a
                backend is unavailable or did not answer in time.
        """
        _suggestable(kind)
        if not query or not query.strip():
            raise ValidationError("query must not be empty")
        if top_k is None:
            top_k = self.settings.default_top_k
        if isinstance(top_k, bool) or not 1 <= top_k <= MAX_TOP_K:
            raise ValidationError(f"top_k must be between 1 and {MAX_TOP_K}")
        if roadmap_id is not None and not node_id:
            raise ValidationError("node_id is required when roadmap_id is given")
        if node_id is not None and roadmap_id is None:
            raise ValidationError("roadmap_id is required when node_id is given")
        if roadmap_id is not None and node_id:
            await self._require_node(roadmap_id, node_id, owner_id)

        tag_current_span(kind=kind.value, top_k=top_k, roadmap_id=roadmap_id)
        # queries made only of stop words still deserve an answer
        text = preprocess_text(query) or query.strip()
        embedding = await self.embedder.embed(text, "search_query")
        matches = await self.index.query(
            self.settings.namespace(kind), embedding.vector, top_k
        )

        ranked: list[tuple[str, float]] = []
        for match in matches:
            entity_id = self._entity_id(kind, match)
            if entity_id is not None:
                ranked.append((entity_id, match.score))
        records = await self._content(
            "get_many", self.repository.get_many(kind, [i for i, _ in ranked])
        )
        suggestions = [
            _suggestion(kind, records[entity_id], score)
            for entity_id, score in ranked
            if entity_id in records
            and records[entity_id].published
            and records[entity_id].approved
        ]
        await logger.adebug(
            "suggestions found",
            kind=kind.value,
            matches=len(matches),
            suggestions=len(suggestions),
        )

        persistence = PersistenceOutcome()
        if roadmap_id is not None and node_id and suggestions:
            persistence = await self._persist(kind, roadmap_id, node_id, suggestions)
        return SuggestionResult(
            suggestions=suggestions, total=len(suggestions), persistence=persistence
        )

    async def _persist(
        self,
        kind: ContentKind,
        roadmap_id: str,
        node_id: str,
        suggestions: list[Suggestion],
    ) -> PersistenceOutcome:
        entries = [
            SuggestionEntry(content_id=s.content_id, node_id=node_id, status=False)
            for s in suggestions
        ]
        try:
            added = await self._content(
                "append_suggestions",
                self.repository.append_suggestions(roadmap_id, kind, entries),
            )
        except Exception as e:
            await logger.aexception(
                "failed to persist suggestions",
                kind=kind.value,
                roadmap_id=roadmap_id,
                node_id=node_id,
            )
            return PersistenceOutcome(state=PersistenceState.FAILED, error=str(e))
        await logger.ainfo(
            "suggestions persisted",
            kind=kind.value,
            roadmap_id=roadmap_id,
            node_id=node_id,
            added=len(added),
        )
        return PersistenceOutcome(state=PersistenceState.PERSISTED, added=len(added))

    async def update_suggestion_status(
        self,
        roadmap_id: str,
        node_id: str,
        kind: ContentKind,
        content_id: str,
        status: bool,
        owner_id: str | None = None,
    ) -> SuggestionEntry:
        """
        Sets a suggestion to accepted (True) or rejected (False).

        The entry is created if it is not on the ledger yet. Repeating the same
        call leaves the ledger unchanged.
        """
        _suggestable(kind)
        if not content_id:
            raise ValidationError("suggestion id must not be empty")
        await self._require_node(roadmap_id, node_id, owner_id)
        entry = await self._content(
            "set_suggestion_status",
            self.repository.set_suggestion_status(
                roadmap_id, kind, content_id, node_id, status
            ),
        )
        await logger.ainfo(
            "suggestion status updated",
            kind=kind.value,
            roadmap_id=roadmap_id,
            node_id=node_id,
            content_id=content_id,
            status=status,
        )
        return entry

    async def existing_suggestions(
        self, roadmap_id: str, node_id: str, owner_id: str | None = None
    ) -> ExistingSuggestions:
        """Lists the course and video ledger entries of one roadmap node."""
        roadmap = await self._require_node(roadmap_id, node_id, owner_id)
        return ExistingSuggestions(
            courses=[e for e in roadmap.suggested_courses if e.node_id == node_id],
            videos=[e for e in roadmap.suggested_videos if e.node_id == node_id],
        )
