from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence

from typing_extensions import override

from ..errors import NotFoundError
from ..models import (
    ContentKind,
    ContentRecord,
    Course,
    Roadmap,
    SuggestionEntry,
    Video,
    kind_of,
)

AnyEntity = Course | Video | Roadmap


def merge_entries(
    ledger: list[SuggestionEntry], entries: Iterable[SuggestionEntry]
) -> list[SuggestionEntry]:
    """
    Appends to `ledger` every entry whose (content_id, node_id) is not on it yet.

    Returns the entries that were added. `ledger` is modified in place.
    """
    present = {(entry.content_id, entry.node_id) for entry in ledger}
    added: list[SuggestionEntry] = []
    for entry in entries:
        key = (entry.content_id, entry.node_id)
        if key in present:
            continue
        present.add(key)
        ledger.append(entry)
        added.append(entry)
    return added


def upsert_entry(
    ledger: list[SuggestionEntry], content_id: str, node_id: str, status: bool
) -> SuggestionEntry:
    """Sets the status of the (content_id, node_id) entry, appending it if absent."""
    for entry in ledger:
        if entry.content_id == content_id and entry.node_id == node_id:
            entry.status = status
            return entry
    entry = SuggestionEntry(content_id=content_id, node_id=node_id, status=status)
    ledger.append(entry)
    return entry


class ContentRepository(ABC):
    """
    Read access to courses, videos and roadmaps, plus the roadmap suggestion
    ledgers. Content itself is owned by the surrounding application.
    """

    async def setup(self) -> None:  # noqa: B027 empty on purpose
        pass

    @abstractmethod
    async def get(self, kind: ContentKind, id: str) -> AnyEntity | None: ...

    @abstractmethod
    async def get_many(
        self, kind: ContentKind, ids: Sequence[str]
    ) -> dict[str, ContentRecord]:
        """Fetches courses or videos by id. Missing ids are absent from the result."""

    @abstractmethod
    async def save(self, entity: AnyEntity) -> None: ...

    @abstractmethod
    async def delete(self, kind: ContentKind, id: str) -> bool: ...

    @abstractmethod
    async def append_suggestions(
        self, roadmap_id: str, kind: ContentKind, entries: Sequence[SuggestionEntry]
    ) -> list[SuggestionEntry]:
        """
        Atomically appends the entries that are not on the roadmap's ledger yet.

        Concurrent calls for the same roadmap never produce duplicate
        (content_id, node_id) pairs.

        Returns:
            list[SuggestionEntry]: the entries actually added.

        Raises:
            NotFoundError: if the roadmap does not exist.
        """

    @abstractmethod
    async def set_suggestion_status(
        self,
        roadmap_id: str,
        kind: ContentKind,
        content_id: str,
        node_id: str,
        status: bool,
    ) -> SuggestionEntry: ...

    async def get_roadmap(
        self, roadmap_id: str, owner_id: str | None = None
    ) -> Roadmap | None:
        """Fetches a roadmap, restricted to `owner_id` when one is given."""
        roadmap = await self.get(ContentKind.ROADMAP, roadmap_id)
        if not isinstance(roadmap, Roadmap):
            return None
        if owner_id is not None and roadmap.owner_id != owner_id:
            return None
        return roadmap

    async def health_check(self) -> bool:
        return True


class InMemoryContentRepository(ContentRepository):
    def __init__(self, entities: Iterable[AnyEntity] = ()):
        self._documents: dict[tuple[ContentKind, str], AnyEntity] = {}
        for entity in entities:
            self._documents[(kind_of(entity), entity.id)] = entity.model_copy(deep=True)

    @override
    async def get(self, kind: ContentKind, id: str) -> AnyEntity | None:
        entity = self._documents.get((kind, id))
        return entity.model_copy(deep=True) if entity is not None else None

    @override
    async def get_many(
        self, kind: ContentKind, ids: Sequence[str]
    ) -> dict[str, ContentRecord]:
        found: dict[str, ContentRecord] = {}
        for id in ids:
            entity = self._documents.get((kind, id))
            if isinstance(entity, Course | Video):
                found[id] = entity.model_copy(deep=True)
        return found

    @override
    async def save(self, entity: AnyEntity) -> None:
        self._documents[(kind_of(entity), entity.id)] = entity.model_copy(deep=True)

    @override
    async def delete(self, kind: ContentKind, id: str) -> bool:
        return self._documents.pop((kind, id), None) is not None

    def _roadmap(self, roadmap_id: str) -> Roadmap:
        roadmap = self._documents.get((ContentKind.ROADMAP, roadmap_id))
        if not isinstance(roadmap, Roadmap):
            raise NotFoundError(f"roadmap {roadmap_id} not found")
        return roadmap

    @override
    async def append_suggestions(
        self, roadmap_id: str, kind: ContentKind, entries: Sequence[SuggestionEntry]
    ) -> list[SuggestionEntry]:
        # no await between reading and writing the ledger
        ledger = self._roadmap(roadmap_id).ledger(kind)
        added = merge_entries(ledger, (e.model_copy() for e in entries))
        return [entry.model_copy() for entry in added]

    @override
    async def set_suggestion_status(
        self,
        roadmap_id: str,
        kind: ContentKind,
        content_id: str,
        node_id: str,
        status: bool,
    ) -> SuggestionEntry:
        ledger = self._roadmap(roadmap_id).ledger(kind)
        return upsert_entry(ledger, content_id, node_id, status).model_copy()
