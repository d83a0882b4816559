import datetime
from collections.abc import Sequence
from typing import Any, NamedTuple

import numpy as np
from typing_extensions import override

from .base import QueryMatch, VectorIndex


class _Entry(NamedTuple):
    vector: np.ndarray
    metadata: dict[str, Any]
    version: datetime.datetime | None


class InMemoryVectorIndex(VectorIndex):
    """
    A vector index held in process memory, used for local runs and tests.

    Dict insertion order doubles as the tie-break order. Overwriting an entry
    keeps its original position.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._namespaces: dict[str, dict[str, _Entry]] = {}

    @override
    async def upsert(
        self,
        namespace: str,
        id: str,
        vector: Sequence[float],
        metadata: dict[str, Any],
        version: datetime.datetime | None = None,
    ) -> bool:
        entries = self._namespaces.setdefault(namespace, {})
        current = entries.get(id)
        if (
            current is not None
            and current.version is not None
            and version is not None
            and version < current.version
        ):
            return False
        entries[id] = _Entry(
            np.asarray(vector, dtype=np.float64), dict(metadata), version
        )
        return True

    @override
    async def query(
        self, namespace: str, vector: Sequence[float], top_k: int
    ) -> list[QueryMatch]:
        async def _query() -> list[QueryMatch]:
            entries = self._namespaces.get(namespace)
            if not entries or top_k <= 0:
                return []
            ids = list(entries)
            # raises ValueError when the namespace mixes dimensions
            matrix = np.stack([entries[i].vector for i in ids])
            query = np.asarray(vector, dtype=np.float64)
            dots = matrix @ query
            norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
            with np.errstate(divide="ignore", invalid="ignore"):
                scores = np.where(norms > 0, dots / norms, 0.0)
            # stable sort keeps insertion order among equal scores
            order = np.argsort(-scores, kind="stable")[:top_k]
            return [
                QueryMatch(
                    id=ids[i],
                    score=float(scores[i]),
                    metadata=dict(entries[ids[i]].metadata),
                )
                for i in order
            ]

        return await self._bounded("query", _query())

    @override
    async def delete(self, namespace: str, id: str) -> None:
        self._namespaces.get(namespace, {}).pop(id, None)

    @override
    async def health_check(self) -> bool:
        return True

    def count(self, namespace: str) -> int:
        return len(self._namespaces.get(namespace, {}))

    def get(self, namespace: str, id: str) -> tuple[list[float], dict[str, Any]] | None:
        entry = self._namespaces.get(namespace, {}).get(id)
        if entry is None:
            return None
        return entry.vector.tolist(), dict(entry.metadata)
