import asyncio
import datetime
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog

from ..errors import IndexServiceError, LearnMatchError

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class QueryMatch:
    """A single nearest-neighbour hit. `score` is the cosine similarity."""

    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


class VectorIndex(ABC):
    """
    A namespaced store of vectors queried by cosine similarity.

    Entries are keyed by (namespace, id) and upserts overwrite in place.
    An upsert carrying a `version` older than the stored entry's is not
    applied. Query results are ordered by descending score, ties broken by the
    order in which entries were first inserted.
    """

    timeout: float = 30.0

    async def setup(self) -> None:  # noqa: B027 empty on purpose
        """
        Create whatever the backend needs before the first call
        """

    @abstractmethod
    async def upsert(
        self,
        namespace: str,
        id: str,
        vector: Sequence[float],
        metadata: dict[str, Any],
        version: datetime.datetime | None = None,
    ) -> bool:
        """Returns False when a newer version of the entry is already stored."""

    @abstractmethod
    async def query(
        self, namespace: str, vector: Sequence[float], top_k: int
    ) -> list[QueryMatch]: ...

    @abstractmethod
    async def delete(self, namespace: str, id: str) -> None: ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Returns True when the backend answers. Raises IndexServiceError otherwise."""

    @property
    def configured(self) -> bool:
        return True

    async def _bounded(self, operation: str, call: Awaitable[T]) -> T:
        """Runs a backend call under the timeout, mapping failures to IndexServiceError."""
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except LearnMatchError:
            raise
        except (asyncio.TimeoutError, TimeoutError) as e:
            await logger.awarning("vector index call timed out", operation=operation)
            raise IndexServiceError(
                f"vector index {operation} timed out", retryable=True
            ) from e
        except Exception as e:
            error = self.classify_error(e)
            await logger.awarning(
                "vector index call failed",
                operation=operation,
                retryable=error.retryable,
                error=str(e),
            )
            raise error from e

    def classify_error(self, e: Exception) -> IndexServiceError:
        return IndexServiceError(
            f"vector index error: {e}", retryable=isinstance(e, ConnectionError)
        )
