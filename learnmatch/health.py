import asyncio
import datetime
from collections.abc import Awaitable, Callable

import structlog
from pydantic import Field

from .embeddings import ApiKeyMixin, Embedder
from .index import VectorIndex
from .models import CamelModel, utcnow

logger = structlog.get_logger()


class ServiceHealth(CamelModel):
    healthy: bool
    configured: bool
    error: str | None = None


class HealthServices(CamelModel):
    embedding_backend: ServiceHealth
    vector_backend: ServiceHealth


class HealthReport(CamelModel):
    timestamp: datetime.datetime = Field(default_factory=utcnow)
    services: HealthServices
    errors: list[str] = Field(default_factory=list)
    overall: bool


class HealthMonitor:
    """
    Probes the embedding and vector backends. The probes run concurrently, each
    under the timeout, and a failing probe never affects the other.
    """

    def __init__(self, embedder: Embedder, index: VectorIndex, timeout: float = 30.0):
        self.embedder = embedder
        self.index = index
        self.timeout = timeout

    async def _probe(
        self, name: str, configured: bool, probe: Callable[[], Awaitable[object]]
    ) -> ServiceHealth:
        if not configured:
            return ServiceHealth(
                healthy=False, configured=False, error=f"{name} is not configured"
            )
        try:
            result = await asyncio.wait_for(probe(), timeout=self.timeout)
        except (asyncio.TimeoutError, TimeoutError):
            return ServiceHealth(
                healthy=False, configured=True, error=f"{name} timed out"
            )
        except Exception as e:
            await logger.awarning("health probe failed", service=name, error=str(e))
            return ServiceHealth(healthy=False, configured=True, error=f"{name}: {e}")
        if result is False:
            return ServiceHealth(
                healthy=False, configured=True, error=f"{name} reported unhealthy"
            )
        return ServiceHealth(healthy=True, configured=True)

    async def check(self) -> HealthReport:
        """Returns the health of both backends. Never raises."""
        embedding_configured = (
            self.embedder.configured if isinstance(self.embedder, ApiKeyMixin) else True
        )
        embedding, vector = await asyncio.gather(
            self._probe(
                "embedding backend", embedding_configured, self.embedder.health_check
            ),
            self._probe("vector backend", self.index.configured, self.index.health_check),
        )
        errors = [s.error for s in (embedding, vector) if s.error is not None]
        report = HealthReport(
            services=HealthServices(embedding_backend=embedding, vector_backend=vector),
            errors=errors,
            overall=embedding.healthy and vector.healthy,
        )
        await logger.adebug("health checked", overall=report.overall, errors=errors)
        return report
