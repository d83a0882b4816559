import asyncio
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Literal, TypeAlias

import httpx
import structlog
from ddtrace.trace import tracer

from .errors import (
    ConfigurationError,
    EmbeddingDimensionError,
    EmbeddingServiceError,
    LearnMatchError,
    is_retryable_status,
)

logger = structlog.get_logger()

EmbeddingVector: TypeAlias = list[float]
InputType: TypeAlias = Literal["search_document", "search_query"]

HEALTH_PROBE_TEXT = "health check"


@dataclass
class Usage:
    """The number of tokens used in an embedding request"""

    prompt_tokens: int
    total_tokens: int


@dataclass
class EmbeddingResponse:
    """A generic embedding response"""

    embeddings: list[EmbeddingVector]
    usage: Usage | None


@dataclass
class EmbeddingResult:
    """
    One embedded text.

    Attributes:
        vector: the embedding.
        dimension: len(vector), always equal to the configured dimension.
        token_count: tokens billed by the provider, or an estimate.
        model: the model that produced the vector.
        duration: seconds spent in the provider call.
    """

    vector: EmbeddingVector
    dimension: int
    token_count: int
    model: str
    duration: float


def estimate_token_count(text: str) -> int:
    """Roughly four characters per token."""
    return math.ceil(len(text) / 4)


def classify_error(e: BaseException) -> EmbeddingServiceError:
    """
    Maps a failure from an embedding provider to an EmbeddingServiceError.

    Timeouts, transport errors, rate limits and 5xx responses are retryable.
    Every other provider error is not.
    """
    if isinstance(e, EmbeddingServiceError):
        return e
    if isinstance(e, asyncio.TimeoutError | httpx.TimeoutException):
        return EmbeddingServiceError("embedding request timed out", retryable=True)
    if isinstance(e, httpx.TransportError | ConnectionError):
        return EmbeddingServiceError(
            f"could not reach the embedding provider: {e}", retryable=True
        )
    status_code = getattr(e, "status_code", None)
    if not isinstance(status_code, int):
        status_code = None
    return EmbeddingServiceError(
        f"embedding provider error: {e}",
        retryable=is_retryable_status(status_code),
        status_code=status_code,
    )


class Embedder(ABC):
    """
    Abstract base class for an Embedder.

    Subclasses implement `call_embed_api`. `embed` adds validation, the timeout,
    error classification, dimension checking, tracing and logging around it.
    """

    @property
    @abstractmethod
    def model_name(self) -> str:
        """The model used for embeddings"""

    @property
    @abstractmethod
    def expected_dimensions(self) -> int:
        """The vector size every response must have"""

    @property
    def timeout(self) -> float:
        return 30.0

    async def setup(self) -> None:  # noqa: B027 empty on purpose
        """
        Setup the embedder
        """

    @abstractmethod
    async def call_embed_api(
        self, documents: list[str], input_type: InputType
    ) -> EmbeddingResponse:
        """
        Call the embed API
        :param documents: the texts to embed
        :param input_type: whether the texts are documents or search queries
        :return: one vector per document
        """

    def classify_error(self, e: BaseException) -> EmbeddingServiceError:
        return classify_error(e)

    async def embed(
        self, text: str, input_type: InputType = "search_document"
    ) -> EmbeddingResult:
        """
        Embeds one text.

        Args:
            text (str): the preprocessed text.
            input_type: "search_document" for content, "search_query" for queries.

        Returns:
            EmbeddingResult: the vector and its metadata.

        Raises:
            EmbeddingServiceError: the provider failed, timed out or returned
                something unusable. `retryable` tells whether trying again may help.
            EmbeddingDimensionError: the vector size does not match the
                configured dimension.
        """
        if not text or not text.strip():
            raise EmbeddingServiceError("cannot embed empty text", retryable=False)

        with tracer.trace("embeddings.embed") as span:
            span.set_tag("model", self.model_name)
            span.set_tag("input_type", input_type)
            start_time = time.perf_counter()
            try:
                response = await asyncio.wait_for(
                    self.call_embed_api([text], input_type), timeout=self.timeout
                )
            except LearnMatchError:
                raise
            except Exception as e:
                error = self.classify_error(e)
                await logger.awarning(
                    "embedding request failed",
                    model=self.model_name,
                    retryable=error.retryable,
                    status_code=error.status_code,
                    error=str(e),
                )
                raise error from e
            duration = time.perf_counter() - start_time
            span.set_metric("embeddings.request.time.seconds", duration)

            if len(response.embeddings) != 1 or not response.embeddings[0]:
                raise EmbeddingServiceError(
                    "embedding provider returned no vector", retryable=False
                )
            vector = [float(v) for v in response.embeddings[0]]
            if len(vector) != self.expected_dimensions:
                raise EmbeddingDimensionError(
                    expected=self.expected_dimensions,
                    actual=len(vector),
                    model=self.model_name,
                )

            token_count = (
                response.usage.total_tokens
                if response.usage is not None and response.usage.total_tokens > 0
                else estimate_token_count(text)
            )
            span.set_metric("embeddings.tokens.total", token_count)
            await logger.adebug(
                "embedded text",
                model=self.model_name,
                input_type=input_type,
                dimension=len(vector),
                token_count=token_count,
                duration=duration,
            )
            return EmbeddingResult(
                vector=vector,
                dimension=len(vector),
                token_count=token_count,
                model=self.model_name,
                duration=duration,
            )

    async def health_check(self) -> None:
        """Embeds a probe string. Raises the same errors as `embed`."""
        await self.embed(HEALTH_PROBE_TEXT, "search_query")


class ApiKeyMixin:
    """
    A mixin class that provides functionality for managing API keys.

    Attributes:
        api_key_name (str): The name of the API key setting.
    """

    api_key_name: str | None = None
    _api_key_: str | None = None

    @property
    def _api_key(self) -> str:
        """
        Retrieves the stored API key.

        Raises:
            ConfigurationError: If the API key has not been set.
        """
        if self._api_key_ is None:
            raise ConfigurationError(f"missing API key: {self.api_key_name}")
        return self._api_key_

    @property
    def configured(self) -> bool:
        return self._api_key_ is not None

    def set_api_key(self, secrets: dict[str, str | None]):
        """
        Sets the API key from the provided secrets.

        Missing keys are accepted here so that the health check can report the
        backend as not configured. Calls fail later with a ConfigurationError.
        """
        if self.api_key_name is None:
            return
        self._api_key_ = secrets.get(self.api_key_name)


class BaseURLMixin:
    """
    A mixin class that provides functionality for managing base URLs.

    Attributes:
        base_url (str | None): The base URL for the API.
    """

    base_url: str | None = None
