from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, PrivateAttr
from typing_extensions import override

if TYPE_CHECKING:
    import openai

from ..embeddings import (
    ApiKeyMixin,
    BaseURLMixin,
    Embedder,
    EmbeddingResponse,
    EmbeddingVector,
    InputType,
    Usage,
    classify_error,
)
from ..errors import EmbeddingServiceError


class OpenAI(ApiKeyMixin, BaseURLMixin, BaseModel, Embedder):
    """
    Embedder that uses OpenAI's API to embed documents into vector representations.

    OpenAI has no notion of document and query input types, both are embedded
    the same way.

    Attributes:
        implementation (Literal["openai"]): The literal identifier for this
            implementation.
        model (str): The name of the OpenAI model used for embeddings.
        dimensions (int): Dimensions requested for the embeddings.
        user (str | None): Optional user identifier for OpenAI API usage.
    """

    implementation: Literal["openai"] = "openai"
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    user: str | None = None
    request_timeout: float = 30.0
    max_retries: int = 0
    api_key_name: str | None = "OPENAI_API_KEY"

    _client: Any = PrivateAttr(default=None)

    @property
    @override
    def model_name(self) -> str:
        return self.model

    @property
    @override
    def expected_dimensions(self) -> int:
        return self.dimensions

    @property
    @override
    def timeout(self) -> float:
        return self.request_timeout

    @property
    def client(self) -> "openai.AsyncOpenAI":
        if self._client is None:
            # Note: deferred import to avoid import overhead
            import openai

            self._client = openai.AsyncOpenAI(
                base_url=self.base_url,
                api_key=self._api_key,
                max_retries=self.max_retries,
                timeout=self.request_timeout,
            )
        return self._client

    def _openai_dimensions(self) -> "int | openai.NotGiven":
        import openai

        if self.model == "text-embedding-ada-002":
            return openai.NOT_GIVEN
        return self.dimensions

    @override
    def classify_error(self, e: BaseException) -> EmbeddingServiceError:
        import openai

        if isinstance(e, openai.APITimeoutError):
            return EmbeddingServiceError("embedding request timed out", retryable=True)
        if isinstance(e, openai.APIConnectionError):
            return EmbeddingServiceError(
                f"could not reach the embedding provider: {e}", retryable=True
            )
        return classify_error(e)

    @override
    async def call_embed_api(
        self,
        documents: list[str],
        input_type: InputType,  # noqa: ARG002
    ) -> EmbeddingResponse:
        import openai

        response = await self.client.embeddings.create(
            input=documents,
            model=self.model,
            dimensions=self._openai_dimensions(),
            user=self.user if self.user is not None else openai.NOT_GIVEN,
            encoding_format="float",
        )
        embeddings: list[EmbeddingVector] = [item.embedding for item in response.data]
        usage = None
        if response.usage is not None:
            usage = Usage(
                prompt_tokens=response.usage.prompt_tokens,
                total_tokens=response.usage.total_tokens,
            )
        return EmbeddingResponse(embeddings=embeddings, usage=usage)
