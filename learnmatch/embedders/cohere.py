from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, PrivateAttr
from typing_extensions import override

if TYPE_CHECKING:
    import cohere

from ..embeddings import (
    ApiKeyMixin,
    Embedder,
    EmbeddingResponse,
    EmbeddingVector,
    InputType,
    Usage,
    logger,
)


class Cohere(ApiKeyMixin, BaseModel, Embedder):
    """
    Embedder that uses Cohere's v2 embed API.

    Attributes:
        implementation (Literal["cohere"]): The literal identifier for this
            implementation.
        model (str): The name of the Cohere model used for embeddings.
        dimensions (int): The output dimension requested from the model and
            expected back.
        request_timeout (float): Seconds before a call is abandoned.
        max_retries (int): Retries done by the SDK itself.
    """

    implementation: Literal["cohere"] = "cohere"
    model: str = "embed-v4.0"
    dimensions: int = 1536
    request_timeout: float = 30.0
    max_retries: int = 0
    api_key_name: str | None = "COHERE_API_KEY"

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
    def client(self) -> "cohere.AsyncClientV2":
        if self._client is None:
            # Note: deferred import to avoid import overhead
            import cohere

            self._client = cohere.AsyncClientV2(
                api_key=self._api_key, timeout=self.request_timeout
            )
        return self._client

    @override
    async def call_embed_api(
        self, documents: list[str], input_type: InputType
    ) -> EmbeddingResponse:
        response = await self.client.embed(
            texts=documents,
            model=self.model,
            input_type=input_type,
            embedding_types=["float"],
            output_dimension=self.dimensions,
            truncate="END",
            request_options={"max_retries": self.max_retries},
        )
        embeddings: list[EmbeddingVector] = list(
            getattr(response.embeddings, "float_", None) or []
        )
        usage = None
        billed_units = getattr(response.meta, "billed_units", None)
        input_tokens = getattr(billed_units, "input_tokens", None)
        if input_tokens is not None:
            usage = Usage(prompt_tokens=int(input_tokens), total_tokens=int(input_tokens))
        else:
            await logger.adebug("cohere response carried no usage", model=self.model)
        return EmbeddingResponse(embeddings=embeddings, usage=usage)
