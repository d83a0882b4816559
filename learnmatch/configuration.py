import os
from collections.abc import Mapping
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigurationError
from .models import ContentKind

DEFAULT_DB_URL = "postgres://postgres@localhost:5432/postgres"

DEFAULT_MODELS = {
    "cohere": "embed-v4.0",
    "openai": "text-embedding-3-small",
}

API_KEY_NAMES = {
    "cohere": "COHERE_API_KEY",
    "openai": "OPENAI_API_KEY",
}


class Settings(BaseModel):
    """
    Runtime configuration, usually read from LEARNMATCH_* environment variables.

    Attributes:
        embedding_provider: which embedding backend to call.
        embedding_model: the model name, the provider default when None.
        embedding_dimensions: the vector size every embedding must have.
        api_key: the key for the embedding provider.
        vector_backend: where vectors are stored.
        vector_db_url: connection string of the vector backend.
        vector_index_name: the table holding the vectors.
        store_backend: where status records and content documents live.
        db_url: connection string of the status and content store.
        namespaces: the vector namespace used for each content kind.
        default_top_k: how many suggestions to return when none is asked for.
        request_timeout: upper bound in seconds for every external call.
        max_concurrent_embeddings: background runs allowed at once.
    """

    embedding_provider: Literal["cohere", "openai"] = "cohere"
    embedding_model: str | None = None
    embedding_dimensions: int = Field(default=1536, gt=0)
    api_key: str | None = None
    vector_backend: Literal["pgvector", "memory"] = "pgvector"
    vector_db_url: str | None = None
    vector_index_name: str = Field(
        default="learnmatch_vectors", pattern=r"^[A-Za-z_][A-Za-z0-9_]*$"
    )
    store_backend: Literal["postgres", "memory"] = "postgres"
    db_url: str = DEFAULT_DB_URL
    namespaces: dict[ContentKind, str] = Field(
        default_factory=lambda: {kind: kind.default_namespace for kind in ContentKind}
    )
    default_top_k: int = Field(default=5, ge=1, le=100)
    request_timeout: float = Field(default=30.0, gt=0)
    max_concurrent_embeddings: int = Field(default=4, ge=1)

    @model_validator(mode="after")
    def _fill_defaults(self) -> "Settings":
        if self.embedding_model is None:
            self.embedding_model = DEFAULT_MODELS[self.embedding_provider]
        if self.vector_db_url is None:
            self.vector_db_url = self.db_url
        for kind in ContentKind:
            self.namespaces.setdefault(kind, kind.default_namespace)
        return self

    @property
    def model(self) -> str:
        assert self.embedding_model is not None
        return self.embedding_model

    def namespace(self, kind: ContentKind) -> str:
        return self.namespaces[kind]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """
        Builds settings from the environment.

        Raises:
            ConfigurationError: if a variable holds an invalid value.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}

        def put(key: str, name: str) -> None:
            value = env.get(name)
            if value is not None and value != "":
                values[key] = value

        put("embedding_provider", "LEARNMATCH_EMBEDDING_PROVIDER")
        put("embedding_model", "LEARNMATCH_EMBEDDING_MODEL")
        put("embedding_dimensions", "LEARNMATCH_EMBEDDING_DIMENSIONS")
        put("vector_backend", "LEARNMATCH_VECTOR_BACKEND")
        put("vector_db_url", "LEARNMATCH_VECTOR_DB_URL")
        put("vector_index_name", "LEARNMATCH_VECTOR_INDEX_NAME")
        put("store_backend", "LEARNMATCH_STORE_BACKEND")
        put("db_url", "LEARNMATCH_DB_URL")
        put("default_top_k", "LEARNMATCH_DEFAULT_TOP_K")
        put("request_timeout", "LEARNMATCH_REQUEST_TIMEOUT")
        put("max_concurrent_embeddings", "LEARNMATCH_MAX_CONCURRENT_EMBEDDINGS")

        namespaces: dict[ContentKind, str] = {}
        for kind in ContentKind:
            name = env.get(f"LEARNMATCH_{kind.value.upper()}_NAMESPACE")
            if name:
                namespaces[kind] = name
        if namespaces:
            values["namespaces"] = namespaces

        provider = values.get("embedding_provider", "cohere")
        key_name = API_KEY_NAMES.get(str(provider))
        if key_name is not None:
            put("api_key", key_name)

        try:
            return cls.model_validate(values)
        except PydanticValidationError as e:
            raise ConfigurationError(f"invalid settings: {e}") from e
