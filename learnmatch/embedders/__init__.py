from ..configuration import API_KEY_NAMES, Settings
from ..embeddings import ApiKeyMixin, Embedder
from .cohere import Cohere
from .openai import OpenAI

__all__ = ["Cohere", "OpenAI", "create_embedder"]


def create_embedder(settings: Settings) -> Embedder:
    """Builds the embedder selected by the settings."""
    embedder: Embedder
    if settings.embedding_provider == "openai":
        embedder = OpenAI(
            model=settings.model,
            dimensions=settings.embedding_dimensions,
            request_timeout=settings.request_timeout,
        )
    else:
        embedder = Cohere(
            model=settings.model,
            dimensions=settings.embedding_dimensions,
            request_timeout=settings.request_timeout,
        )
    if isinstance(embedder, ApiKeyMixin):
        embedder.set_api_key(
            {API_KEY_NAMES[settings.embedding_provider]: settings.api_key}
        )
    return embedder
