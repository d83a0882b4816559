class LearnMatchError(Exception):
    """Base class for every error raised by learnmatch."""

    msg = "learnmatch error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.msg)

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(LearnMatchError):
    """Raised for bad caller input, such as an empty query or an invalid top_k."""

    msg = "invalid input"


class NotFoundError(LearnMatchError):
    """Raised when a roadmap, roadmap node or entity does not exist."""

    msg = "not found"


class ConfigurationError(LearnMatchError):
    """Raised for invalid settings. Never retried."""

    msg = "invalid configuration"


class EmbeddingDimensionError(ConfigurationError):
    """
    Raised when the embedding backend returns vectors whose size differs from the
    configured index dimension.
    """

    def __init__(self, expected: int, actual: int, model: str):
        self.expected = expected
        self.actual = actual
        self.model = model
        super().__init__(
            f"model {model} returned {actual} dimensions, "
            f"the index is configured for {expected}"
        )


class ServiceError(LearnMatchError):
    """
    Raised when an external backend call fails.

    Attributes:
        service (str): which backend failed.
        retryable (bool): True for timeouts, connection problems, rate limits
            and 5xx responses.
        status_code (int | None): the HTTP status reported by the backend, if any.
    """

    service = "external service"

    def __init__(
        self,
        message: str | None = None,
        *,
        retryable: bool = False,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class EmbeddingServiceError(ServiceError):
    msg = "embedding provider failed"
    service = "embedding"


class IndexServiceError(ServiceError):
    msg = "vector index failed"
    service = "vector_index"


class StoreServiceError(ServiceError):
    """Raised when the status store or the content repository cannot be reached."""

    msg = "store failed"
    service = "store"


class StatusStoreError(StoreServiceError):
    msg = "embedding status store failed"
    service = "status_store"


class ContentStoreError(StoreServiceError):
    msg = "content store failed"
    service = "content_store"


class PersistenceError(LearnMatchError):
    """Raised when the suggestion ledger cannot be written."""

    msg = "failed to persist suggestions"


def is_retryable_status(status_code: int | None) -> bool:
    if status_code is None:
        return False
    return status_code == 429 or status_code >= 500
