import datetime
from enum import Enum
from typing import Annotated, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Level: TypeAlias = Literal["beginner", "intermediate", "advanced"]
RoadmapType: TypeAlias = Literal["week-by-week", "topic-wise"]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class CamelModel(BaseModel):
    """Snake case in Python, camel case on the wire. Both are accepted as input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ContentKind(str, Enum):
    COURSE = "course"
    VIDEO = "video"
    ROADMAP = "roadmap"

    @property
    def default_namespace(self) -> str:
        return f"{self.value}-embeddings"

    @property
    def suggestable(self) -> bool:
        """Only courses and videos are attached to roadmap nodes."""
        return self is not ContentKind.ROADMAP

    def embedding_key(self, entity_id: str) -> str:
        """The stable id of the entity's entry in the vector index."""
        return f"{self.value}_{entity_id}"

    def entity_id_from_key(self, embedding_key: str) -> str | None:
        prefix = f"{self.value}_"
        if not embedding_key.startswith(prefix):
            return None
        return embedding_key[len(prefix) :]


class CourseSection(CamelModel):
    title: str
    order: int = 0


class Course(CamelModel):
    kind: Literal["course"] = "course"
    id: str
    owner_id: str
    title: str
    subtitle: str = ""
    description: str = ""
    category: str = ""
    level: Level = "beginner"
    outcomes: list[str] = Field(default_factory=list)
    sections: list[CourseSection] = Field(default_factory=list)
    price: float | None = None
    is_free: bool = False
    thumbnail: str | None = None
    published: bool = False
    approved: bool = False


class Video(CamelModel):
    kind: Literal["video"] = "video"
    id: str
    owner_id: str
    title: str
    subtitle: str = ""
    description: str = ""
    category: str = ""
    subcategory: str = ""
    level: Level = "beginner"
    outcomes: list[str] = Field(default_factory=list)
    prerequisites: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    language: str = "English"
    duration: str = ""
    thumbnail: str | None = None
    published: bool = False
    # videos are not moderated
    approved: bool = True


class SuggestionEntry(CamelModel):
    content_id: str
    node_id: str
    status: bool = False


class RoadmapNode(CamelModel):
    id: str
    title: str
    description: list[str] = Field(default_factory=list)
    sequence: int | None = None
    completed: bool = False


class Roadmap(CamelModel):
    kind: Literal["roadmap"] = "roadmap"
    id: str
    owner_id: str
    title: str
    level: Level = "beginner"
    roadmap_type: RoadmapType = "topic-wise"
    nodes: list[RoadmapNode] = Field(default_factory=list)
    suggested_courses: list[SuggestionEntry] = Field(default_factory=list)
    suggested_videos: list[SuggestionEntry] = Field(default_factory=list)

    def node(self, node_id: str) -> RoadmapNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def ledger(self, kind: ContentKind) -> list[SuggestionEntry]:
        if kind is ContentKind.COURSE:
            return self.suggested_courses
        if kind is ContentKind.VIDEO:
            return self.suggested_videos
        raise ValueError(f"roadmaps have no {kind.value} suggestions")


ContentRecord: TypeAlias = Course | Video
Entity: TypeAlias = Annotated[Course | Video | Roadmap, Field(discriminator="kind")]


def kind_of(entity: Course | Video | Roadmap) -> ContentKind:
    return ContentKind(entity.kind)


class EmbeddingStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    # reported for lookups only, never stored
    NOT_FOUND = "not_found"


class SourceSnapshot(CamelModel):
    """The entity fields as they were when the embedding attempt started."""

    title: str
    subtitle: str = ""
    description: str = ""
    category: str = ""
    level: str = ""
    roadmap_type: str | None = None
    concatenated_text: str


class ProcessingMetadata(CamelModel):
    model: str
    namespace: str
    token_count: int | None = None
    processing_time_ms: int | None = None


class EmbeddingStatusRecord(CamelModel):
    kind: ContentKind
    entity_id: str
    owner_id: str
    embedding_key: str
    vector_dimension: int
    last_embedded_at: datetime.datetime
    source: SourceSnapshot
    processing: ProcessingMetadata
    status: EmbeddingStatus
    error_message: str | None = None
    attempt_id: str
    created_at: datetime.datetime
    updated_at: datetime.datetime


class EmbeddingStatusReport(CamelModel):
    """What callers see when they ask for the embedding status of an entity."""

    status: EmbeddingStatus
    embedding_key: str | None = None
    last_embedded_at: datetime.datetime | None = None
    vector_dimension: int | None = None
    processing_metadata: ProcessingMetadata | None = None
    source_content: SourceSnapshot | None = None
    error_message: str | None = None
    created_at: datetime.datetime | None = None
    updated_at: datetime.datetime | None = None

    @classmethod
    def not_found(cls) -> "EmbeddingStatusReport":
        return cls(status=EmbeddingStatus.NOT_FOUND)

    @classmethod
    def from_record(cls, record: EmbeddingStatusRecord) -> "EmbeddingStatusReport":
        return cls(
            status=record.status,
            embedding_key=record.embedding_key,
            last_embedded_at=record.last_embedded_at,
            vector_dimension=record.vector_dimension,
            processing_metadata=record.processing,
            source_content=record.source,
            error_message=record.error_message,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
